"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter. The Limiter instance
is created in app/__init__.py with no default limits; this module applies
granular limits per route category.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Request creation: REQUEST_CREATE_RATE_LIMIT (default 30 per minute)
        - Workflow / request actions: 60/minute
        - Notifications (polled by the UI): 200/minute
        - Health check: exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    create_view = app.view_functions.get("request_bp.create_request")
    if create_view is not None:
        limiter.limit(app.config.get("REQUEST_CREATE_RATE_LIMIT", "30 per minute"))(create_view)

    for bp_name in ("request_bp", "workflow_bp"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("notification_bp")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured: create: %s, write: %s, read: %s",
        app.config.get("REQUEST_CREATE_RATE_LIMIT"), WRITE_LIMIT, READ_LIMIT,
    )
