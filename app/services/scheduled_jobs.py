"""
Employee Request Portal
Scheduled Jobs.

Concrete job implementations that run on a schedule.

Jobs:
    - workflow_timeout_sweep: escalates or auto-approves overdue workflow steps
    - dedup_fingerprint_sweep: drops expired duplicate-request fingerprints
    - stale_notification_cleanup: deletes expired and old read/dismissed notifications
"""

from __future__ import annotations

import logging
from typing import Any

from app.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Workflow timeout sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("workflow_timeout_sweep", minutes=15)
def sweep_workflow_timeouts(app) -> dict[str, Any]:
    """Escalate or auto-approve workflow steps whose timeout has passed."""
    from app.services.timeout_escalator import process_due_timeouts

    return process_due_timeouts()


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Dedup fingerprint sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("dedup_fingerprint_sweep", minutes=1)
def sweep_dedup_fingerprints(app) -> dict[str, Any]:
    """Remove expired duplicate-request fingerprints."""
    from app.services import dedup_guard

    removed = dedup_guard.sweep_expired()
    return {"removed": removed, "pending": dedup_guard.pending_count()}


# ═══════════════════════════════════════════════════════════════════════════
#  Job 3: Stale notification cleanup
# ═══════════════════════════════════════════════════════════════════════════

@register_job("stale_notification_cleanup", daily_at="02:00")
def cleanup_stale_notifications(app) -> dict[str, Any]:
    """Delete expired notifications and read/dismissed ones older than 90 days."""
    from app.services.notification import NotificationService

    days = app.config.get("NOTIFICATION_RETENTION_DAYS", 90)
    deleted = NotificationService.cleanup_stale(days=days)
    logger.info("Stale notification cleanup: %d deleted", deleted,
                extra={"job_name": "stale_notification_cleanup"})
    return {"deleted": deleted, "retention_days": days}
