"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready   200 whenever the process serves requests
    GET /api/v1/health/live    per-dependency checks; 503 if the database is down

The dedup store and scheduler never fail the probe: without Redis the guard
falls back to in-process fingerprints, and jobs are triggered externally.
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from app.models import db
from app.services import dedup_guard

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


def _check_database() -> dict:
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        return {"status": "ok", "latency_ms": round((time.perf_counter() - t0) * 1000, 1)}
    except Exception as exc:
        db.session.rollback()
        logger.error("Health check: database unavailable: %s", exc)
        return {"status": "error", "detail": str(exc)}


def _check_scheduler() -> dict:
    scheduler = current_app.extensions.get("scheduler")
    if scheduler is None:
        return {"status": "not_initialized", "jobs": 0}
    jobs = scheduler.list_jobs()
    return {
        "status": "ok",
        "jobs": len(jobs),
        "disabled": sorted(j["job_name"] for j in jobs
                           if j["db_record"] and not j["db_record"]["is_enabled"]),
    }


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    checks = {
        "database": _check_database(),
        "dedup_store": dedup_guard.health_check(),
        "scheduler": _check_scheduler(),
    }
    healthy = checks["database"]["status"] == "ok"
    return jsonify({
        "status": "healthy" if healthy else "degraded",
        "app": "Employee Request Portal",
        "checks": checks,
    }), 200 if healthy else 503
