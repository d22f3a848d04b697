"""
Employee Request Portal
Notification & Scheduling Blueprint.

Provides:
    - In-app notification records (create, list, counts, read, dismiss)
    - Notification template management
    - Email log viewing
    - Scheduled job management (list, run, toggle)

Identity is supplied by the caller (gateway / UI session layer): the acting
user id comes from the ``X-User-Id`` header or a ``user_id`` parameter.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from sqlalchemy import func, select

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.notification import RECIPIENT_TYPES, NotificationEventType, NotificationTemplate
from app.models.scheduling import EmailLog
from app.services.notification import NotificationService
from app.services.scheduler_service import SchedulerService
from app.utils.errors import E, api_error
from app.utils.helpers import db_commit_or_error, get_or_404, parse_int_list

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1")


# ── Error handlers ────────────────────────────────────────────────────────────


@notification_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@notification_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_RULE, str(error), details=error.details)


def _user_id() -> int | None:
    uid = request.headers.get("X-User-Id") or request.args.get("user_id")
    if uid is None:
        uid = (request.get_json(silent=True) or {}).get("user_id")
    try:
        return int(uid) if uid is not None else None
    except (TypeError, ValueError):
        return None


def _user_required():
    uid = _user_id()
    if uid is None:
        return None, api_error(E.VALIDATION_REQUIRED, "user_id is required (X-User-Id header or parameter)")
    return uid, None


# ═══════════════════════════════════════════════════════════════════════════
#  IN-APP NOTIFICATIONS
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """List visible notifications for the current user."""
    uid, err = _user_required()
    if err:
        return err
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = request.args.get("offset", 0, type=int)
    items, total = NotificationService.list_for_user(
        uid,
        unread_only=request.args.get("unread_only", "false").lower() == "true",
        category=request.args.get("category"),
        limit=limit,
        offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


@notification_bp.route("/notifications", methods=["POST"])
def create_notification():
    """Create a notification record for one user."""
    data = request.get_json(silent=True) or {}
    if not data.get("user_id"):
        return api_error(E.VALIDATION_REQUIRED, "user_id is required")
    title = (data.get("title") or "").strip()
    if not title:
        return api_error(E.VALIDATION_REQUIRED, "title is required")

    nid = NotificationService.create(
        user_id=data["user_id"],
        title=title,
        message=data.get("message", ""),
        type=data.get("type", "system"),
        category=data.get("category", "system_alert"),
        priority=data.get("priority", "normal"),
        related_entity_type=data.get("related_entity_type"),
        related_entity_id=data.get("related_entity_id"),
        action_required=data.get("action_required", False),
        action_url=data.get("action_url"),
    )
    return jsonify({"id": nid}), 201


@notification_bp.route("/notifications/counts", methods=["GET"])
def notification_counts():
    """Unread / action-required counts for the notification bell."""
    uid, err = _user_required()
    if err:
        return err
    return jsonify(NotificationService.counts(uid))


@notification_bp.route("/notifications/<int:nid>/read", methods=["PUT"])
def mark_notification_read(nid):
    uid = _user_id()
    notif = NotificationService.mark_read(nid, user_id=uid)
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/read", methods=["POST"])
def mark_notifications_read():
    """Mark several notifications of the current user as read."""
    uid, err = _user_required()
    if err:
        return err
    ids = parse_int_list((request.get_json(silent=True) or {}).get("ids"))
    if not ids:
        return api_error(E.VALIDATION_REQUIRED, "ids must be a non-empty list")
    return jsonify({"updated": NotificationService.mark_many_read(ids, uid)})


@notification_bp.route("/notifications/read-all", methods=["POST"])
def mark_all_notifications_read():
    uid, err = _user_required()
    if err:
        return err
    return jsonify({"updated": NotificationService.mark_all_read(uid)})


@notification_bp.route("/notifications/<int:nid>/dismiss", methods=["PUT"])
def dismiss_notification(nid):
    uid = _user_id()
    notif = NotificationService.dismiss(nid, user_id=uid)
    return jsonify(notif.to_dict())


# ═══════════════════════════════════════════════════════════════════════════
#  NOTIFICATION TEMPLATES
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/notification-templates", methods=["GET"])
def list_templates():
    stmt = select(NotificationTemplate).order_by(NotificationTemplate.name)
    prefix = request.args.get("entity_type")
    if prefix:
        stmt = stmt.where(NotificationTemplate.name.like(f"{prefix}\\_%", escape="\\"))
    if request.args.get("active_only", "false").lower() == "true":
        stmt = stmt.where(NotificationTemplate.is_active.is_(True))
    items = db.session.execute(stmt).scalars().all()
    return jsonify({"items": [t.to_dict() for t in items], "total": len(items)})


def _apply_template_fields(template: NotificationTemplate, data: dict):
    for field in ("subject", "body", "body_text", "description"):
        if field in data:
            setattr(template, field, data[field])
    if "recipient_type" in data:
        if data["recipient_type"] not in RECIPIENT_TYPES:
            return api_error(E.VALIDATION_INVALID,
                             f"recipient_type must be one of: {sorted(RECIPIENT_TYPES)}")
        template.recipient_type = data["recipient_type"]
    if "is_active" in data:
        template.is_active = bool(data["is_active"])
    if "event_type" in data:
        event = db.session.execute(
            select(NotificationEventType).where(NotificationEventType.name == data["event_type"])
        ).scalar_one_or_none()
        template.event_type_id = event.id if event else None
    return None


@notification_bp.route("/notification-templates", methods=["POST"])
def create_template():
    data = request.get_json(silent=True) or {}
    missing = [f for f in ("name", "subject", "body") if not (data.get(f) or "").strip()]
    if missing:
        return api_error(E.VALIDATION_REQUIRED, f"Missing required fields: {', '.join(missing)}")
    exists = db.session.execute(
        select(func.count(NotificationTemplate.id)).where(NotificationTemplate.name == data["name"])
    ).scalar_one()
    if exists:
        return api_error(E.CONFLICT_DUPLICATE, f"Template '{data['name']}' already exists")

    template = NotificationTemplate(name=data["name"].strip())
    err = _apply_template_fields(template, data)
    if err:
        return err
    db.session.add(template)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(template.to_dict()), 201


@notification_bp.route("/notification-templates/<int:tid>", methods=["PUT"])
def update_template(tid):
    template, err = get_or_404(NotificationTemplate, tid, "Notification template")
    if err:
        return err
    err = _apply_template_fields(template, request.get_json(silent=True) or {})
    if err:
        db.session.rollback()
        return err
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(template.to_dict())


# ═══════════════════════════════════════════════════════════════════════════
#  EMAIL LOG
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/email-logs", methods=["GET"])
def list_email_logs():
    """List email send logs with pagination."""
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = request.args.get("offset", 0, type=int)

    stmt = select(EmailLog)
    for field in ("status", "entity_id", "template_name", "recipient_kind"):
        value = request.args.get(field)
        if value:
            stmt = stmt.where(getattr(EmailLog, field) == value)

    total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    items = db.session.execute(
        stmt.order_by(EmailLog.created_at.desc(), EmailLog.id.desc()).offset(offset).limit(limit)
    ).scalars().all()

    return jsonify({
        "items": [e.to_dict() for e in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


# ═══════════════════════════════════════════════════════════════════════════
#  SCHEDULED JOBS MANAGEMENT
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/scheduler/jobs", methods=["GET"])
def list_scheduled_jobs():
    """List all registered jobs with their run history."""
    jobs = SchedulerService.list_jobs()
    return jsonify({"jobs": jobs, "total": len(jobs)})


@notification_bp.route("/scheduler/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    """Manually trigger a scheduled job."""
    SchedulerService.ensure_jobs_registered()
    force = (request.get_json(silent=True) or {}).get("force", False)
    result = SchedulerService.run_job(job_name, force=bool(force))
    if result.get("status") == "error" and "Unknown job" in (result.get("error") or ""):
        return api_error(E.NOT_FOUND, result["error"])
    return jsonify(result)


@notification_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["PATCH"])
def toggle_job_status(job_name):
    """Enable or disable a scheduled job."""
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    if enabled is None:
        return api_error(E.VALIDATION_REQUIRED, "'enabled' field is required (true/false)")

    SchedulerService.ensure_jobs_registered()
    result = SchedulerService.toggle_job(job_name, bool(enabled))
    if not result:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(result)
