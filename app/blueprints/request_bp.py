"""
Employee Request Portal
Request & Approval Action Blueprint.

Endpoint groups:
  Create (dedup-guarded)   POST /api/v1/requests/<entity_type>
  Read                     GET  /api/v1/requests
                           GET  /api/v1/requests/<id>
                           GET  /api/v1/requests/<id>/timeline
                           GET  /api/v1/requests/<id>/next-approvers
  Actions                  POST /api/v1/requests/<id>/actions

The caller supplies a resolved identity (requestor / actor id, name and the
role they act in); authentication is handled upstream. Services own all
business rules and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from sqlalchemy import func, select

from app.core.exceptions import DuplicateRequest, InvalidStateTransition, NotFoundError, ValidationError
from app.models import db
from app.models.auth import User
from app.models.request import ENTITY_TYPES, RequestEntity
from app.services import approver_resolver, dedup_guard
from app.services import entity_status_store as store
from app.services import workflow_state_machine as state_machine
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

request_bp = Blueprint("request_bp", __name__, url_prefix="/api/v1")


# ── Error handlers ────────────────────────────────────────────────────────────


@request_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@request_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_RULE, str(error), details=error.details)


@request_bp.errorhandler(InvalidStateTransition)
def _handle_transition(error: InvalidStateTransition):
    return api_error(E.INVALID_TRANSITION, str(error), details={
        "entity_id": error.entity_id,
        "action": error.action,
        "current_status": error.current_status,
    })


@request_bp.errorhandler(DuplicateRequest)
def _handle_duplicate(error: DuplicateRequest):
    resp, status = api_error(E.DUPLICATE_REQUEST, str(error),
                             details={"remaining_seconds": error.remaining_seconds})
    resp.headers["Retry-After"] = str(error.remaining_seconds)
    return resp, status


# ═════════════════════════════════════════════════════════════════════════
# Create
# ═════════════════════════════════════════════════════════════════════════


@request_bp.route("/requests/<entity_type>", methods=["POST"])
def create_request(entity_type):
    """Create (and by default submit) a request.

    Body: {"requestor_id": int, "title": str, ..., "submit": bool}
    The same payload from the same user inside the dedup window → 409.
    """
    if entity_type not in ENTITY_TYPES:
        return api_error(E.NOT_FOUND, f"Unknown entity type '{entity_type}'")

    data = request.get_json(silent=True) or {}
    requestor_id = data.get("requestor_id") or request.headers.get("X-User-Id")
    if not requestor_id:
        return api_error(E.VALIDATION_REQUIRED, "requestor_id is required")
    try:
        requestor = db.session.get(User, int(requestor_id))
    except (TypeError, ValueError):
        requestor = None
    if requestor is None or not requestor.is_active:
        return api_error(E.VALIDATION_INVALID, "requestor_id must reference an active user")

    submit = bool(data.get("submit", True))
    payload = {k: v for k, v in data.items() if k not in ("requestor_id", "submit")}

    entity, report = dedup_guard.with_deduplication(
        requestor.id,
        f"create_{entity_type}",
        payload,
        lambda: state_machine.submit_new_request(entity_type, requestor, payload, submit=submit),
    )
    return jsonify({"request": entity.to_dict(), "notifications": report}), 201


# ═════════════════════════════════════════════════════════════════════════
# Read
# ═════════════════════════════════════════════════════════════════════════


@request_bp.route("/requests", methods=["GET"])
def list_requests():
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = request.args.get("offset", 0, type=int)

    stmt = select(RequestEntity)
    if request.args.get("entity_type"):
        stmt = stmt.where(RequestEntity.entity_type == request.args["entity_type"])
    if request.args.get("status"):
        stmt = stmt.where(RequestEntity.current_status == request.args["status"])
    requestor_id = request.args.get("requestor_id", type=int)
    if requestor_id:
        stmt = stmt.where(RequestEntity.requestor_id == requestor_id)

    total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    items = db.session.execute(
        stmt.order_by(RequestEntity.created_at.desc()).offset(offset).limit(limit)
    ).scalars().all()
    return jsonify({"items": [r.to_dict() for r in items], "total": total,
                    "limit": limit, "offset": offset})


@request_bp.route("/requests/<entity_id>", methods=["GET"])
def get_request(entity_id):
    entity = store.get_request(entity_id)
    return jsonify(entity.to_dict(include_steps=True))


@request_bp.route("/requests/<entity_id>/timeline", methods=["GET"])
def get_timeline(entity_id):
    """Expected approval stages merged with the actual step records."""
    entity = store.get_request(entity_id)
    return jsonify({
        "entity_id": entity.id,
        "current_status": entity.current_status,
        "timeline": store.build_timeline(entity),
    })


@request_bp.route("/requests/<entity_id>/next-approvers", methods=["GET"])
def get_next_approvers(entity_id):
    """Users authorised to act on the request's current status."""
    entity = store.get_request(entity_id)
    permission = approver_resolver.resolve(
        entity.entity_type, entity.current_status, entity.department, entity.travel_type, entity=entity,
    )
    approvers = approver_resolver.resolve_users(
        entity.entity_type, entity.current_status, entity.department, entity.travel_type, entity=entity,
    )
    return jsonify({
        "entity_id": entity.id,
        "current_status": entity.current_status,
        "permission": permission,
        "approvers": [a.to_dict() for a in approvers],
    })


# ═════════════════════════════════════════════════════════════════════════
# Actions
# ═════════════════════════════════════════════════════════════════════════


@request_bp.route("/requests/<entity_id>/actions", methods=["POST"])
def apply_action(entity_id):
    """Apply submit/approve/reject/delegate/cancel/process.

    Body: {"action", "actor_role", "actor_name", "actor_id"?, "comments"?,
           "expected_status"?, "delegate_to"?, "preview"?}
    ``preview: true`` only validates and returns the target status.
    """
    data = request.get_json(silent=True) or {}
    action = (data.get("action") or "").strip().lower()
    actor_role = (data.get("actor_role") or "").strip()
    if not action:
        return api_error(E.VALIDATION_REQUIRED, "action is required")
    if not actor_role:
        return api_error(E.VALIDATION_REQUIRED, "actor_role is required")

    if data.get("preview"):
        entity = store.get_request(entity_id)
        return jsonify(state_machine.validate_transition(entity, action, actor_role))

    actor_name = (data.get("actor_name") or "").strip()
    if not actor_name and data.get("actor_id"):
        actor = db.session.get(User, data["actor_id"])
        actor_name = actor.display_name if actor else ""
    if not actor_name:
        return api_error(E.VALIDATION_REQUIRED, "actor_name or a known actor_id is required")

    result = state_machine.apply(
        entity_id,
        action,
        actor_role,
        actor_name,
        data.get("comments"),
        actor_id=data.get("actor_id"),
        expected_status=data.get("expected_status"),
        delegate_to=data.get("delegate_to"),
    )
    return jsonify(result.to_dict())
