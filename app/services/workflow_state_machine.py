"""
Workflow State Machine: per-entity fixed approval sequences.

Manages request status transitions with:
  - Transition validation (sequence tables in workflow_routing)
  - Actor check: the actor must act in the role the current stage expects
    (System Administrator may act on any stage)
  - One ApprovalStepRecord per transition, committed with the status change
  - Post-commit notification dispatch that can never fail the transition

Actions:
  submit   Draft → first pending stage                     (Requestor)
  approve  pending stage → next stage, or fully approved   (stage role)
  reject   any pending stage → Rejected                    (stage role, comments required)
  delegate status unchanged, Delegated record              (stage role, target required)
  cancel   Draft / pending stage → Cancelled               (Requestor)
  process  Approved → Processing with <X> Admin → ... → Completed/Processed (admin roles)

Usage:
    from app.services.workflow_state_machine import apply

    result = apply("TRF-20260101-3FA2C1", "approve", "Department Focal", "Ana Focal")
    result.new_status   # "Pending Line Manager"
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from app.core.exceptions import InvalidStateTransition, ValidationError
from app.models import db
from app.models.auth import User
from app.models.request import (
    FINAL_STATUSES,
    STATUS_CANCELLED,
    STATUS_DRAFT,
    STATUS_REJECTED,
    ApprovalStepRecord,
    RequestEntity,
)
from app.services import entity_status_store as store
from app.services import workflow_routing as routing
from app.services.recipient_builder import Recipient

logger = logging.getLogger(__name__)

VALID_ACTIONS = ("submit", "approve", "reject", "delegate", "cancel", "process")

_STEP_ACTION = {
    "submit": "Submitted",
    "approve": "Approved",
    "reject": "Rejected",
    "delegate": "Delegated",
    "cancel": "Cancelled",
    "process": "Processed",
}


@dataclass
class TransitionResult:
    entity_id: str
    action: str
    previous_status: str
    new_status: str
    event_type: str
    step: ApprovalStepRecord
    notifications: dict | None = field(default=None)

    def to_dict(self) -> dict:
        return {
            "entity_id": self.entity_id,
            "action": self.action,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "event_type": self.event_type,
            "step": self.step.to_dict(),
            "notifications": self.notifications,
        }


# ── Validation ────────────────────────────────────────────────────────────────


def _check_actor(entity: RequestEntity, action: str, actor_role: str, allowed_roles: list[str]) -> None:
    if actor_role == routing.SYSTEM_ADMIN_ROLE:
        return
    if actor_role not in allowed_roles:
        raise InvalidStateTransition(
            entity.id, action, entity.current_status,
            f"role '{actor_role}' cannot act on this stage (expected {', '.join(allowed_roles) or 'none'})",
        )


def next_status(entity: RequestEntity, action: str) -> str:
    """Compute the status *action* leads to, or raise InvalidStateTransition."""
    et, current = entity.entity_type, entity.current_status

    if action not in VALID_ACTIONS:
        raise InvalidStateTransition(entity.id, action, current, f"unknown action '{action}'")
    if current in FINAL_STATUSES:
        raise InvalidStateTransition(entity.id, action, current, "request is in a terminal status")

    if action == "submit":
        if current != STATUS_DRAFT:
            raise InvalidStateTransition(entity.id, action, current, "only drafts can be submitted")
        return routing.first_stage(et)

    if action == "cancel":
        if current not in routing.cancellable_statuses():
            raise InvalidStateTransition(entity.id, action, current, "request can no longer be cancelled")
        return STATUS_CANCELLED

    if action == "process":
        nxt = routing.next_processing_status(et, current)
        if nxt is None:
            raise InvalidStateTransition(entity.id, action, current, "not in an administrative queue")
        return nxt

    # approve / reject / delegate act on approval stages only
    if not routing.is_approval_stage(et, current):
        raise InvalidStateTransition(entity.id, action, current, "not awaiting approval")
    if action == "approve":
        return routing.next_approval_status(et, current)
    if action == "reject":
        return STATUS_REJECTED
    return current  # delegate


def validate_transition(entity: RequestEntity, action: str, actor_role: str | None = None) -> dict:
    """Non-raising check used by the API to preview an action.

    Returns:
        {"valid": bool, "from": str, "to": str|None, "reason": str|None}
    """
    try:
        to = next_status(entity, action)
        if actor_role is not None:
            _check_actor(entity, action, actor_role, _allowed_roles(entity, action))
    except InvalidStateTransition as exc:
        return {"valid": False, "from": entity.current_status, "to": None, "reason": exc.reason}
    return {"valid": True, "from": entity.current_status, "to": to, "reason": None}


def _allowed_roles(entity: RequestEntity, action: str) -> list[str]:
    if action in ("submit", "cancel"):
        return [routing.REQUESTOR_ROLE]
    return routing.stage_roles(entity.entity_type, entity.current_status)


def _event_type(entity_type: str, action: str, new_status: str) -> str:
    if action == "approve":
        return f"{entity_type}_approved"
    if action == "process":
        return f"{entity_type}_completed" if new_status in FINAL_STATUSES else f"{entity_type}_processing"
    suffix = {"submit": "submitted", "reject": "rejected", "delegate": "delegated", "cancel": "cancelled"}
    return f"{entity_type}_{suffix[action]}"


# ── Public API ─────────────────────────────────────────────────────────────────


def apply(
    entity_id: str,
    action: str,
    actor_role: str,
    actor_name: str,
    comments: str | None = None,
    *,
    actor_id: int | None = None,
    expected_status: str | None = None,
    delegate_to: int | None = None,
    notify: bool = True,
) -> TransitionResult:
    """Apply *action* to the request and persist the transition.

    The status update and its ApprovalStepRecord are committed together.
    Notifications go out afterwards; their failures are logged only.

    Raises:
        NotFoundError: unknown request.
        InvalidStateTransition: illegal action for the current status or actor,
            or ``expected_status`` no longer matches.
        ValidationError: missing rejection comments / delegate target.
    """
    entity = store.lock_request(entity_id)
    previous = entity.current_status

    try:
        if expected_status is not None and expected_status != previous:
            raise InvalidStateTransition(entity.id, action, previous,
                                         f"status changed (expected '{expected_status}')")
        new_status = next_status(entity, action)
        _check_actor(entity, action, actor_role, _allowed_roles(entity, action))

        comments = (comments or "").strip() or None
        if action == "reject" and not comments and routing.reject_requires_comments(entity.entity_type):
            raise ValidationError("comments are required to reject a request",
                                  details={"comments": "required"})

        delegate = None
        if action == "delegate":
            delegate = db.session.get(User, delegate_to) if delegate_to is not None else None
            if delegate is None or not delegate.is_active:
                raise ValidationError("delegate_to must reference an active user",
                                      details={"delegate_to": delegate_to})

        store.update_status(entity, new_status)
        step = store.append_step(
            entity, actor_role, _STEP_ACTION[action], actor_name,
            actor_id=actor_id, comments=comments,
            delegated_to=delegate.display_name if delegate else None,
            from_status=previous, to_status=new_status,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    event_type = _event_type(entity.entity_type, action, new_status)
    logger.info(
        "Transition %s: %s → %s by %s (%s)", entity.id, previous, new_status, actor_name, actor_role,
        extra={"entity_id": entity.id, "entity_type": entity.entity_type, "event_type": event_type},
    )

    result = TransitionResult(
        entity_id=entity.id, action=action, previous_status=previous,
        new_status=new_status, event_type=event_type, step=step,
    )
    if notify and _should_notify(entity, action, new_status):
        result.notifications = _notify(entity, event_type, previous, actor_name, actor_role, comments, delegate)
    return result


def _should_notify(entity: RequestEntity, action: str, new_status: str) -> bool:
    # Intermediate admin-queue moves are internal bookkeeping
    if action == "process":
        return new_status in FINAL_STATUSES
    return True


def _notify(entity, event_type, previous, actor_name, actor_role, comments, delegate) -> dict:
    # Imported late: dispatch pulls in email/notification services
    from app.services.workflow_notification import dispatch

    try:
        if delegate is not None:
            approvers = [Recipient(
                user_id=delegate.id, name=delegate.display_name,
                email=delegate.email, role=actor_role, department=delegate.department,
            )]
            report = dispatch(
                entity, event_type, previous_status=previous, actor_name=actor_name,
                actor_role=actor_role, comments=comments,
                template_names=[f"{entity.entity_type}_delegated"], approvers=approvers,
            )
        else:
            report = dispatch(
                entity, event_type, previous_status=previous, actor_name=actor_name,
                actor_role=actor_role, comments=comments,
            )
        return report.to_dict()
    except Exception:
        db.session.rollback()
        logger.exception("Notification dispatch crashed for %s", entity.id,
                         extra={"entity_id": entity.id, "event_type": event_type})
        return {"errors": [{"error": "DispatchFailed"}]}


def submit_new_request(entity_type: str, requestor: User, data: dict, *, submit: bool = True,
                       notify: bool = True) -> tuple[RequestEntity, dict | None]:
    """Create a request (status = first pending stage) and notify stage one.

    Returns:
        (entity, dispatch_report_dict or None)
    """
    try:
        entity = store.create_request(entity_type, requestor, data, submit=submit)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    report = None
    if submit and notify:
        report = _notify(entity, f"{entity_type}_submitted", STATUS_DRAFT,
                         entity.requestor_name, routing.REQUESTOR_ROLE, None, None)
    return entity, report
