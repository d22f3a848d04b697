"""
Entity Status Store: persistence for request status and approval history.

Design decisions:
    - ApprovalStepRecord is APPEND-ONLY. The record is the only durable
      evidence of who did what; pending future stages are never stored.
    - Nothing here commits. Callers (state machine, workflow engine) commit
      the status change and its step record together, so the two never
      diverge.
    - build_timeline() synthesises the display sequence on read by merging
      the static expected-role list with the actual records.  Unvisited
      stages are "Not Started" (also after a rejection), only the current
      stage is "Pending".

Usage:
    from app.services import entity_status_store as store

    entity = store.create_request("trf", requestor, {"title": "Site visit"})
    store.update_status(entity, "Pending Line Manager")
    store.append_step(entity, "Department Focal", "Approved", "Ana Focal")
    db.session.commit()
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import select

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.auth import User
from app.models.request import (
    ENTITY_ID_PREFIXES,
    SEGMENT_TYPES,
    STATUS_DRAFT,
    STEP_ACTIONS,
    ApprovalStepRecord,
    ItinerarySegment,
    RequestEntity,
)
from app.services import workflow_routing as routing
from app.utils.helpers import parse_date

logger = logging.getLogger(__name__)

_DECISIVE_ACTIONS = ("Approved", "Rejected")


# ── Private helpers ────────────────────────────────────────────────────────────


def _allocate_id(entity_type: str) -> str:
    prefix = ENTITY_ID_PREFIXES.get(entity_type, entity_type.upper()[:4])
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d")
    return f"{prefix}-{stamp}-{uuid.uuid4().hex[:6].upper()}"


def _parse_amount(value) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("amount must be numeric", details={"amount": str(value)}) from exc


def _add_segments(entity: RequestEntity, segments: list[dict]) -> None:
    for raw in segments or []:
        seg_type = (raw.get("segment_type") or "flight").lower()
        if seg_type not in SEGMENT_TYPES:
            raise ValidationError(
                f"Invalid segment_type '{seg_type}'",
                details={"segment_type": sorted(SEGMENT_TYPES)},
            )
        db.session.add(ItinerarySegment(
            request_id=entity.id,
            segment_type=seg_type,
            origin=raw.get("origin"),
            destination=raw.get("destination"),
            departure_date=parse_date(raw.get("departure_date")),
            carrier=raw.get("carrier"),
        ))


# ── Create / read ──────────────────────────────────────────────────────────────


def create_request(entity_type: str, requestor: User, data: dict, *, submit: bool = True) -> RequestEntity:
    """Create a request owned by *requestor*.

    The entity starts at the first pending stage of its sequence (or Draft
    when ``submit`` is False). A submitted request gets its ``Submitted``
    step record in the same flush.

    Raises:
        ValidationError: unknown entity type, missing title, bad amount.
    """
    if entity_type not in routing.entity_types():
        raise ValidationError(
            f"Invalid entity_type '{entity_type}'",
            details={"entity_type": routing.entity_types()},
        )
    title = (data.get("title") or data.get("purpose") or "").strip()
    if not title:
        raise ValidationError("title is required", details={"title": "required"})

    status = routing.first_stage(entity_type) if submit else STATUS_DRAFT
    now = datetime.now(timezone.utc)

    entity = RequestEntity(
        id=_allocate_id(entity_type),
        entity_type=entity_type,
        requestor_id=requestor.id,
        requestor_name=requestor.display_name,
        requestor_email=requestor.email,
        staff_id=requestor.staff_id,
        department=data.get("department") or requestor.department,
        title=title[:300],
        current_status=status,
        amount=_parse_amount(data.get("amount")),
        currency=data.get("currency"),
        start_date=parse_date(data.get("start_date")),
        end_date=parse_date(data.get("end_date")),
        travel_type=data.get("travel_type"),
        details=data.get("details") or {},
        submitted_at=now if submit else None,
    )
    db.session.add(entity)
    db.session.flush()

    if entity_type == "trf":
        _add_segments(entity, data.get("segments") or [])

    if submit:
        append_step(
            entity, routing.REQUESTOR_ROLE, "Submitted", entity.requestor_name,
            actor_id=requestor.id, from_status=STATUS_DRAFT, to_status=status,
        )

    logger.info(
        "Request created: %s type=%s status=%s",
        entity.id, entity_type, status,
        extra={"entity_id": entity.id, "entity_type": entity_type},
    )
    return entity


def get_request(entity_id: str) -> RequestEntity:
    entity = db.session.get(RequestEntity, entity_id)
    if entity is None:
        raise NotFoundError(resource="Request", resource_id=entity_id)
    return entity


def lock_request(entity_id: str) -> RequestEntity:
    """Load the request with a row lock (FOR UPDATE; a no-op on SQLite).

    The row is re-read even when already in the session, so the caller sees
    the committed status.
    """
    entity = db.session.execute(
        select(RequestEntity).where(RequestEntity.id == entity_id).with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if entity is None:
        raise NotFoundError(resource="Request", resource_id=entity_id)
    return entity


def get_status(entity_id: str) -> str:
    return get_request(entity_id).current_status


def has_flight_segments(entity_id: str) -> bool:
    stmt = (
        select(ItinerarySegment.id)
        .where(ItinerarySegment.request_id == entity_id, ItinerarySegment.segment_type == "flight")
        .limit(1)
    )
    return db.session.execute(stmt).first() is not None


# ── Mutations (caller commits) ─────────────────────────────────────────────────


def update_status(entity: RequestEntity, new_status: str) -> str:
    """Set the current status; returns the previous one."""
    previous = entity.current_status
    entity.current_status = new_status
    if previous == STATUS_DRAFT and new_status != STATUS_DRAFT and entity.submitted_at is None:
        entity.submitted_at = datetime.now(timezone.utc)
    return previous


def append_step(
    entity: RequestEntity,
    role: str,
    action: str,
    actor_name: str,
    *,
    actor_id: int | None = None,
    comments: str | None = None,
    delegated_to: str | None = None,
    from_status: str | None = None,
    to_status: str | None = None,
) -> ApprovalStepRecord:
    if action not in STEP_ACTIONS:
        raise ValueError(f"Unknown step action: {action}")
    record = ApprovalStepRecord(
        entity_id=entity.id,
        role=role,
        actor_id=actor_id,
        actor_name=actor_name,
        action=action,
        from_status=from_status,
        to_status=to_status if to_status is not None else entity.current_status,
        comments=comments,
        delegated_to=delegated_to,
    )
    db.session.add(record)
    db.session.flush()
    return record


def list_steps(entity_id: str) -> list[ApprovalStepRecord]:
    stmt = (
        select(ApprovalStepRecord)
        .where(ApprovalStepRecord.entity_id == entity_id)
        .order_by(ApprovalStepRecord.id)
    )
    return list(db.session.execute(stmt).scalars())


# ── Synthetic timeline ─────────────────────────────────────────────────────────


def build_timeline(entity: RequestEntity) -> list[dict]:
    """Merge the expected stage list with actual records for display.

    Each row: {stage, role, status, actor_name, comments, timestamp}.
    status is one of Completed, Approved, Rejected, Cancelled, Processed,
    Pending, Not Started.
    """
    records = list_steps(entity.id)

    def _row(stage, role, status, record=None):
        return {
            "stage": stage,
            "role": role,
            "status": status,
            "actor_name": record.actor_name if record else None,
            "comments": record.comments if record else None,
            "delegated_to": record.delegated_to if record else None,
            "timestamp": record.created_at.isoformat() if record and record.created_at else None,
        }

    submitted = next((r for r in records if r.action == "Submitted"), None)
    timeline = [_row("Submission", routing.REQUESTOR_ROLE,
                     "Completed" if submitted else "Not Started", submitted)]

    for stage in routing.approval_sequence(entity.entity_type):
        roles = routing.stage_roles(entity.entity_type, stage)
        role = roles[0] if roles else stage
        decided = [r for r in records if r.from_status == stage and r.action in _DECISIVE_ACTIONS]
        delegated = [r for r in records if r.from_status == stage and r.action == "Delegated"]
        if decided:
            timeline.append(_row(stage, role, decided[-1].action, decided[-1]))
        elif entity.current_status == stage:
            timeline.append(_row(stage, role, "Pending", delegated[-1] if delegated else None))
        else:
            timeline.append(_row(stage, role, "Not Started"))

    # Terminal / administrative records are shown as they happened
    for record in records:
        if record.action in ("Cancelled", "Processed"):
            timeline.append(_row(record.to_status or record.action, record.role, record.action, record))

    return timeline
