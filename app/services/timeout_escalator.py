"""
Timeout Escalator: periodic sweep over due StepTimeout rows.

For each due timeout whose step is still open (and whose request has not
reached a terminal status):
    - escalation role set   → reassign to the first active holder of that
                              role, step status 'escalated'
    - no escalation role    → auto-approve with a synthetic comment and run
                              the engine's normal advance logic

A row is claimed with a compare-and-set UPDATE (processed_at IS NULL), so
two overlapping sweeps can never act on the same timeout twice.

Usage:
    from app.services.timeout_escalator import process_due_timeouts
    process_due_timeouts()   # {"due": 3, "escalated": 1, "auto_approved": 1, "skipped": 1, ...}
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update

from app.models import db
from app.models.request import FINAL_STATUSES, RequestEntity
from app.models.workflow import StepExecution, StepTimeout
from app.services import workflow_engine

logger = logging.getLogger(__name__)

_OPEN_STEP_STATUSES = ("pending", "delegated")


def _claim(timeout_id: int, now: datetime) -> bool:
    result = db.session.execute(
        update(StepTimeout)
        .where(StepTimeout.id == timeout_id, StepTimeout.processed_at.is_(None))
        .values(processed_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _request_closed(request_id: str) -> bool:
    entity = db.session.get(RequestEntity, request_id)
    return entity is None or entity.current_status in FINAL_STATUSES


def _escalate(step_exec: StepExecution, role: str) -> int | None:
    entity = db.session.get(RequestEntity, step_exec.execution.request_id)
    user_id = workflow_engine.find_user_by_role(role, entity.department if entity else None)
    step_exec.status = "escalated"
    step_exec.assigned_role = role
    if user_id is not None:
        step_exec.escalated_to = user_id
        step_exec.assigned_user_id = user_id
    else:
        logger.warning("Step %s: no active user holds escalation role '%s', keeping assignee %s",
                       step_exec.id, role, step_exec.assigned_user_id,
                       extra={"entity_id": entity.id if entity else None})
    return user_id


def process_due_timeouts(now: datetime | None = None) -> dict:
    """Escalate or auto-approve every due, unclaimed timeout. Returns counts."""
    now = now or datetime.now(timezone.utc)
    due_ids = list(db.session.execute(
        select(StepTimeout.id)
        .where(StepTimeout.processed_at.is_(None), StepTimeout.timeout_at <= now)
        .order_by(StepTimeout.timeout_at, StepTimeout.id)
    ).scalars())

    counts = {"due": len(due_ids), "escalated": 0, "auto_approved": 0, "skipped": 0,
              "already_claimed": 0, "errors": 0}

    for timeout_id in due_ids:
        try:
            if not _claim(timeout_id, now):
                db.session.rollback()
                counts["already_claimed"] += 1
                continue

            timeout = db.session.get(StepTimeout, timeout_id)
            step_exec = timeout.step_execution
            execution = step_exec.execution if step_exec else None
            started = None

            if (step_exec is None or step_exec.status not in _OPEN_STEP_STATUSES
                    or execution is None or execution.status != "active"
                    or _request_closed(execution.request_id)):
                timeout.outcome = "skipped"
                counts["skipped"] += 1
            elif timeout.escalation_role:
                user_id = _escalate(step_exec, timeout.escalation_role)
                timeout.outcome = "escalated"
                counts["escalated"] += 1
                logger.info("Step %s escalated to role %s (user %s)", step_exec.id,
                            timeout.escalation_role, user_id,
                            extra={"entity_id": execution.request_id})
            else:
                step_exec.status = "approved"
                step_exec.action_taken_at = now
                step_exec.comments = workflow_engine.TIMEOUT_COMMENT
                started = workflow_engine.advance(execution, step_exec, None,
                                                  workflow_engine.TIMEOUT_COMMENT, now=now)
                timeout.outcome = "auto_approved"
                counts["auto_approved"] += 1
                logger.info("Step %s auto-approved after timeout", step_exec.id,
                            extra={"entity_id": execution.request_id})
            db.session.commit()
        except Exception:
            db.session.rollback()
            counts["errors"] += 1
            logger.exception("Timeout %s could not be processed", timeout_id)
            continue

        if timeout.outcome == "escalated":
            workflow_engine.notify_after_timeout(execution, step_exec)
        elif timeout.outcome == "auto_approved":
            workflow_engine.notify_after_timeout(execution, started)

    if due_ids:
        logger.info("Timeout sweep: %s", counts)
    return counts
