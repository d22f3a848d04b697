"""
Configurable Workflow Engine: admin-authored approval chains.

Runs alongside the fixed per-entity state machine. Where the state machine
derives pending stages on read, this engine stores every visited step as a
StepExecution row.

Design decisions:
    - Templates are validated before anything is persisted; a template with
      errors is never saved (not even partially).
    - A step is applicable when it is mandatory or its structured condition
      holds. Non-mandatory steps whose condition fails are skipped.
    - Assignee: the explicit user, else the first active holder of the role.
      HOD is department-agnostic; other roles prefer the requestor's
      department and fall back to any department.
    - The request status only changes when the execution finishes
      (Approved) or is rejected (Rejected); each change writes one
      ApprovalStepRecord in the same transaction.
    - In-app notices to assignees and the requestor are best-effort and sent
      after commit.

Usage:
    from app.services import workflow_engine

    execution = workflow_engine.start_workflow("TRF-20260101-3FA2C1")
    workflow_engine.process_step_action(execution.id, 1, "approve", actor_id=7)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from app.core.exceptions import InvalidStateTransition, NotFoundError, ValidationError
from app.models import db
from app.models.auth import Role, User, UserRole
from app.models.request import FINAL_STATUSES, STATUS_APPROVED, STATUS_REJECTED, RequestEntity
from app.models.workflow import (
    STEP_ACTIONS,
    StepExecution,
    StepTimeout,
    WorkflowExecution,
    WorkflowStep,
    WorkflowTemplate,
)
from app.services import entity_status_store as store
from app.services.notification import NotificationService
from app.services.workflow_validator import raise_for_errors, validate_workflow

logger = logging.getLogger(__name__)

DEPARTMENT_AGNOSTIC_ROLES = {"HOD", "Head of Department"}
TIMEOUT_COMMENT = "Auto-approved due to timeout"


# ═════════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════════


def create_template(data: dict, created_by: int | None = None) -> tuple[WorkflowTemplate, list[dict]]:
    """Validate and persist a workflow template.

    Returns:
        (template, warnings)

    Raises:
        WorkflowDefinitionError (or a subclass) when validation fails.
    """
    result = validate_workflow(data)
    raise_for_errors(result)

    template = WorkflowTemplate(
        name=data["name"].strip(),
        description=data.get("description") or "",
        module=data["module"],
        is_active=data.get("is_active", True),
        created_by=created_by,
    )
    for raw in sorted(data["steps"], key=lambda s: int(s["step_number"])):
        template.steps.append(WorkflowStep(
            step_number=int(raw["step_number"]),
            step_name=raw["step_name"].strip(),
            required_role=raw.get("required_role") or None,
            assigned_user_id=raw.get("assigned_user_id") or None,
            is_mandatory=raw.get("is_mandatory", True),
            can_delegate=raw.get("can_delegate", False),
            timeout_days=raw.get("timeout_days") or None,
            escalation_role=raw.get("escalation_role") or None,
            conditions=raw.get("conditions") or None,
        ))
    db.session.add(template)
    db.session.commit()
    logger.info("Workflow template %s created for %s (%d steps)",
                template.id, template.module, len(template.steps))
    return template, result.warnings


def list_templates(module: str | None = None, active_only: bool = False) -> list[WorkflowTemplate]:
    stmt = select(WorkflowTemplate).order_by(WorkflowTemplate.module, WorkflowTemplate.id)
    if module:
        stmt = stmt.where(WorkflowTemplate.module == module)
    if active_only:
        stmt = stmt.where(WorkflowTemplate.is_active.is_(True))
    return list(db.session.execute(stmt).scalars())


def get_template(template_id: int) -> WorkflowTemplate:
    template = db.session.get(WorkflowTemplate, template_id)
    if template is None:
        raise NotFoundError(resource="WorkflowTemplate", resource_id=template_id)
    return template


def _active_template(module: str) -> WorkflowTemplate | None:
    return db.session.execute(
        select(WorkflowTemplate)
        .where(WorkflowTemplate.module == module, WorkflowTemplate.is_active.is_(True))
        .order_by(WorkflowTemplate.id.desc())
        .limit(1)
    ).scalar_one_or_none()


# ═════════════════════════════════════════════════════════════════════════════
# Step helpers
# ═════════════════════════════════════════════════════════════════════════════


def find_user_by_role(role: str, department: str | None = None) -> int | None:
    """First active holder of *role*, oldest account first."""
    base = (
        select(User.id)
        .join(UserRole, UserRole.user_id == User.id)
        .join(Role, Role.id == UserRole.role_id)
        .where(Role.name == role, User.status == "active")
        .order_by(User.created_at, User.id)
        .limit(1)
    )
    if department and role not in DEPARTMENT_AGNOSTIC_ROLES:
        user_id = db.session.execute(
            base.where(db.func.lower(User.department) == department.lower())
        ).scalar_one_or_none()
        if user_id is not None:
            return user_id
    return db.session.execute(base).scalar_one_or_none()


def _outcomes(execution: WorkflowExecution) -> dict[int, str]:
    return {se.step_number: se.status for se in execution.step_executions}


def _condition_met(step: WorkflowStep, outcomes: dict[int, str]) -> bool:
    cond = step.conditions or {}
    if cond.get("type") != "depends_on_step":
        return True
    return outcomes.get(int(cond["step"])) == cond.get("outcome")


def _next_applicable_step(execution: WorkflowExecution, after: int) -> WorkflowStep | None:
    outcomes = _outcomes(execution)
    for step in execution.template.steps:
        if step.step_number <= after:
            continue
        if step.is_mandatory or _condition_met(step, outcomes):
            return step
        logger.info("Execution %s: step %d skipped (condition not met)", execution.id, step.step_number)
    return None


def _start_step(execution: WorkflowExecution, step: WorkflowStep, entity: RequestEntity,
                now: datetime | None = None) -> StepExecution:
    assignee = step.assigned_user_id
    if not assignee and step.required_role:
        assignee = find_user_by_role(step.required_role, entity.department)
    if assignee is None:
        logger.warning("Execution %s step %d: no active user holds role '%s'",
                       execution.id, step.step_number, step.required_role,
                       extra={"entity_id": entity.id})

    step_exec = StepExecution(
        step_id=step.id,
        step_number=step.step_number,
        status="pending",
        assigned_user_id=assignee,
        assigned_role=step.required_role,
    )
    execution.step_executions.append(step_exec)
    execution.current_step_number = step.step_number
    db.session.flush()

    if step.timeout_days:
        now = now or datetime.now(timezone.utc)
        db.session.add(StepTimeout(
            step_execution_id=step_exec.id,
            timeout_at=now + timedelta(days=step.timeout_days),
            escalation_role=step.escalation_role,
        ))
    return step_exec


def _step_execution(execution: WorkflowExecution, step_number: int) -> StepExecution:
    for se in execution.step_executions:
        if se.step_number == step_number:
            return se
    raise NotFoundError(resource="StepExecution", resource_id=f"{execution.id}/{step_number}")


def _actor_label(user_id: int | None) -> str:
    user = db.session.get(User, user_id) if user_id else None
    return user.display_name if user else "System"


def _ensure_open(entity: RequestEntity, action: str) -> None:
    if entity.current_status in FINAL_STATUSES:
        raise InvalidStateTransition(entity.id, action, entity.current_status,
                                     "request is in a terminal status")


def _finish(execution: WorkflowExecution, entity: RequestEntity, status: str, request_status: str,
            step_exec: StepExecution, actor_id: int | None, comments: str | None) -> None:
    entity = store.lock_request(entity.id)
    _ensure_open(entity, "approve" if request_status == STATUS_APPROVED else "reject")
    execution.status = status
    execution.completed_at = datetime.now(timezone.utc)
    previous = store.update_status(entity, request_status)
    store.append_step(
        entity, step_exec.assigned_role or "Approver",
        "Approved" if request_status == STATUS_APPROVED else "Rejected",
        _actor_label(actor_id),
        actor_id=actor_id, comments=comments,
        from_status=previous, to_status=request_status,
    )


# ── Notices (after commit, best effort) ──────────────────────────────────────


def _notify_assignee(execution: WorkflowExecution, step_exec: StepExecution, entity: RequestEntity) -> None:
    if step_exec.assigned_user_id is None:
        return
    try:
        step_name = step_exec.step.step_name if step_exec.step else f"Step {step_exec.step_number}"
        NotificationService.create(
            user_id=step_exec.assigned_user_id,
            title=f"Approval Required: {entity.entity_type.upper()}",
            message=f"{step_name} approval required for request {entity.id}",
            type="approval_request",
            category="workflow_approval",
            priority="high",
            related_entity_type=entity.entity_type,
            related_entity_id=entity.id,
            action_required=True,
        )
    except Exception:
        db.session.rollback()
        logger.exception("Step notice failed for execution %s", execution.id, extra={"entity_id": entity.id})


def _notify_requestor(execution: WorkflowExecution, entity: RequestEntity, outcome: str,
                      comments: str | None = None) -> None:
    if entity.requestor_id is None:
        return
    label = entity.entity_type.upper()
    if outcome == "approved":
        title = f"Request Approved: {label}"
        message = f"Your {entity.entity_type} request {entity.id} has been fully approved"
    else:
        title = f"Request Rejected: {label}"
        message = f"Your {entity.entity_type} request {entity.id} has been rejected"
        if comments:
            message += f": {comments}"
    try:
        NotificationService.create(
            user_id=entity.requestor_id,
            title=title,
            message=message,
            type="status_update",
            category="personal_status",
            related_entity_type=entity.entity_type,
            related_entity_id=entity.id,
        )
    except Exception:
        db.session.rollback()
        logger.exception("Completion notice failed for execution %s", execution.id,
                         extra={"entity_id": entity.id})


# ═════════════════════════════════════════════════════════════════════════════
# Executions
# ═════════════════════════════════════════════════════════════════════════════


def get_execution(execution_id: int) -> WorkflowExecution:
    execution = db.session.get(WorkflowExecution, execution_id)
    if execution is None:
        raise NotFoundError(resource="WorkflowExecution", resource_id=execution_id)
    return execution


def start_workflow(request_id: str, created_by: int | None = None) -> WorkflowExecution:
    """Bind the module's latest active template to *request_id*.

    Raises:
        NotFoundError: unknown request, or no active template for its module.
        InvalidStateTransition: the request is already in a terminal status.
        ValidationError: the request already has an active execution.
    """
    entity = store.get_request(request_id)
    _ensure_open(entity, "start_workflow")
    template = _active_template(entity.entity_type)
    if template is None:
        raise NotFoundError(resource="Active WorkflowTemplate", resource_id=entity.entity_type)

    running = db.session.execute(
        select(WorkflowExecution.id).where(
            WorkflowExecution.request_id == request_id, WorkflowExecution.status == "active",
        )
    ).first()
    if running is not None:
        raise ValidationError("Request already has an active workflow execution",
                              details={"execution_id": running[0]})

    execution = WorkflowExecution(
        template_id=template.id, request_id=entity.id, created_by=created_by, status="active",
    )
    execution.template = template
    db.session.add(execution)

    first = _next_applicable_step(execution, 0)
    if first is None:
        raise ValidationError("Workflow template has no applicable step",
                              details={"template_id": template.id})
    try:
        step_exec = _start_step(execution, first, entity)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Workflow %s started for %s (template %s)", execution.id, entity.id, template.id,
                extra={"entity_id": entity.id, "entity_type": entity.entity_type})
    _notify_assignee(execution, step_exec, entity)
    return execution


def advance(execution: WorkflowExecution, step_exec: StepExecution, actor_id: int | None,
            comments: str | None = None, now: datetime | None = None) -> StepExecution | None:
    """Move past an approved step. Caller commits.

    Returns:
        The newly started StepExecution, or None when the execution completed.
    """
    entity = store.get_request(execution.request_id)
    nxt = _next_applicable_step(execution, step_exec.step_number)
    if nxt is not None:
        return _start_step(execution, nxt, entity, now=now)
    _finish(execution, entity, "completed", STATUS_APPROVED, step_exec, actor_id, comments)
    return None


def process_step_action(
    execution_id: int,
    step_number: int,
    action: str,
    actor_id: int,
    comments: str | None = None,
    delegate_to: int | None = None,
) -> WorkflowExecution:
    """Approve, reject or delegate the pending step *step_number*.

    Raises:
        NotFoundError: unknown execution / step.
        InvalidStateTransition: execution or step no longer pending, the
            request already terminal, or the actor is neither the assignee
            nor the delegate.
        ValidationError: unknown action, delegation not allowed or no target.
    """
    if action not in STEP_ACTIONS:
        raise ValidationError(f"Invalid action '{action}'", details={"action": sorted(STEP_ACTIONS)})

    execution = get_execution(execution_id)
    label = f"execution:{execution.id}"
    if execution.status != "active":
        raise InvalidStateTransition(label, action, execution.status, "execution is not active")
    step_exec = _step_execution(execution, step_number)
    if step_exec.status not in ("pending", "escalated", "delegated"):
        raise InvalidStateTransition(label, action, step_exec.status, f"step {step_number} is not pending")
    if actor_id not in {step_exec.assigned_user_id, step_exec.delegated_to} - {None}:
        raise InvalidStateTransition(label, action, step_exec.status,
                                     "user is not authorized to act on this step")

    comments = (comments or "").strip() or None
    entity = store.get_request(execution.request_id)
    _ensure_open(entity, action)
    started = None
    try:
        now = datetime.now(timezone.utc)
        step_exec.action_taken_by = actor_id
        step_exec.action_taken_at = now
        step_exec.comments = comments

        if action == "approve":
            step_exec.status = "approved"
            started = advance(execution, step_exec, actor_id, comments)
        elif action == "reject":
            step_exec.status = "rejected"
            _finish(execution, entity, "cancelled", STATUS_REJECTED, step_exec, actor_id, comments)
        else:
            if step_exec.step is not None and not step_exec.step.can_delegate:
                raise ValidationError("This step cannot be delegated", details={"step_number": step_number})
            target = db.session.get(User, delegate_to) if delegate_to is not None else None
            if target is None or not target.is_active:
                raise ValidationError("delegate_to must reference an active user",
                                      details={"delegate_to": delegate_to})
            step_exec.status = "delegated"
            step_exec.delegated_to = target.id
            step_exec.assigned_user_id = target.id
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Execution %s step %d: %s by user %s", execution.id, step_number, action, actor_id,
                extra={"entity_id": entity.id, "entity_type": entity.entity_type})

    if action == "delegate" or started is not None:
        _notify_assignee(execution, started or step_exec, entity)
    elif execution.status in ("completed", "cancelled"):
        _notify_requestor(execution, entity, "approved" if action == "approve" else "rejected", comments)
    return execution


def notify_after_timeout(execution: WorkflowExecution, started: StepExecution | None) -> None:
    """Post-commit notices for the timeout sweep."""
    entity = store.get_request(execution.request_id)
    if started is not None:
        _notify_assignee(execution, started, entity)
    elif execution.status == "completed":
        _notify_requestor(execution, entity, "approved")
