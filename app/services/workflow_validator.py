"""
Workflow Validator: checks admin-authored workflow templates before save.

Errors block the save; warnings are returned alongside a successful save.

Errors:
    name required / ≤100 chars, description ≤500 chars, module ∈ entity
    types, 1..20 steps, step name required, role XOR user (neither = error),
    positive unique step numbers forming exactly 1..N, escalation role needs
    a positive timeout, referenced roles/users must exist (users active),
    active workflow names unique per module, structured conditions valid
    (a depends_on_step condition must point at an existing earlier step).

Warnings:
    role AND user set (user wins), no mandatory step, timeout > 30 days,
    duplicate step names, role without active members.

Usage:
    from app.services.workflow_validator import validate_workflow, raise_for_errors

    result = validate_workflow(payload)
    raise_for_errors(result)   # SequenceGap / MissingApprover / RoleOrUserNotFound / ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import func, select

from app.core.exceptions import (
    MissingApprover,
    RoleOrUserNotFound,
    SequenceGap,
    WorkflowDefinitionError,
)
from app.models import db
from app.models.auth import Role, User, UserRole
from app.models.request import ENTITY_TYPES
from app.models.workflow import (
    CONDITION_OUTCOMES,
    CONDITION_TYPES,
    MAX_DESCRIPTION_LENGTH,
    MAX_NAME_LENGTH,
    MAX_STEPS,
    WorkflowTemplate,
)

logger = logging.getLogger(__name__)

LONG_TIMEOUT_DAYS = 30


@dataclass
class ValidationResult:
    errors: list[dict] = field(default_factory=list)
    warnings: list[dict] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def error(self, code: str, field_name: str, message: str) -> None:
        self.errors.append({"code": code, "field": field_name, "message": message})

    def warn(self, code: str, field_name: str, message: str) -> None:
        self.warnings.append({"code": code, "field": field_name, "message": message})

    def codes(self) -> set[str]:
        return {e["code"] for e in self.errors}

    def to_dict(self) -> dict:
        return {"is_valid": self.is_valid, "errors": self.errors, "warnings": self.warnings}


# ── Basic fields ──────────────────────────────────────────────────────────────


def _validate_basics(data: dict, result: ValidationResult) -> None:
    name = (data.get("name") or "").strip()
    if not name:
        result.error("NAME_REQUIRED", "name", "Workflow name is required")
    elif len(name) > MAX_NAME_LENGTH:
        result.error("NAME_TOO_LONG", "name", f"Workflow name must be ≤ {MAX_NAME_LENGTH} characters")

    if len(data.get("description") or "") > MAX_DESCRIPTION_LENGTH:
        result.error("DESCRIPTION_TOO_LONG", "description",
                     f"Description must be ≤ {MAX_DESCRIPTION_LENGTH} characters")

    module = data.get("module")
    if module not in ENTITY_TYPES:
        result.error("INVALID_MODULE", "module", f"Module must be one of: {', '.join(ENTITY_TYPES)}")

    steps = data.get("steps")
    if not isinstance(steps, list) or not steps:
        result.error("NO_STEPS", "steps", "Workflow must have at least one step")
    elif len(steps) > MAX_STEPS:
        result.error("TOO_MANY_STEPS", "steps", f"Workflow cannot have more than {MAX_STEPS} steps")


# ── Steps ─────────────────────────────────────────────────────────────────────


def _step_number(step: dict):
    raw = step.get("step_number")
    if isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _validate_steps(steps: list[dict], result: ValidationResult) -> None:
    seen_numbers: set[int] = set()
    seen_names: set[str] = set()

    for idx, step in enumerate(steps):
        f = f"steps[{idx}]"
        name = (step.get("step_name") or "").strip()
        if not name:
            result.error("STEP_NAME_REQUIRED", f"{f}.step_name", f"Step {idx + 1}: name is required")
        elif name.lower() in seen_names:
            result.warn("DUPLICATE_STEP_NAME", f"{f}.step_name", f"Step name '{name}' is used more than once")
        else:
            seen_names.add(name.lower())

        role = step.get("required_role")
        user = step.get("assigned_user_id")
        if not role and not user:
            result.error("MISSING_APPROVER", f"{f}", f"Step {idx + 1}: a required role or an assigned user is required")
        elif role and user:
            result.warn("ROLE_AND_USER", f"{f}", f"Step {idx + 1}: both role and user set; the user takes precedence")

        number = _step_number(step)
        if number is None or number < 1:
            result.error("INVALID_STEP_NUMBER", f"{f}.step_number", f"Step {idx + 1}: step number must be a positive integer")
        elif number in seen_numbers:
            result.error("DUPLICATE_STEP_NUMBER", f"{f}.step_number", f"Duplicate step number {number}")
        else:
            seen_numbers.add(number)

        timeout = step.get("timeout_days")
        if step.get("escalation_role") and not timeout:
            result.error("TIMEOUT_REQUIRED", f"{f}.timeout_days",
                         f"Step {idx + 1}: an escalation role requires a timeout")
        if timeout is not None:
            try:
                timeout_val = int(timeout)
            except (TypeError, ValueError):
                timeout_val = 0
            if timeout_val <= 0:
                result.error("INVALID_TIMEOUT", f"{f}.timeout_days", f"Step {idx + 1}: timeout must be positive")
            elif timeout_val > LONG_TIMEOUT_DAYS:
                result.warn("LONG_TIMEOUT", f"{f}.timeout_days",
                            f"Step {idx + 1}: timeout longer than {LONG_TIMEOUT_DAYS} days")

    if seen_numbers:
        expected = set(range(1, len(steps) + 1))
        missing = sorted(expected - seen_numbers)
        if missing or seen_numbers != expected:
            result.error("SEQUENCE_GAP", "steps",
                         f"Step numbers must be 1..{len(steps)}; missing {missing or sorted(seen_numbers - expected)}")

    if not any(step.get("is_mandatory", True) for step in steps):
        result.warn("NO_MANDATORY_STEPS", "steps", "No step is mandatory")


def _validate_conditions(steps: list[dict], result: ValidationResult) -> None:
    numbers = {n for n in (_step_number(s) for s in steps) if n is not None}
    for idx, step in enumerate(steps):
        cond = step.get("conditions")
        if cond in (None, {}):
            continue
        f = f"steps[{idx}].conditions"
        if not isinstance(cond, dict) or cond.get("type") not in CONDITION_TYPES:
            result.error("INVALID_CONDITION", f, f"Condition type must be one of: {', '.join(sorted(CONDITION_TYPES))}")
            continue
        if cond["type"] != "depends_on_step":
            continue
        try:
            ref = int(cond.get("step"))
        except (TypeError, ValueError):
            result.error("INVALID_CONDITION", f, "depends_on_step needs a numeric 'step'")
            continue
        if cond.get("outcome") not in CONDITION_OUTCOMES:
            result.error("INVALID_CONDITION", f, f"outcome must be one of: {', '.join(sorted(CONDITION_OUTCOMES))}")
        own = _step_number(step)
        if own is not None and ref >= own:
            result.error("CIRCULAR_DEPENDENCY", f,
                         f"Step {own} cannot depend on step {ref} (must reference an earlier step)")
        elif ref not in numbers:
            result.error("INVALID_CONDITION", f, f"Referenced step {ref} does not exist")


# ── References (DB) ───────────────────────────────────────────────────────────


def _validate_references(data: dict, steps: list[dict], result: ValidationResult, exclude_id: int | None) -> None:
    role_names = set()
    for step in steps:
        for key in ("required_role", "escalation_role"):
            if step.get(key):
                role_names.add(step[key])

    existing_roles = {}
    if role_names:
        rows = db.session.execute(select(Role.id, Role.name).where(Role.name.in_(role_names)))
        existing_roles = {name: rid for rid, name in rows}

    for idx, step in enumerate(steps):
        for key in ("required_role", "escalation_role"):
            role = step.get(key)
            if role and role not in existing_roles:
                result.error("ROLE_NOT_FOUND", f"steps[{idx}].{key}", f"Role '{role}' does not exist")

        user_id = step.get("assigned_user_id")
        if user_id:
            user = db.session.get(User, user_id)
            if user is None:
                result.error("USER_NOT_FOUND", f"steps[{idx}].assigned_user_id", f"User {user_id} does not exist")
            elif not user.is_active:
                result.error("USER_INACTIVE", f"steps[{idx}].assigned_user_id", f"User {user_id} is not active")

        role = step.get("required_role")
        if role in existing_roles and not step.get("assigned_user_id"):
            members = db.session.execute(
                select(func.count(User.id))
                .join(UserRole, UserRole.user_id == User.id)
                .where(UserRole.role_id == existing_roles[role], User.status == "active")
            ).scalar_one()
            if not members:
                result.warn("ROLE_WITHOUT_MEMBERS", f"steps[{idx}].required_role",
                            f"Role '{role}' has no active users")

    name = (data.get("name") or "").strip()
    if name and data.get("module") in ENTITY_TYPES:
        stmt = select(WorkflowTemplate.id).where(
            func.lower(WorkflowTemplate.name) == name.lower(),
            WorkflowTemplate.module == data["module"],
            WorkflowTemplate.is_active.is_(True),
        )
        if exclude_id is not None:
            stmt = stmt.where(WorkflowTemplate.id != exclude_id)
        if db.session.execute(stmt).first() is not None:
            result.error("DUPLICATE_WORKFLOW_NAME", "name",
                         f"An active workflow named '{name}' already exists for {data['module']}")


# ── Public API ────────────────────────────────────────────────────────────────


def validate_workflow(data: dict, *, exclude_id: int | None = None) -> ValidationResult:
    """Validate a workflow template payload. Never raises."""
    result = ValidationResult()
    _validate_basics(data, result)

    steps = data.get("steps") if isinstance(data.get("steps"), list) else []
    steps = [s for s in steps if isinstance(s, dict)]
    if steps:
        _validate_steps(steps, result)
        _validate_conditions(steps, result)
    _validate_references(data, steps, result, exclude_id)

    if result.errors:
        logger.info("Workflow template rejected: %s", sorted(result.codes()))
    return result


_ERROR_CLASSES = {
    "SEQUENCE_GAP": SequenceGap,
    "DUPLICATE_STEP_NUMBER": SequenceGap,
    "MISSING_APPROVER": MissingApprover,
    "ROLE_NOT_FOUND": RoleOrUserNotFound,
    "USER_NOT_FOUND": RoleOrUserNotFound,
    "USER_INACTIVE": RoleOrUserNotFound,
}


def raise_for_errors(result: ValidationResult) -> None:
    """Raise the most specific WorkflowDefinitionError for *result*, if any."""
    if result.is_valid:
        return
    first = result.errors[0]
    exc_class = _ERROR_CLASSES.get(first["code"], WorkflowDefinitionError)
    raise exc_class(first["message"], errors=result.errors, warnings=result.warnings)
