"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Two families live here besides the generic NotFound/Validation pair:

  * Workflow runtime errors (WorkflowError subclasses). InvalidStateTransition
    and DuplicateRequest surface to the caller. NoPermissionMapping,
    NoRecipientsFound and TemplateNotFound are raised inside notification
    dispatch, where they are logged and the step is skipped. They never
    reach the caller of a state transition.
  * Workflow definition errors (WorkflowDefinitionError subclasses) that block
    saving an admin-authored workflow template.

Usage:
    from app.core.exceptions import NotFoundError, InvalidStateTransition

    raise NotFoundError(resource="Request", resource_id="TRF-20260101-ABC123")
    raise InvalidStateTransition("TRF-1", "approve", "Rejected")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Request", "User").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


# ═════════════════════════════════════════════════════════════════════════
# Workflow runtime errors
# ═════════════════════════════════════════════════════════════════════════


class WorkflowError(Exception):
    """Base class for approval-workflow runtime errors."""


class InvalidStateTransition(WorkflowError):
    """Raised when an action is not legal for the entity's current status.

    Fatal to the action; maps to HTTP 409.
    """

    def __init__(self, entity_id: str, action: str, current: str, reason: str | None = None) -> None:
        msg = f"Cannot '{action}' request {entity_id} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.entity_id = entity_id
        self.action = action
        self.current_status = current
        self.reason = reason


class NoPermissionMapping(WorkflowError):
    """No permission is configured for (entity_type, status)."""

    def __init__(self, entity_type: str, status: str) -> None:
        super().__init__(f"No permission mapping for {entity_type} status '{status}'")
        self.entity_type = entity_type
        self.status = status


class NoRecipientsFound(WorkflowError):
    """Recipient resolution produced nobody to send to."""

    def __init__(self, template_name: str, reason: str = "no recipients resolved") -> None:
        super().__init__(f"{template_name}: {reason}")
        self.template_name = template_name
        self.reason = reason


class TemplateNotFound(WorkflowError):
    """Routed template name is missing or inactive."""

    def __init__(self, template_name: str) -> None:
        super().__init__(f"Notification template '{template_name}' not found or inactive")
        self.template_name = template_name


class DuplicateRequest(WorkflowError):
    """Same user + operation + payload seen inside the suppression window.

    Not a server error: maps to HTTP 409 with the remaining wait time.
    """

    def __init__(self, operation: str, remaining_seconds: int) -> None:
        super().__init__(
            f"Duplicate '{operation}' request; retry in {remaining_seconds}s",
        )
        self.operation = operation
        self.remaining_seconds = remaining_seconds


# ═════════════════════════════════════════════════════════════════════════
# Workflow definition errors (block save)
# ═════════════════════════════════════════════════════════════════════════


class WorkflowDefinitionError(ValidationError):
    """Admin-authored workflow template failed validation.

    Carries the full validation result so callers can show every problem,
    not just the first.
    """

    def __init__(self, message: str, errors: list[dict] | None = None,
                 warnings: list[dict] | None = None) -> None:
        self.errors = errors or []
        self.warnings = warnings or []
        super().__init__(message, details={"errors": self.errors, "warnings": self.warnings})


class RoleOrUserNotFound(WorkflowDefinitionError):
    """A step references a role or user that does not exist or is inactive."""


class SequenceGap(WorkflowDefinitionError):
    """Step numbers are not exactly the contiguous sequence 1..N."""


class MissingApprover(WorkflowDefinitionError):
    """A step has neither a required role nor an assigned user."""
