"""
Employee Request Portal
Notification Template Router.

One consolidated template per workflow stage; the template itself carries
both the TO (approver) and CC (requestor) audience. Precedence, first match
wins:

    1. event contains "submitted"            → {entity}_submitted_to_focal
    2. status is an intermediate pending one  → {entity}_focal_approved_to_manager
                                                / {entity}_manager_approved_to_hod
    3. status Approved / Processing with *    → {entity}_hod_approved_to_admin
    4. status Completed/Processed, or event
       contains "completed"                   → {entity}_admin_completed_to_requestor
    5. event contains "rejected"              → {entity}_rejected_requestor
    6. fallback                               → the event type itself
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from app.core.exceptions import TemplateNotFound
from app.models import db
from app.models.notification import NotificationTemplate
from app.models.request import (
    STATUS_APPROVED,
    STATUS_COMPLETED,
    STATUS_PENDING_HOD,
    STATUS_PENDING_MANAGER,
    STATUS_PROCESSED,
)

logger = logging.getLogger(__name__)

_HANDOFF_TEMPLATES = {
    STATUS_PENDING_MANAGER: "focal_approved_to_manager",
    STATUS_PENDING_HOD: "manager_approved_to_hod",
}

STAGE_TEMPLATE_SUFFIXES = (
    "submitted_to_focal",
    "focal_approved_to_manager",
    "manager_approved_to_hod",
    "hod_approved_to_admin",
    "admin_completed_to_requestor",
    "rejected_requestor",
)


def entity_type_of(event_type: str) -> str:
    """'trf_submitted' → 'trf'."""
    return event_type.split("_", 1)[0]


def templates_for(event_type: str, current_status: str, entity_type: str | None = None) -> list[str]:
    """Ordered template names to fire for (event_type, current_status)."""
    entity_type = entity_type or entity_type_of(event_type)
    event = (event_type or "").lower()
    status = current_status or ""

    if "submitted" in event:
        return [f"{entity_type}_submitted_to_focal"]

    if status in _HANDOFF_TEMPLATES:
        return [f"{entity_type}_{_HANDOFF_TEMPLATES[status]}"]

    if status == STATUS_APPROVED or status.startswith("Processing with"):
        return [f"{entity_type}_hod_approved_to_admin"]

    if status in (STATUS_COMPLETED, STATUS_PROCESSED) or "completed" in event:
        return [f"{entity_type}_admin_completed_to_requestor"]

    if "rejected" in event:
        return [f"{entity_type}_rejected_requestor"]

    return [event_type]


def load_template(name: str) -> NotificationTemplate:
    """Return the active template called *name*.

    Raises:
        TemplateNotFound: missing or inactive.
    """
    template = db.session.execute(
        select(NotificationTemplate).where(
            NotificationTemplate.name == name,
            NotificationTemplate.is_active.is_(True),
        )
    ).scalar_one_or_none()
    if template is None:
        raise TemplateNotFound(name)
    return template
