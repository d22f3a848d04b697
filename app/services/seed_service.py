"""
Seed data for the approval workflow: roles, permissions, notification event
types and the consolidated notification templates.

Idempotent: existing rows are updated in place, missing ones created.
Used by the ``flask seed-workflow-data`` command, scripts/seed_roles.py and
the test fixtures.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from app.models import db
from app.models.auth import Permission, Role, RolePermission
from app.models.notification import NotificationEventType, NotificationTemplate
from app.models.request import ENTITY_LABELS, ENTITY_TYPES
from app.services import workflow_routing as routing

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════
# ROLES & PERMISSIONS
# ═══════════════════════════════════════════════════════════════

_PROCESSING_ROLES = {
    "trf": ["Ticketing Admin"],
    "claims": ["Claims Admin", "Finance Clerk", "Finance Admin"],
    "visa": ["Visa Clerk"],
    "transport": ["Transport Admin"],
    "accommodation": ["Accommodation Admin"],
}

ROLES = {
    routing.SYSTEM_ADMIN_ROLE: "Full access; may act on any workflow stage",
    routing.REQUESTOR_ROLE: "Creates and tracks own requests",
    "Department Focal": "First-level approver within a department",
    "Line Manager": "Second-level approver",
    "HOD": "Head of department, final approver",
    "Ticketing Admin": "Books flights for approved travel requests",
    "Accommodation Admin": "Arranges approved accommodation",
    "Transport Admin": "Arranges approved transport",
    "Visa Clerk": "Processes approved visa applications",
    "Finance Clerk": "Assists with claims processing",
    "Claims Admin": "Verifies approved expense claims",
    "Finance Admin": "Releases payment for processed claims",
}


def _permissions() -> list[tuple[str, str, str]]:
    perms = []
    for et in ENTITY_TYPES:
        label = ENTITY_LABELS[et]
        perms.append((f"create_{et}", et, f"Create {label}"))
        perms.append((f"approve_{et}_focal", et, f"Approve {label} as Department Focal"))
        perms.append((f"approve_{et}_manager", et, f"Approve {label} as Line Manager"))
        perms.append((f"approve_{et}_hod", et, f"Approve {label} as HOD"))
        perms.append((f"process_{et}", et, f"Process approved {label}"))
    perms.append((routing.FLIGHTS_PERMISSION, "trf", "Book flights for approved travel requests"))
    return perms


def _role_grants(all_codenames: set[str]) -> dict[str, set[str]]:
    grants = {name: set() for name in ROLES}
    grants[routing.SYSTEM_ADMIN_ROLE] = set(all_codenames)
    for et in ENTITY_TYPES:
        grants[routing.REQUESTOR_ROLE].add(f"create_{et}")
        grants["Department Focal"].add(f"approve_{et}_focal")
        grants["Line Manager"].add(f"approve_{et}_manager")
        grants["HOD"].add(f"approve_{et}_hod")
        for role in _PROCESSING_ROLES[et]:
            grants[role].add(f"process_{et}")
    grants["Ticketing Admin"].add(routing.FLIGHTS_PERMISSION)
    return grants


def seed_permissions() -> int:
    created = 0
    for codename, category, description in _permissions():
        existing = db.session.execute(
            select(Permission).where(Permission.codename == codename)
        ).scalar_one_or_none()
        if existing is None:
            db.session.add(Permission(codename=codename, category=category, description=description))
            created += 1
        else:
            existing.description = description
    db.session.flush()
    return created


def seed_roles() -> int:
    perms = {p.codename: p for p in db.session.execute(select(Permission)).scalars()}
    grants = _role_grants(set(perms))
    created = 0
    for name, description in ROLES.items():
        role = db.session.execute(select(Role).where(Role.name == name)).scalar_one_or_none()
        if role is None:
            role = Role(name=name, description=description, is_system=True)
            db.session.add(role)
            db.session.flush()
            created += 1
        else:
            role.description = description

        existing = {rp.permission.codename for rp in role.role_permissions}
        for codename in grants[name] - existing:
            db.session.add(RolePermission(role_id=role.id, permission_id=perms[codename].id))
    db.session.flush()
    return created


# ═══════════════════════════════════════════════════════════════
# NOTIFICATION EVENT TYPES & TEMPLATES
# ═══════════════════════════════════════════════════════════════

_EVENTS = {
    "submitted": ("approval", "Request submitted for approval"),
    "approved": ("approval", "Approval stage completed"),
    "rejected": ("status_update", "Request rejected"),
    "cancelled": ("status_update", "Request cancelled by requestor"),
    "delegated": ("approval", "Approval delegated to another user"),
    "processing": ("status_update", "Request moved within the admin queue"),
    "completed": ("status_update", "Request processing completed"),
}

_FOOTER = "<p><a href=\"{viewUrl}\">View request</a></p>"

_DETAILS = (
    "<ul>"
    "<li>Request: {entityId}</li>"
    "<li>Purpose: {entityTitle}</li>"
    "<li>Requestor: {requestorName} ({department})</li>"
    "{entityAmount && <li>Amount: {entityAmount}</li>}"
    "{entityDates && <li>Dates: {entityDates}</li>}"
    "</ul>"
)


def _default_templates(et: str) -> list[dict]:
    label = ENTITY_LABELS[et]
    approve_link = "<p><a href=\"{approvalUrl}\">Review and approve</a></p>"
    return [
        {
            "name": f"{et}_submitted_to_focal", "event": "submitted", "recipient_type": "approver",
            "subject": f"{label} {{entityId}} awaiting your approval",
            "body": "<p>Dear {recipientName},</p>"
                    f"<p>A new {label.lower()} has been submitted and needs your approval.</p>"
                    + _DETAILS + approve_link,
        },
        {
            "name": f"{et}_focal_approved_to_manager", "event": "approved", "recipient_type": "approver",
            "subject": f"{label} {{entityId}} approved by Department Focal",
            "body": "<p>Dear {recipientName},</p>"
                    "<p>{previousApprover} ({approverRole}) approved this request. "
                    "It now needs Line Manager approval.</p>"
                    "{comments && <p>Comments: {comments}</p>}"
                    + _DETAILS + approve_link,
        },
        {
            "name": f"{et}_manager_approved_to_hod", "event": "approved", "recipient_type": "approver",
            "subject": f"{label} {{entityId}} approved by Line Manager",
            "body": "<p>Dear {recipientName},</p>"
                    "<p>{previousApprover} ({approverRole}) approved this request. "
                    "It now needs HOD approval.</p>"
                    "{comments && <p>Comments: {comments}</p>}"
                    + _DETAILS + approve_link,
        },
        {
            "name": f"{et}_hod_approved_to_admin", "event": "approved", "recipient_type": "approver",
            "subject": f"{label} {{entityId}} fully approved, ready for processing",
            "body": "<p>Dear {recipientName},</p>"
                    "<p>This request is fully approved (status: {currentStatus}) and is in your queue.</p>"
                    + _DETAILS + "<p><a href=\"{processingUrl}\">Process request</a></p>",
        },
        {
            "name": f"{et}_admin_completed_to_requestor", "event": "completed", "recipient_type": "requestor",
            "subject": f"Your {label.lower()} {{entityId}} is {{currentStatus}}",
            "body": "<p>Dear {recipientName},</p>"
                    "<p>Your request has reached status <strong>{currentStatus}</strong>.</p>"
                    "{comments && <p>Comments: {comments}</p>}"
                    + _DETAILS + _FOOTER,
        },
        {
            "name": f"{et}_rejected_requestor", "event": "rejected", "recipient_type": "requestor",
            "subject": f"Your {label.lower()} {{entityId}} was rejected",
            "body": "<p>Dear {recipientName},</p>"
                    "<p>Your request was rejected by {approverName} ({approverRole}).</p>"
                    "{rejectionReason && <p>Reason: {rejectionReason}</p>}"
                    + _DETAILS + "<p><a href=\"{newRequestUrl}\">Submit a new request</a></p>",
        },
        {
            "name": f"{et}_delegated", "event": "delegated", "recipient_type": "approver",
            "subject": f"{label} {{entityId}} delegated to you",
            "body": "<p>Dear {recipientName},</p>"
                    "<p>{approverName} delegated the approval of this request to you.</p>"
                    "{comments && <p>Comments: {comments}</p>}"
                    + _DETAILS + approve_link,
        },
        {
            "name": f"{et}_cancelled", "event": "cancelled", "recipient_type": "requestor",
            "subject": f"Your {label.lower()} {{entityId}} was cancelled",
            "body": "<p>Dear {recipientName},</p>"
                    "<p>Your request was cancelled (previous status: {previousStatus}).</p>"
                    + _DETAILS + _FOOTER,
        },
    ]


def seed_event_types() -> int:
    created = 0
    for et in ENTITY_TYPES:
        for suffix, (category, description) in _EVENTS.items():
            name = f"{et}_{suffix}"
            event = db.session.execute(
                select(NotificationEventType).where(NotificationEventType.name == name)
            ).scalar_one_or_none()
            if event is None:
                db.session.add(NotificationEventType(
                    name=name, category=category, module=et, description=description,
                ))
                created += 1
    db.session.flush()
    return created


def seed_templates() -> int:
    events = {e.name: e for e in db.session.execute(select(NotificationEventType)).scalars()}
    created = 0
    for et in ENTITY_TYPES:
        for tpl in _default_templates(et):
            template = db.session.execute(
                select(NotificationTemplate).where(NotificationTemplate.name == tpl["name"])
            ).scalar_one_or_none()
            if template is None:
                template = NotificationTemplate(name=tpl["name"], is_active=True)
                db.session.add(template)
                created += 1
            template.subject = tpl["subject"]
            template.body = tpl["body"]
            template.recipient_type = tpl["recipient_type"]
            event = events.get(f"{et}_{tpl['event']}")
            template.event_type_id = event.id if event else None
    db.session.flush()
    return created


def seed_all() -> dict:
    """Seed everything and commit. Returns created-row counts."""
    counts = {
        "permissions": seed_permissions(),
        "roles": seed_roles(),
        "event_types": seed_event_types(),
        "templates": seed_templates(),
    }
    db.session.commit()
    logger.info("Workflow seed data applied: %s", counts)
    return counts
