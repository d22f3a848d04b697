"""
Employee Request Portal
Approver Resolver.

Maps (entity type, status, department, sub-type) to the permission that
must act next, and that permission to the concrete users holding it.

Rules:
    - Only active users with a non-empty email are candidates.
    - Department scoping applies to focal-level permissions only
      (case-insensitive). Manager/HOD/admin approvals are department-agnostic.
    - When several roles grant the same permission, the role-priority table
      narrows the candidates to the first preferred role that has members.
      If no preferred role has members, every candidate is kept so at least
      one person is notified.
    - An approved TRF is routed by classify_destination(): the flights queue
      when it involves flights, otherwise nowhere.

Usage:
    from app.services import approver_resolver

    perm = approver_resolver.resolve("trf", "Pending Department Focal")
    users = approver_resolver.resolve_users("trf", "Pending Department Focal", department="Finance")
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select

from app.models import db
from app.models.auth import Permission, Role, RolePermission, User, UserRole
from app.models.request import RequestEntity
from app.services import entity_status_store as store
from app.services import workflow_routing as routing
from app.services.recipient_builder import Recipient

logger = logging.getLogger(__name__)


# ── Destination classifier ────────────────────────────────────────────────────


def classify_destination(entity: RequestEntity) -> str | None:
    """Decide the administrative queue for a flight-routed status.

    Returns ``process_flights`` when the request has at least one flight
    itinerary segment or its travel type is one that always involves
    flights; otherwise ``None`` (no further queue). Reads persisted data
    only, so the same request always yields the same decision.
    """
    if store.has_flight_segments(entity.id):
        return routing.FLIGHTS_PERMISSION
    travel_type = (entity.travel_type or "").strip().lower()
    if travel_type and travel_type in routing.flight_travel_types():
        return routing.FLIGHTS_PERMISSION
    return None


# ── Permission resolution ─────────────────────────────────────────────────────


def resolve(
    entity_type: str,
    status: str,
    department: str | None = None,
    sub_type: str | None = None,
    *,
    entity: RequestEntity | None = None,
) -> str | None:
    """Return the permission required to act on (entity_type, status).

    ``None`` means nobody acts next (unmapped status, or a TRF without
    flights). Callers log and skip; they never fail the transition.
    """
    permission = routing.permission_for(entity_type, status)
    if permission is None:
        return None

    if routing.is_flight_routed(entity_type, status):
        if entity is not None:
            return classify_destination(entity)
        travel_type = (sub_type or "").strip().lower()
        return permission if travel_type in routing.flight_travel_types() else None

    return permission


def _candidates(permission: str, department: str | None) -> dict[int, tuple[User, list[str]]]:
    stmt = (
        select(User, Role.name)
        .join(UserRole, UserRole.user_id == User.id)
        .join(Role, Role.id == UserRole.role_id)
        .join(RolePermission, RolePermission.role_id == Role.id)
        .join(Permission, Permission.id == RolePermission.permission_id)
        .where(
            Permission.codename == permission,
            User.status == "active",
            User.email.isnot(None),
            User.email != "",
        )
        .order_by(User.id)
    )
    if department and routing.is_department_scoped(permission):
        stmt = stmt.where(func.lower(User.department) == department.strip().lower())

    found: dict[int, tuple[User, list[str]]] = {}
    for user, role_name in db.session.execute(stmt):
        entry = found.setdefault(user.id, (user, []))
        entry[1].append(role_name)
    return found


def users_with_permission(
    permission: str,
    department: str | None = None,
    status: str | None = None,
) -> list[Recipient]:
    """Active, emailable holders of *permission*, narrowed by role priority."""
    found = _candidates(permission, department)
    if not found:
        return []

    for preferred in routing.role_priority(permission, status):
        narrowed = [
            Recipient(user_id=u.id, name=u.display_name, email=u.email,
                      role=preferred, department=u.department)
            for u, roles in found.values() if preferred in roles
        ]
        if narrowed:
            return narrowed

    return [
        Recipient(user_id=u.id, name=u.display_name, email=u.email,
                  role=roles[0], department=u.department)
        for u, roles in found.values()
    ]


def resolve_users(
    entity_type: str,
    status: str,
    department: str | None = None,
    sub_type: str | None = None,
    *,
    entity: RequestEntity | None = None,
) -> list[Recipient]:
    """Resolve the users authorised to act next. Empty when nobody is mapped."""
    permission = resolve(entity_type, status, department, sub_type, entity=entity)
    if permission is None:
        logger.info(
            "No approver permission for %s '%s'", entity_type, status,
            extra={"entity_type": entity_type, "entity_id": entity.id if entity else None},
        )
        return []
    users = users_with_permission(permission, department, status)
    logger.debug("Resolved %d holder(s) of %s", len(users), permission)
    return users


def find_requestor(user_id: int | None = None, email: str | None = None) -> Recipient | None:
    """Look up the requestor by id, then by email; only active users with an email."""
    user = None
    if user_id is not None:
        user = db.session.get(User, user_id)
    if user is None and email:
        user = db.session.execute(
            select(User).where(func.lower(User.email) == email.strip().lower())
        ).scalars().first()
    if user is None or not user.can_receive_email:
        return None
    return Recipient(user_id=user.id, name=user.display_name, email=user.email,
                     role=routing.REQUESTOR_ROLE, department=user.department, membership="cc")
