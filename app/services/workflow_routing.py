"""
Employee Request Portal
Workflow routing tables.

The status sequences, status → permission map, acting roles and the
role-priority filter are plain data. Defaults below cover the five entity
types; a JSON file named by ``WORKFLOW_ROUTING_FILE`` can override or extend
any table (per entity type), so adding a stage or a new entity type does not
need a code change.

Override file shape (every key optional):
    {
        "approval_sequences": {"trf": ["Pending Department Focal", "Pending HOD"]},
        "status_permissions": {"trf": {"Pending HOD": "approve_trf_hod"}},
        "role_priority": {"process_claims": ["Claims Admin"]},
        "flight_travel_types": ["Overseas"]
    }

Usage:
    from app.services import workflow_routing as routing

    routing.next_approval_status("trf", "Pending Line Manager")  # "Pending HOD"
    routing.permission_for("claims", "Approved")                 # "process_claims"
"""

from __future__ import annotations

import copy
import json
import logging

from flask import current_app, has_app_context

from app.models.request import (
    ENTITY_TYPES,
    STATUS_APPROVED,
    STATUS_COMPLETED,
    STATUS_DRAFT,
    STATUS_PENDING_FOCAL,
    STATUS_PENDING_HOD,
    STATUS_PENDING_MANAGER,
    STATUS_PROCESSED,
)

logger = logging.getLogger(__name__)

SYSTEM_ADMIN_ROLE = "System Administrator"
REQUESTOR_ROLE = "Requestor"
FLIGHTS_PERMISSION = "process_flights"


# ── Defaults ─────────────────────────────────────────────────────────────────

_APPROVAL_CHAIN = [STATUS_PENDING_FOCAL, STATUS_PENDING_MANAGER, STATUS_PENDING_HOD]

_STAGE_ROLE = {
    STATUS_PENDING_FOCAL: "Department Focal",
    STATUS_PENDING_MANAGER: "Line Manager",
    STATUS_PENDING_HOD: "HOD",
}

_STAGE_SUFFIX = {
    STATUS_PENDING_FOCAL: "focal",
    STATUS_PENDING_MANAGER: "manager",
    STATUS_PENDING_HOD: "hod",
}

# Admin queue after full approval: status → next status
_PROCESSING = {
    "trf": {
        STATUS_APPROVED: "Processing with Ticketing Admin",
        "Processing with Ticketing Admin": STATUS_COMPLETED,
    },
    "claims": {
        STATUS_APPROVED: "Processing with Claims Admin",
        "Processing with Claims Admin": STATUS_PROCESSED,
    },
    "visa": {
        STATUS_APPROVED: "Processing with Visa Admin",
        "Processing with Visa Admin": "Processing with Embassy",
        "Processing with Embassy": STATUS_PROCESSED,
    },
    "transport": {
        STATUS_APPROVED: "Processing with Transport Admin",
        "Processing with Transport Admin": STATUS_COMPLETED,
    },
    "accommodation": {
        STATUS_APPROVED: "Processing with Accommodation Admin",
        "Processing with Accommodation Admin": STATUS_COMPLETED,
    },
}

_PROCESSING_ROLES = {
    "trf": ["Ticketing Admin"],
    "claims": ["Claims Admin", "Finance Clerk", "Finance Admin"],
    "visa": ["Visa Clerk"],
    "transport": ["Transport Admin"],
    "accommodation": ["Accommodation Admin"],
}


def _default_status_permissions(entity_type: str) -> dict[str, str]:
    perms = {status: f"approve_{entity_type}_{suffix}" for status, suffix in _STAGE_SUFFIX.items()}
    for status in _PROCESSING[entity_type]:
        perms[status] = f"process_{entity_type}"
    if entity_type == "trf":
        # Approved TRFs go to the flights queue only when they involve flights
        perms[STATUS_APPROVED] = FLIGHTS_PERMISSION
        perms["Processing with Ticketing Admin"] = FLIGHTS_PERMISSION
    return perms


def _default_stage_roles(entity_type: str) -> dict[str, list[str]]:
    roles = {status: [role] for status, role in _STAGE_ROLE.items()}
    for status in _PROCESSING[entity_type]:
        roles[status] = list(_PROCESSING_ROLES[entity_type])
    return roles


def _default_role_priority() -> dict[str, list[str]]:
    priority = {}
    for et in ENTITY_TYPES:
        for status, suffix in _STAGE_SUFFIX.items():
            priority[f"approve_{et}_{suffix}"] = [_STAGE_ROLE[status]]
        priority[f"process_{et}"] = list(_PROCESSING_ROLES[et])
    priority[FLIGHTS_PERMISSION] = ["Ticketing Admin"]
    # Approved claims land with Claims Admin first; payment goes to Finance Admin
    priority[f"process_claims@{STATUS_APPROVED}"] = ["Claims Admin", "Finance Clerk", "Finance Admin"]
    priority["process_claims@Processing with Claims Admin"] = ["Finance Admin", "Claims Admin", "Finance Clerk"]
    return priority


DEFAULT_ROUTING: dict = {
    "approval_sequences": {et: list(_APPROVAL_CHAIN) for et in ENTITY_TYPES},
    "fully_approved_status": {et: STATUS_APPROVED for et in ENTITY_TYPES},
    "processing_sequences": copy.deepcopy(_PROCESSING),
    "status_permissions": {et: _default_status_permissions(et) for et in ENTITY_TYPES},
    "stage_roles": {et: _default_stage_roles(et) for et in ENTITY_TYPES},
    "role_priority": _default_role_priority(),
    "department_scoped_suffixes": ["_focal"],
    "flight_routed_statuses": {"trf": [STATUS_APPROVED, "Processing with Ticketing Admin"]},
    "flight_travel_types": ["Overseas", "Home Leave Passage"],
    "cancellable_statuses": [STATUS_DRAFT] + list(_APPROVAL_CHAIN),
    "reject_requires_comments": list(ENTITY_TYPES),
}

_PER_ENTITY_TABLES = (
    "approval_sequences", "fully_approved_status", "processing_sequences",
    "status_permissions", "stage_roles", "flight_routed_statuses",
)


# ── Loading ──────────────────────────────────────────────────────────────────


def load_routing(path: str | None = None) -> dict:
    """Return the default tables merged with the JSON override at *path*.

    Per-entity tables are merged one entity type at a time; other keys are
    replaced (dicts are merged key by key).
    """
    routing = copy.deepcopy(DEFAULT_ROUTING)
    if not path:
        return routing

    with open(path, encoding="utf-8") as fh:
        override = json.load(fh)
    if not isinstance(override, dict):
        raise ValueError(f"Routing file {path} must contain a JSON object")

    for key, value in override.items():
        if key in _PER_ENTITY_TABLES and isinstance(value, dict):
            for entity_type, table in value.items():
                current = routing[key].get(entity_type)
                if isinstance(current, dict) and isinstance(table, dict):
                    current.update(table)
                else:
                    routing[key][entity_type] = table
        elif isinstance(routing.get(key), dict) and isinstance(value, dict):
            routing[key].update(value)
        else:
            routing[key] = value

    logger.info("Workflow routing loaded from %s (%d override keys)", path, len(override))
    return routing


def init_routing(app) -> None:
    """Load routing tables once per app and stash them on app.extensions."""
    app.extensions["workflow_routing"] = load_routing(app.config.get("WORKFLOW_ROUTING_FILE"))


def get_routing() -> dict:
    if has_app_context():
        routing = current_app.extensions.get("workflow_routing")
        if routing is not None:
            return routing
    return DEFAULT_ROUTING


# ── Lookups ──────────────────────────────────────────────────────────────────


def entity_types() -> list[str]:
    return list(get_routing()["approval_sequences"])


def approval_sequence(entity_type: str) -> list[str]:
    return list(get_routing()["approval_sequences"].get(entity_type, []))


def first_stage(entity_type: str) -> str:
    seq = approval_sequence(entity_type)
    return seq[0] if seq else fully_approved_status(entity_type)


def fully_approved_status(entity_type: str) -> str:
    return get_routing()["fully_approved_status"].get(entity_type, STATUS_APPROVED)


def is_approval_stage(entity_type: str, status: str) -> bool:
    return status in approval_sequence(entity_type)


def next_approval_status(entity_type: str, status: str) -> str:
    """Successor of *status* in the fixed sequence, else the fully-approved status."""
    seq = approval_sequence(entity_type)
    if status in seq:
        idx = seq.index(status)
        if idx + 1 < len(seq):
            return seq[idx + 1]
    return fully_approved_status(entity_type)


def processing_sequence(entity_type: str) -> dict[str, str]:
    return dict(get_routing()["processing_sequences"].get(entity_type, {}))


def next_processing_status(entity_type: str, status: str) -> str | None:
    return processing_sequence(entity_type).get(status)


def is_processing_stage(entity_type: str, status: str) -> bool:
    return status in processing_sequence(entity_type) and status != fully_approved_status(entity_type)


def permission_for(entity_type: str, status: str) -> str | None:
    return get_routing()["status_permissions"].get(entity_type, {}).get(status)


def stage_roles(entity_type: str, status: str) -> list[str]:
    return list(get_routing()["stage_roles"].get(entity_type, {}).get(status, []))


def role_priority(permission: str, status: str | None = None) -> list[str]:
    table = get_routing()["role_priority"]
    if status:
        specific = table.get(f"{permission}@{status}")
        if specific:
            return list(specific)
    return list(table.get(permission, []))


def is_department_scoped(permission: str) -> bool:
    return any(permission.endswith(s) for s in get_routing()["department_scoped_suffixes"])


def is_flight_routed(entity_type: str, status: str) -> bool:
    return status in get_routing()["flight_routed_statuses"].get(entity_type, [])


def flight_travel_types() -> set[str]:
    return {t.lower() for t in get_routing()["flight_travel_types"]}


def cancellable_statuses() -> set[str]:
    return set(get_routing()["cancellable_statuses"])


def reject_requires_comments(entity_type: str) -> bool:
    return entity_type in get_routing()["reject_requires_comments"]
