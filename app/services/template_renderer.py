"""
Employee Request Portal
Template Renderer.

render() makes a single pass over the template string:

    - ``{key}`` → variables[key], or "" when absent
    - ``{key && literal text}`` → the literal text (with its own inner
      placeholders substituted) when variables[key] is non-empty, otherwise
      the whole block is removed

Blocks are decided from the raw variables and values are never re-scanned,
so a comment containing braces is printed as typed.

build_variables() produces the full variable contract for a request.
Descriptive fields that are missing render as "Not specified" (department as
"Unknown") so messages never show meaningless blanks; conditional fields
(comments, rejectionReason, ...) stay empty so their blocks disappear.
"""

from __future__ import annotations

import html
import re
from datetime import date

from flask import current_app, has_app_context

from app.models.request import ENTITY_LABELS, RequestEntity

NOT_SPECIFIED = "Not specified"
UNKNOWN_DEPARTMENT = "Unknown"
DEFAULT_BASE_URL = "http://localhost:3000"

_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")
_TOKEN_RE = re.compile(r"\{(\w+)\s*&&\s*((?:[^{}]|\{\w+\})+)\}|\{(\w+)\}")
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"[ \t\r\f\v]+")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")


def _substitute(text: str, variables: dict) -> str:
    return _PLACEHOLDER_RE.sub(lambda m: _as_text(variables.get(m.group(1))), text)


def _as_text(value) -> str:
    if value is None:
        return ""
    return str(value)


def render(template: str, variables: dict) -> str:
    """Render *template* with *variables*.

    >>> render("Hello {name}", {"name": "Ana"})
    'Hello Ana'
    >>> render("{c && Comments: {c}}", {"c": ""})
    ''
    >>> render("{c && Comments: {c}}", {"c": "ok"})
    'Comments: ok'
    """
    if not template:
        return ""

    def _replace(match):
        key, body, name = match.group(1), match.group(2), match.group(3)
        if name is not None:
            return _as_text(variables.get(name))
        if _as_text(variables.get(key)).strip():
            return _substitute(body, variables)
        return ""

    return _TOKEN_RE.sub(_replace, template)


def strip_html(text: str, limit: int | None = 500) -> str:
    """Plain-text version of an HTML body for in-app notifications."""
    plain = _TAG_RE.sub(" ", text or "")
    plain = html.unescape(plain)
    plain = _WS_RE.sub(" ", plain)
    plain = _BLANK_LINES_RE.sub("\n", plain).strip()
    plain = " ".join(line.strip() for line in plain.splitlines() if line.strip())
    if limit and len(plain) > limit:
        plain = plain[: limit - 3].rstrip() + "..."
    return plain


# ── Variable building ─────────────────────────────────────────────────────────


def portal_base_url() -> str:
    if has_app_context():
        return current_app.config.get("PORTAL_BASE_URL", DEFAULT_BASE_URL).rstrip("/")
    return DEFAULT_BASE_URL


def action_url(entity_type: str, action: str, entity_id: str, base_url: str | None = None) -> str:
    base = (base_url or portal_base_url()).rstrip("/")
    return f"{base}/{entity_type}/{action}/{entity_id}"


def _format_amount(entity: RequestEntity) -> str:
    if entity.amount is None:
        return NOT_SPECIFIED
    amount = f"{float(entity.amount):,.2f}"
    return f"{entity.currency} {amount}" if entity.currency else amount


def _format_dates(start: date | None, end: date | None) -> str:
    if start and end:
        return f"{start.isoformat()} to {end.isoformat()}"
    if start:
        return start.isoformat()
    if end:
        return end.isoformat()
    return NOT_SPECIFIED


def build_variables(
    entity: RequestEntity,
    *,
    recipient_name: str | None = None,
    approver_name: str | None = None,
    approver_role: str | None = None,
    previous_status: str | None = None,
    comments: str | None = None,
    rejection_reason: str | None = None,
    previous_approver: str | None = None,
    next_approver: str | None = None,
    base_url: str | None = None,
) -> dict[str, str]:
    """Full variable map for *entity* (every value is a string)."""
    base = (base_url or portal_base_url()).rstrip("/")
    et = entity.entity_type
    return {
        "entityId": entity.id,
        "entityType": et,
        "entityLabel": ENTITY_LABELS.get(et, et),
        "entityTitle": entity.title or NOT_SPECIFIED,
        "entityAmount": _format_amount(entity),
        "entityDates": _format_dates(entity.start_date, entity.end_date),
        "department": entity.department or UNKNOWN_DEPARTMENT,
        "requestorName": entity.requestor_name or NOT_SPECIFIED,
        "requestorEmail": entity.requestor_email or "",
        "staffId": entity.staff_id or NOT_SPECIFIED,
        "travelType": entity.travel_type or "",
        "approverName": approver_name or "",
        "recipientName": recipient_name or "",
        "approverRole": approver_role or "",
        "currentStatus": entity.current_status or "",
        "previousStatus": previous_status or "",
        "comments": comments or "",
        "rejectionReason": rejection_reason or "",
        "previousApprover": previous_approver or "",
        "nextApprover": next_approver or "",
        "approvalUrl": action_url(et, "approve", entity.id, base),
        "viewUrl": action_url(et, "view", entity.id, base),
        "newRequestUrl": f"{base}/{et}/new",
        "bookingUrl": action_url(et, "booking", entity.id, base),
        "processingUrl": action_url(et, "process", entity.id, base),
    }
