"""
Employee Request Portal
Recipient Builder.

Partitions resolved candidates into TO / CC for one template.

    approver   TO = approvers (deduplicated by email, blanks dropped)
               CC = requestor, ALWAYS, even when the requestor is also an
               approver. A requestor without a usable email is reported in
               ``warnings`` and is not fatal.
    requestor  TO = requestor, CC empty
    both       legacy shape: union of both sets, split by role == Requestor

Usage:
    from app.services.recipient_builder import build_recipients

    recipients = build_recipients("approver", approvers, requestor, template_name="trf_submitted_to_focal")
    recipients.to, recipients.cc
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from app.core.exceptions import NoRecipientsFound

logger = logging.getLogger(__name__)

REQUESTOR_ROLE = "Requestor"


@dataclass(frozen=True)
class Recipient:
    user_id: int | None
    name: str
    email: str | None
    role: str
    department: str | None = None
    membership: str = "primary"  # primary (TO) or cc

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "department": self.department,
            "membership": self.membership,
        }


@dataclass
class RecipientSet:
    to: list[Recipient] = field(default_factory=list)
    cc: list[Recipient] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def all(self) -> list[Recipient]:
        return self.to + self.cc

    @property
    def emails(self) -> set[str]:
        return {r.email.lower() for r in self.all if r.email}

    def to_dict(self) -> dict:
        return {
            "to": [r.to_dict() for r in self.to],
            "cc": [r.to_dict() for r in self.cc],
            "warnings": list(self.warnings),
        }


def _usable(recipient: Recipient | None) -> bool:
    return bool(recipient and recipient.email and recipient.email.strip())


def _dedupe(recipients, membership: str, seen: set[str]) -> list[Recipient]:
    out = []
    for r in recipients:
        if not _usable(r):
            continue
        key = r.email.strip().lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(replace(r, membership=membership))
    return out


def build_recipients(
    recipient_type: str,
    approvers: list[Recipient],
    requestor: Recipient | None,
    *,
    template_name: str = "",
) -> RecipientSet:
    """Build the TO/CC sets for one template.

    Raises:
        NoRecipientsFound: TO would be empty.
        ValueError: unknown recipient_type.
    """
    result = RecipientSet()

    if recipient_type == "approver":
        result.to = _dedupe(approvers, "primary", set())
        if _usable(requestor):
            # Self-CC is intentional: the requestor is copied even when also in TO
            result.cc = [replace(requestor, membership="cc")]
        else:
            result.warnings.append("requestor has no usable email; CC is empty")
            logger.warning(
                "Requestor missing email for %s; CC empty", template_name,
                extra={"template": template_name},
            )

    elif recipient_type == "requestor":
        if _usable(requestor):
            result.to = [replace(requestor, membership="primary")]

    elif recipient_type == "both":
        seen: set[str] = set()
        candidates = list(approvers) + ([requestor] if requestor else [])
        primary = [r for r in candidates if r.role != REQUESTOR_ROLE]
        copied = [r for r in candidates if r.role == REQUESTOR_ROLE]
        result.to = _dedupe(primary, "primary", seen)
        result.cc = _dedupe(copied, "cc", seen)

    else:
        raise ValueError(f"Unknown recipient_type: {recipient_type}")

    if not result.to:
        raise NoRecipientsFound(template_name or recipient_type,
                                f"no '{recipient_type}' recipients with an email")
    return result
