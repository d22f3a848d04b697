"""
Employee Request Portal
Workflow Notification Dispatch.

Runs AFTER a status transition has been committed:

    router → template → approver/requestor resolution → TO/CC partition
           → render per recipient → email + in-app notification

Failure policy:
    - TemplateNotFound / NoPermissionMapping / NoRecipientsFound: logged as a
      warning, the template is skipped, the report records why.
    - A failure for one recipient is rolled back and logged; the remaining
      recipients are still notified.
    - Nothing raised here reaches the caller of the transition.

Usage:
    from app.services.workflow_notification import dispatch

    report = dispatch(entity, "trf_submitted", previous_status="Draft",
                      actor_name="Ana", actor_role="Requestor")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from flask import current_app

from app.core.exceptions import NoPermissionMapping, NoRecipientsFound, TemplateNotFound
from app.models import db
from app.models.notification import NotificationTemplate
from app.models.request import STATUS_APPROVED, RequestEntity
from app.services import approver_resolver
from app.services import workflow_routing as routing
from app.services.email_service import EmailService
from app.services.notification import NotificationService
from app.services.recipient_builder import REQUESTOR_ROLE, Recipient, RecipientSet, build_recipients
from app.services.template_renderer import build_variables, render, strip_html
from app.services.template_router import load_template, templates_for

logger = logging.getLogger(__name__)


@dataclass
class DispatchReport:
    entity_id: str
    event_type: str
    templates: list[str] = field(default_factory=list)
    sent: list[dict] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def recipients_for(self, template_name: str, kind: str | None = None) -> list[str]:
        return [
            s["email"] for s in self.sent
            if s["template"] == template_name and (kind is None or s["kind"] == kind)
        ]

    def to_dict(self) -> dict:
        return {
            "entity_id": self.entity_id,
            "event_type": self.event_type,
            "templates": list(self.templates),
            "sent": list(self.sent),
            "skipped": list(self.skipped),
            "errors": list(self.errors),
        }


# ── Resolution ────────────────────────────────────────────────────────────────


def _resolve_approvers(entity: RequestEntity) -> list[Recipient]:
    permission = approver_resolver.resolve(
        entity.entity_type, entity.current_status, entity.department, entity.travel_type, entity=entity,
    )
    if permission is None:
        raise NoPermissionMapping(entity.entity_type, entity.current_status)
    return approver_resolver.users_with_permission(permission, entity.department, entity.current_status)


def resolve_recipients(
    entity: RequestEntity,
    template: NotificationTemplate,
    approvers: list[Recipient] | None = None,
) -> RecipientSet:
    """TO/CC for *template*; *approvers* overrides resolution (delegation)."""
    if template.recipient_type in ("approver", "both") and approvers is None:
        approvers = _resolve_approvers(entity)
    requestor = approver_resolver.find_requestor(entity.requestor_id, entity.requestor_email)
    if requestor is None and (entity.requestor_email or "").strip():
        # No usable directory row (inactive, deleted): fall back to the stored address
        requestor = Recipient(user_id=None, name=entity.requestor_name or "",
                              email=entity.requestor_email.strip(), role=REQUESTOR_ROLE,
                              department=entity.department, membership="cc")
    return build_recipients(template.recipient_type, approvers or [], requestor, template_name=template.name)


def _action_url(entity: RequestEntity, variables: dict, is_actionable: bool) -> str:
    if not is_actionable:
        return variables["viewUrl"]
    status = entity.current_status
    if status == STATUS_APPROVED or routing.is_processing_stage(entity.entity_type, status):
        return variables["processingUrl"]
    return variables["approvalUrl"]


def _final_notice_fallback(entity: RequestEntity, exc: Exception, names: list[str]) -> str | None:
    """Fully approved with no admin queue (e.g. a TRF without flights): the
    requestor still gets the final notice."""
    if not isinstance(exc, NoPermissionMapping):
        return None
    if entity.current_status != routing.fully_approved_status(entity.entity_type):
        return None
    fallback = f"{entity.entity_type}_admin_completed_to_requestor"
    return None if fallback in names else fallback


# ── Per-recipient delivery ────────────────────────────────────────────────────


def _deliver(
    entity: RequestEntity,
    template: NotificationTemplate,
    recipient: Recipient,
    base_vars: dict,
    event_type: str,
) -> dict:
    variables = dict(base_vars, recipientName=recipient.name or "")
    subject = render(template.subject, variables)
    body = render(template.body, variables)
    text_body = render(template.body_text, variables) if template.body_text else None

    is_actionable = (
        recipient.membership == "primary"
        and template.recipient_type in ("approver", "both")
        and recipient.role != REQUESTOR_ROLE
    )
    event = event_type.lower()

    notification_id = None
    if recipient.user_id is not None:
        if is_actionable:
            n_type, category = "approval_request", "workflow_approval"
        elif "reminder" in event:
            n_type, category = "reminder", "personal_status"
        else:
            n_type, category = "status_update", "personal_status"
        notification_id = NotificationService.create(
            user_id=recipient.user_id,
            title=subject,
            message=strip_html(body, current_app.config.get("NOTIFICATION_MESSAGE_MAX", 500)),
            type=n_type,
            category=category,
            priority="high" if ("submitted" in event or "reminder" in event) else "normal",
            related_entity_type=entity.entity_type,
            related_entity_id=entity.id,
            action_required=is_actionable,
            action_url=_action_url(entity, variables, is_actionable),
            commit=False,
        )

    log = EmailService.send(
        to_email=recipient.email,
        to_name=recipient.name,
        subject=subject,
        html_body=body,
        text_body=text_body,
        recipient_kind="to" if recipient.membership == "primary" else "cc",
        template_name=template.name,
        entity_type=entity.entity_type,
        entity_id=entity.id,
        notification_id=notification_id,
    )
    db.session.commit()
    return {
        "template": template.name,
        "email": recipient.email,
        "user_id": recipient.user_id,
        "kind": log.recipient_kind,
        "status": log.status,
        "notification_id": notification_id,
    }


# ── Entry point ───────────────────────────────────────────────────────────────


def dispatch(
    entity: RequestEntity,
    event_type: str,
    *,
    previous_status: str | None = None,
    actor_name: str | None = None,
    actor_role: str | None = None,
    comments: str | None = None,
    template_names: list[str] | None = None,
    approvers: list[Recipient] | None = None,
) -> DispatchReport:
    """Notify everyone concerned by *event_type* on *entity*. Never raises."""
    report = DispatchReport(entity_id=entity.id, event_type=event_type)
    names = list(template_names or templates_for(event_type, entity.current_status, entity.entity_type))
    report.templates = list(names)
    log_extra = {"entity_id": entity.id, "entity_type": entity.entity_type, "event_type": event_type}

    for name in names:
        try:
            template = load_template(name)
            recipients = resolve_recipients(entity, template, approvers)
        except (TemplateNotFound, NoPermissionMapping, NoRecipientsFound) as exc:
            logger.warning("Notification skipped: %s", exc, extra=dict(log_extra, template=name))
            report.skipped.append({"template": name, "error": type(exc).__name__, "reason": str(exc)})
            final_notice = _final_notice_fallback(entity, exc, names)
            if final_notice:
                names.append(final_notice)
                report.templates.append(final_notice)
            continue
        except Exception as exc:
            db.session.rollback()
            logger.exception("Recipient resolution failed for %s", name, extra=dict(log_extra, template=name))
            report.errors.append({"template": name, "error": type(exc).__name__, "reason": str(exc)})
            continue

        for warning in recipients.warnings:
            report.skipped.append({"template": name, "error": "Warning", "reason": warning})

        next_names = ", ".join(r.name for r in recipients.to if r.role != REQUESTOR_ROLE)
        base_vars = build_variables(
            entity,
            approver_name=actor_name,
            approver_role=actor_role,
            previous_status=previous_status,
            comments=comments,
            rejection_reason=comments if "rejected" in event_type else None,
            previous_approver=actor_name if actor_role != REQUESTOR_ROLE else None,
            next_approver=next_names or None,
        )

        for recipient in recipients.all:
            try:
                report.sent.append(_deliver(entity, template, recipient, base_vars, event_type))
            except Exception as exc:
                db.session.rollback()
                logger.exception(
                    "Notification delivery failed for %s", recipient.email,
                    extra=dict(log_extra, template=name, recipient=recipient.email),
                )
                report.errors.append({
                    "template": name, "email": recipient.email,
                    "error": type(exc).__name__, "reason": str(exc),
                })

    logger.info(
        "Dispatched %s: %d sent, %d skipped, %d failed",
        event_type, len(report.sent), len(report.skipped), len(report.errors), extra=log_extra,
    )
    return report
