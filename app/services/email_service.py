"""
Employee Request Portal
Email Service.

Sends one message per address and records every attempt in EmailLog.
When SMTP is not configured, emails are logged but not sent (dev/test mode).

Configuration (env vars):
    MAIL_SERVER     SMTP host (default: None → log-only mode)
    MAIL_PORT       SMTP port (default: 587)
    MAIL_USE_TLS    Use TLS (default: true)
    MAIL_USERNAME   SMTP username
    MAIL_PASSWORD   SMTP password
    MAIL_DEFAULT_SENDER  Default from address
"""

from __future__ import annotations

import logging
import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import formataddr

from flask import current_app

from app.models import db
from app.models.scheduling import EmailLog

logger = logging.getLogger(__name__)


class EmailService:
    """
    Email sending service.

    In development/test mode (no MAIL_SERVER configured), emails are
    logged to the database but not actually sent via SMTP.
    """

    @staticmethod
    def is_configured() -> bool:
        """Check if SMTP is configured."""
        return bool(current_app.config.get("MAIL_SERVER"))

    @classmethod
    def send(
        cls,
        *,
        to_email: str,
        to_name: str | None = None,
        subject: str,
        html_body: str,
        text_body: str | None = None,
        recipient_kind: str = "to",
        template_name: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        notification_id: int | None = None,
    ) -> EmailLog:
        """
        Send an email to a single address and log it.

        A failed SMTP send is recorded with status='failed' and returned,
        not raised, so callers sending to several addresses carry on.

        Returns:
            The EmailLog record for this email.
        """
        log = EmailLog(
            recipient_email=to_email,
            recipient_name=to_name,
            recipient_kind=recipient_kind,
            subject=subject[:500],
            template_name=template_name,
            status="queued",
            entity_type=entity_type,
            entity_id=entity_id,
            notification_id=notification_id,
        )
        db.session.add(log)
        db.session.flush()

        if not cls.is_configured():
            # Dev/test mode: log only
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            logger.info(
                "Email (dev mode): %s=%s subject='%s' template=%s",
                recipient_kind, to_email, subject, template_name,
                extra={"template": template_name, "recipient": to_email, "entity_id": entity_id},
            )
            return log

        try:
            cls._send_smtp(to_email=to_email, to_name=to_name, subject=subject,
                           html_body=html_body, text_body=text_body)
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            logger.info("Email sent: %s=%s subject='%s'", recipient_kind, to_email, subject)
        except (smtplib.SMTPException, OSError) as exc:
            log.status = "failed"
            log.error_message = str(exc)[:1000]
            logger.error("Email failed: to=%s error=%s", to_email, exc,
                         extra={"recipient": to_email, "entity_id": entity_id})

        return log

    @staticmethod
    def _build_message(*, to_email: str, to_name: str | None, subject: str,
                       html_body: str, text_body: str | None) -> EmailMessage:
        from app.services.template_renderer import strip_html

        cfg = current_app.config
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = cfg.get("MAIL_DEFAULT_SENDER") or f"noreply@{cfg.get('MAIL_SERVER')}"
        msg["To"] = formataddr((to_name or "", to_email))
        # Plain part first; clients render the last alternative they support
        msg.set_content(text_body or strip_html(html_body, limit=None))
        msg.add_alternative(html_body, subtype="html")
        return msg

    @classmethod
    def _send_smtp(cls, *, to_email: str, to_name: str | None,
                   subject: str, html_body: str, text_body: str | None = None) -> None:
        cfg = current_app.config
        msg = cls._build_message(to_email=to_email, to_name=to_name, subject=subject,
                                 html_body=html_body, text_body=text_body)
        with smtplib.SMTP(cfg["MAIL_SERVER"], cfg.get("MAIL_PORT", 587), timeout=30) as smtp:
            if cfg.get("MAIL_USE_TLS", True):
                smtp.starttls()
            if cfg.get("MAIL_USERNAME") and cfg.get("MAIL_PASSWORD"):
                smtp.login(cfg["MAIL_USERNAME"], cfg["MAIL_PASSWORD"])
            smtp.send_message(msg)
