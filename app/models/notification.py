"""
Employee Request Portal
Notification domain model.

Models:
    - NotificationEventType: catalogue of workflow events per module
    - NotificationTemplate: subject/body with {variable} placeholders and
      {cond && text} conditional blocks; routed by unique name
    - UserNotification: in-app notification record with read/dismiss tracking
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

EVENT_CATEGORIES = {"approval", "status_update", "system", "reminder"}
RECIPIENT_TYPES = {"approver", "requestor", "both"}

NOTIFICATION_TYPES = {"approval_request", "status_update", "system", "reminder"}
NOTIFICATION_CATEGORIES = {"workflow_approval", "personal_status", "system_alert"}
NOTIFICATION_PRIORITIES = {"low", "normal", "high", "urgent"}


class NotificationEventType(db.Model):
    """Workflow event catalogue (e.g. trf_submitted, claims_rejected)."""

    __tablename__ = "notification_event_types"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(500), default="")
    category = db.Column(db.String(30), default="status_update",
                         comment="approval, status_update, system, reminder")
    module = db.Column(db.String(30), nullable=False, index=True, comment="Entity type")
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    templates = db.relationship("NotificationTemplate", back_populates="event_type", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "module": self.module,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<NotificationEventType {self.name}>"


class NotificationTemplate(db.Model):
    """
    Message template.

    ``name`` is the routing key returned by the template router; one
    consolidated template per workflow stage.
    """

    __tablename__ = "notification_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), unique=True, nullable=False)
    description = db.Column(db.String(500), default="")
    subject = db.Column(db.String(500), nullable=False)
    body = db.Column(db.Text, nullable=False, comment="HTML body with placeholders")
    body_text = db.Column(db.Text, nullable=True, comment="Optional plain-text body")
    recipient_type = db.Column(db.String(20), default="approver", comment="approver, requestor, both")
    event_type_id = db.Column(
        db.Integer, db.ForeignKey("notification_event_types.id", ondelete="SET NULL"), nullable=True,
    )
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    event_type = db.relationship("NotificationEventType", back_populates="templates")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "subject": self.subject,
            "body": self.body,
            "body_text": self.body_text,
            "recipient_type": self.recipient_type,
            "event_type": self.event_type.name if self.event_type else None,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<NotificationTemplate {self.name} ({self.recipient_type})>"


class UserNotification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event.
    """

    __tablename__ = "user_notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = db.Column(db.String(500), nullable=False)
    message = db.Column(db.Text, default="")
    type = db.Column(db.String(30), default="system",
                     comment="approval_request, status_update, system, reminder")
    category = db.Column(db.String(30), default="system_alert",
                         comment="workflow_approval, personal_status, system_alert")
    priority = db.Column(db.String(10), default="normal")

    # Link to source entity
    related_entity_type = db.Column(db.String(30), nullable=True)
    related_entity_id = db.Column(db.String(40), nullable=True, index=True)

    action_required = db.Column(db.Boolean, default=False)
    action_url = db.Column(db.String(500), nullable=True)

    # Read / dismiss tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_dismissed = db.Column(db.Boolean, default=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "message": self.message,
            "type": self.type,
            "category": self.category,
            "priority": self.priority,
            "related_entity_type": self.related_entity_type,
            "related_entity_id": self.related_entity_id,
            "action_required": self.action_required,
            "action_url": self.action_url,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "is_dismissed": self.is_dismissed,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<UserNotification {self.id}: {self.title[:40]}>"
