"""
Employee Request Portal
Notification Service.

Central service for creating and querying in-app notification records.
Consumed by the UI / real-time layer through notification_bp.

Query rules:
    - dismissed and expired notifications are never listed or counted
    - pending_actions = action_required AND unread
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, delete, func, or_, select, update

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.notification import (
    NOTIFICATION_CATEGORIES,
    NOTIFICATION_PRIORITIES,
    NOTIFICATION_TYPES,
    UserNotification,
)


def _visible(user_id, now=None):
    now = now or datetime.now(timezone.utc)
    return and_(
        UserNotification.user_id == user_id,
        UserNotification.is_dismissed.is_(False),
        or_(UserNotification.expires_at.is_(None), UserNotification.expires_at > now),
    )


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, user_id, title, message="", type="system", category="system_alert",
               priority="normal", related_entity_type=None, related_entity_id=None,
               action_required=False, action_url=None, expires_at=None, commit=True):
        """
        Create a single notification record.

        Returns:
            The new notification id.
        """
        if not title:
            raise ValidationError("title is required", details={"title": "required"})
        if type not in NOTIFICATION_TYPES:
            raise ValidationError(f"Invalid type '{type}'", details={"type": sorted(NOTIFICATION_TYPES)})
        if category not in NOTIFICATION_CATEGORIES:
            raise ValidationError(f"Invalid category '{category}'",
                                  details={"category": sorted(NOTIFICATION_CATEGORIES)})
        if priority not in NOTIFICATION_PRIORITIES:
            raise ValidationError(f"Invalid priority '{priority}'",
                                  details={"priority": sorted(NOTIFICATION_PRIORITIES)})

        notif = UserNotification(
            user_id=user_id,
            title=title[:500],
            message=message or "",
            type=type,
            category=category,
            priority=priority,
            related_entity_type=related_entity_type,
            related_entity_id=related_entity_id,
            action_required=bool(action_required),
            action_url=action_url,
            expires_at=expires_at,
        )
        db.session.add(notif)
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return notif.id

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(user_id, *, unread_only=False, category=None, limit=50, offset=0):
        """
        Retrieve visible notifications for a user, newest first.

        Returns:
            (items, total) where total ignores limit/offset.
        """
        stmt = select(UserNotification).where(_visible(user_id))
        if unread_only:
            stmt = stmt.where(UserNotification.is_read.is_(False))
        if category:
            stmt = stmt.where(UserNotification.category == category)

        total = db.session.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar_one()
        items = db.session.execute(
            stmt.order_by(UserNotification.created_at.desc(), UserNotification.id.desc())
            .offset(offset).limit(limit)
        ).scalars().all()
        return items, total

    @staticmethod
    def counts(user_id):
        """Aggregate counts used by the notification bell."""
        visible = _visible(user_id)
        unread = UserNotification.is_read.is_(False)

        def _count(*conds):
            return db.session.execute(
                select(func.count(UserNotification.id)).where(visible, *conds)
            ).scalar_one()

        return {
            "total": _count(),
            "unread": _count(unread),
            "pending_actions": _count(unread, UserNotification.action_required.is_(True)),
            "approval_requests": _count(unread, UserNotification.type == "approval_request"),
            "status_updates": _count(unread, UserNotification.type == "status_update"),
        }

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def _get_owned(notification_id, user_id):
        notif = db.session.get(UserNotification, notification_id)
        if notif is None or (user_id is not None and notif.user_id != user_id):
            raise NotFoundError(resource="Notification", resource_id=notification_id)
        return notif

    @staticmethod
    def mark_read(notification_id, user_id=None):
        """Mark a single notification as read."""
        notif = NotificationService._get_owned(notification_id, user_id)
        if not notif.is_read:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_many_read(notification_ids, user_id):
        """Mark the given notifications of *user_id* as read. Returns count."""
        if not notification_ids:
            return 0
        now = datetime.now(timezone.utc)
        result = db.session.execute(
            update(UserNotification)
            .where(
                UserNotification.id.in_(notification_ids),
                UserNotification.user_id == user_id,
                UserNotification.is_read.is_(False),
            )
            .values(is_read=True, read_at=now)
            .execution_options(synchronize_session="fetch")
        )
        db.session.commit()
        return result.rowcount

    @staticmethod
    def mark_all_read(user_id):
        """Mark all visible notifications for a user as read."""
        now = datetime.now(timezone.utc)
        result = db.session.execute(
            update(UserNotification)
            .where(_visible(user_id, now), UserNotification.is_read.is_(False))
            .values(is_read=True, read_at=now)
            .execution_options(synchronize_session="fetch")
        )
        db.session.commit()
        return result.rowcount

    @staticmethod
    def dismiss(notification_id, user_id=None):
        """Hide a notification permanently (also marks it read)."""
        notif = NotificationService._get_owned(notification_id, user_id)
        notif.is_dismissed = True
        if not notif.is_read:
            notif.mark_read()
        db.session.commit()
        return notif

    # ── Maintenance ───────────────────────────────────────────────────────

    @staticmethod
    def cleanup_stale(days=90):
        """Delete expired notifications and dismissed/read ones older than *days*."""
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(days=days)
        result = db.session.execute(
            delete(UserNotification).where(
                or_(
                    and_(UserNotification.expires_at.isnot(None), UserNotification.expires_at <= now),
                    and_(
                        UserNotification.created_at < cutoff,
                        or_(UserNotification.is_dismissed.is_(True), UserNotification.is_read.is_(True)),
                    ),
                )
            ).execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount
