"""
Notification module for FileTrack.
Stores per-user notifications and preferences and hands new notifications
to a delivery channel.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from filetrack.errors import InvalidFilter
from filetrack.models import DigestFrequency, Notification, NotificationPreference, NotificationType, User, UserRole
from filetrack.utils import isoformat

logger = logging.getLogger(__name__)

PREFERENCE_FIELDS = (
    "email_notifications",
    "push_notifications",
    "file_approval_notifications",
    "file_upload_notifications",
    "system_alert_notifications",
)


class NotificationChannel:
    """
    Delivery channel for new notifications.
    The default implementation only logs; a real deployment would push over
    websockets or send mail here.
    """

    def deliver(self, user: User, notification: Notification, preferences: dict) -> None:
        logger.info("[in-app] Notification %s sent to user %s: %s",
                    notification.id, user.id, notification.title)
        if preferences.get("email_notifications"):
            logger.info("[email] Notification %s sent to %s: %s",
                        notification.id, user.email, notification.title)


default_channel = NotificationChannel()


def serialize_notification(notification: Notification) -> dict:
    return {
        "id": notification.id,
        "type": notification.type.value,
        "title": notification.title,
        "message": notification.message,
        "file_id": notification.file_id,
        "is_read": notification.is_read,
        "created_at": isoformat(notification.created_at),
        "expires_at": isoformat(notification.expires_at),
    }


def create_notification(db: Session, user_id: int, type: NotificationType, title: str, message: str,
                        file_id: Optional[int] = None, expires_at: Optional[datetime] = None,
                        channel: Optional[NotificationChannel] = None) -> Notification:
    """Persist a notification and fire it at the delivery channel."""
    notification = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        file_id=file_id,
        is_read=False,
        expires_at=expires_at,
    )
    db.add(notification)
    db.commit()
    db.refresh(notification)

    _dispatch(db, notification, channel or default_channel)
    return notification


def _dispatch(db: Session, notification: Notification, channel: NotificationChannel) -> None:
    # delivery is fire-and-forget; the stored notification stands either way
    try:
        user = db.get(User, notification.user_id)
        if user is None:
            return
        channel.deliver(user, notification, get_preferences(db, notification.user_id))
    except Exception:
        logger.exception("Delivery of notification %s failed", notification.id)


def notify_roles(db: Session, roles: Iterable[UserRole], type: NotificationType, title: str, message: str,
                 file_id: Optional[int] = None, exclude_user_id: Optional[int] = None,
                 channel: Optional[NotificationChannel] = None) -> List[Notification]:
    """Send the same notification to every active user holding one of ``roles``."""
    recipients = (
        db.query(User)
        .filter(User.role.in_(list(roles)), User.is_active.is_(True))
        .order_by(User.id)
        .all()
    )
    return [
        create_notification(db, user.id, type, title, message, file_id=file_id, channel=channel)
        for user in recipients
        if user.id != exclude_user_id
    ]


def list_notifications(db: Session, user_id: int, limit: int = 50, offset: int = 0,
                       unread_only: bool = False) -> List[Notification]:
    query = db.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    return (
        query.order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def mark_as_read(db: Session, notification_id: int, user_id: int) -> bool:
    """
    Mark one of the user's notifications read.
    Returns False only when no such notification exists; repeating the call is harmless.
    """
    notification = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.user_id == user_id)
        .first()
    )
    if notification is None:
        return False
    if not notification.is_read:
        notification.is_read = True
        db.commit()
    return True


def mark_all_as_read(db: Session, user_id: int) -> int:
    updated = (
        db.query(Notification)
        .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
        .update({Notification.is_read: True}, synchronize_session=False)
    )
    db.commit()
    return updated


def delete_notification(db: Session, notification_id: int, user_id: int) -> bool:
    deleted = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.user_id == user_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted > 0


def get_unread_count(db: Session, user_id: int) -> int:
    return (
        db.query(Notification)
        .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
        .count()
    )


def _preferences_dict(preference: Optional[NotificationPreference]) -> dict:
    if preference is None:
        data = {name: True for name in PREFERENCE_FIELDS}
        data["digest_frequency"] = DigestFrequency.IMMEDIATE.value
        return data
    data = {name: getattr(preference, name) for name in PREFERENCE_FIELDS}
    data["digest_frequency"] = preference.digest_frequency.value
    return data


def get_preferences(db: Session, user_id: int) -> dict:
    """Stored preferences, or the defaults when the user never saved any."""
    return _preferences_dict(db.get(NotificationPreference, user_id))


def update_preferences(db: Session, user_id: int, **changes) -> dict:
    """
    Upsert the user's preferences.
    Fields passed as None (or not passed) keep their previous value.
    """
    preference = db.get(NotificationPreference, user_id)
    if preference is None:
        preference = NotificationPreference(user_id=user_id)
        for name in PREFERENCE_FIELDS:
            setattr(preference, name, True)
        preference.digest_frequency = DigestFrequency.IMMEDIATE
        db.add(preference)

    for name, value in changes.items():
        if value is None:
            continue
        if name in PREFERENCE_FIELDS:
            setattr(preference, name, bool(value))
        elif name == "digest_frequency":
            try:
                preference.digest_frequency = DigestFrequency(value)
            except ValueError:
                raise InvalidFilter(f"Invalid digest frequency: {value!r}")
        else:
            raise InvalidFilter(f"Unknown preference: {name}")

    preference.updated_at = datetime.utcnow()
    db.commit()
    return _preferences_dict(preference)


def cleanup_expired_notifications(db: Session, now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    deleted = (
        db.query(Notification)
        .filter(Notification.expires_at.isnot(None), Notification.expires_at < now)
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info("Removed %d expired notifications", deleted)
    return deleted
