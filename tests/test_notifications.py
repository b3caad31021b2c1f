from datetime import datetime, timedelta

import pytest

from filetrack.errors import InvalidFilter
from filetrack.models import Notification, NotificationType, UserRole
from filetrack.notifications import (
    NotificationChannel, cleanup_expired_notifications, create_notification, delete_notification,
    get_preferences, get_unread_count, list_notifications, mark_all_as_read, mark_as_read, notify_roles,
    update_preferences,
)


class RecordingChannel(NotificationChannel):
    def __init__(self):
        self.delivered = []

    def deliver(self, user, notification, preferences):
        self.delivered.append((user.id, notification.id, preferences["email_notifications"]))


class BrokenChannel(NotificationChannel):
    def deliver(self, user, notification, preferences):
        raise RuntimeError("smtp down")


def notify(session, user, title="Hello", **kwargs):
    return create_notification(session, user.id, NotificationType.SYSTEM_ALERT, title, "message", **kwargs)


def test_create_delivers_through_channel(session, users):
    channel = RecordingChannel()

    notification = notify(session, users["alice"], channel=channel)

    assert notification.id is not None
    assert notification.is_read is False
    assert channel.delivered == [(users["alice"].id, notification.id, True)]


def test_delivery_failure_keeps_notification(session, users):
    notification = notify(session, users["alice"], channel=BrokenChannel())

    assert session.get(Notification, notification.id) is not None
    assert get_unread_count(session, users["alice"].id) == 1


def test_mark_as_read_is_idempotent(session, users):
    notification = notify(session, users["alice"])

    assert mark_as_read(session, notification.id, users["alice"].id) is True
    assert mark_as_read(session, notification.id, users["alice"].id) is True
    assert get_unread_count(session, users["alice"].id) == 0


def test_mark_as_read_unknown_or_foreign(session, users):
    notification = notify(session, users["alice"])

    assert mark_as_read(session, 9999, users["alice"].id) is False
    assert mark_as_read(session, notification.id, users["bob"].id) is False
    assert get_unread_count(session, users["alice"].id) == 1


def test_mark_all_as_read(session, users):
    for n in range(3):
        notify(session, users["alice"], title=f"n{n}")
    notify(session, users["bob"])

    assert mark_all_as_read(session, users["alice"].id) == 3
    assert mark_all_as_read(session, users["alice"].id) == 0
    assert get_unread_count(session, users["bob"].id) == 1


def test_list_newest_first_with_unread_filter(session, users):
    first = notify(session, users["alice"], title="first")
    second = notify(session, users["alice"], title="second")
    mark_as_read(session, second.id, users["alice"].id)

    everything = list_notifications(session, users["alice"].id)
    unread = list_notifications(session, users["alice"].id, unread_only=True)

    assert [n.id for n in everything] == [second.id, first.id]
    assert [n.id for n in unread] == [first.id]


def test_delete_only_own(session, users):
    notification_id = notify(session, users["alice"]).id
    alice_id, bob_id = users["alice"].id, users["bob"].id

    assert delete_notification(session, notification_id, bob_id) is False
    assert delete_notification(session, notification_id, alice_id) is True
    assert delete_notification(session, notification_id, alice_id) is False


def test_preferences_default_then_upsert(session, users):
    user_id = users["alice"].id
    assert get_preferences(session, user_id)["digest_frequency"] == "immediate"

    update_preferences(session, user_id, email_notifications=False)
    prefs = update_preferences(session, user_id, digest_frequency="daily", push_notifications=None)

    assert prefs["email_notifications"] is False
    assert prefs["push_notifications"] is True
    assert prefs["digest_frequency"] == "daily"
    assert get_preferences(session, user_id) == prefs


@pytest.mark.parametrize("changes", [{"digest_frequency": "hourly"}, {"carrier_pigeon": True}])
def test_invalid_preferences_are_rejected(session, users, changes):
    with pytest.raises(InvalidFilter):
        update_preferences(session, users["alice"].id, **changes)


def test_channel_sees_email_preference(session, users):
    update_preferences(session, users["alice"].id, email_notifications=False)
    channel = RecordingChannel()

    notify(session, users["alice"], channel=channel)

    assert channel.delivered[0][2] is False


def test_notify_roles_fans_out_to_active_privileged_users(session, users):
    users["manager"].is_active = False
    session.commit()

    sent = notify_roles(session, (UserRole.ADMIN, UserRole.MANAGER), NotificationType.FILE_APPROVAL_PENDING,
                        "Pending", "A file awaits approval", exclude_user_id=users["bob"].id)

    assert [n.user_id for n in sent] == [users["admin"].id]


def test_notify_roles_excludes_actor(session, users):
    sent = notify_roles(session, (UserRole.ADMIN, UserRole.MANAGER), NotificationType.SYSTEM_ALERT,
                        "Alert", "Something happened", exclude_user_id=users["admin"].id)

    assert [n.user_id for n in sent] == [users["manager"].id]


def test_cleanup_expired(session, users):
    now = datetime(2024, 6, 1)
    notify(session, users["alice"], expires_at=now - timedelta(days=1))
    keep = notify(session, users["alice"], expires_at=now + timedelta(days=1))
    forever = notify(session, users["alice"])

    assert cleanup_expired_notifications(session, now) == 1
    remaining = {n.id for n in list_notifications(session, users["alice"].id)}
    assert remaining == {keep.id, forever.id}
