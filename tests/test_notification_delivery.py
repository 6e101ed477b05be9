from __future__ import annotations

import json
import unittest
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import patch

import redis

from pointage.errors import DeliveryError, NotFoundError
from pointage.models import (
    Notification,
    NotificationPriority,
    NotificationType,
    PushSubscription,
)
from pointage.services.notifications import (
    deliver_notifications,
    list_approver_ids,
    mark_all_read,
    mark_read,
    notify,
)
from pointage.services.push_notifications import send_push_to_subscriptions
from pointage.services.transport import NotificationChannel, RedisChannel, WebPushChannel


def _notification(**overrides) -> Notification:  # type: ignore[no-untyped-def]
    values = {
        "id": 40,
        "recipient_id": 3,
        "type": NotificationType.POINTAGE_ANOMALY,
        "title": "Anomalie de pointage",
        "message": "Face verification failed. Score: 42",
        "priority": NotificationPriority.HIGH,
        "is_read": False,
        "meta": {"anomaly_id": 12},
        "created_at": datetime(2026, 10, 20, 8, 0, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return Notification(**values)


class _ScalarRows:
    def __init__(self, rows):
        self._rows = rows

    def all(self):
        return self._rows


class _FakeNotificationDB:
    def __init__(self, *, notification=None, rowcounts=(), approver_ids=()):
        self.notification = notification
        self.rowcounts = list(rowcounts)
        self.approver_ids = list(approver_ids)
        self.commits = 0
        self.statements = []
        self.added = []

    def add(self, obj):  # type: ignore[no-untyped-def]
        self.added.append(obj)

    def get(self, _model, _key):  # type: ignore[no-untyped-def]
        return self.notification

    def execute(self, statement):  # type: ignore[no-untyped-def]
        self.statements.append(statement)
        return SimpleNamespace(rowcount=self.rowcounts.pop(0) if self.rowcounts else 0)

    def scalars(self, _statement):  # type: ignore[no-untyped-def]
        return _ScalarRows(self.approver_ids)

    def commit(self):  # type: ignore[no-untyped-def]
        self.commits += 1

    def rollback(self):  # type: ignore[no-untyped-def]
        return None


class _FailingChannel(NotificationChannel):
    name = "failing"

    def send(self, notification):  # type: ignore[no-untyped-def]
        raise DeliveryError("broker unreachable")


class _BrokenSocketChannel(NotificationChannel):
    name = "broken"

    def send(self, notification):  # type: ignore[no-untyped-def]
        raise ConnectionError("connection reset by peer")


class _RecordingChannel(NotificationChannel):
    name = "recording"

    def __init__(self):
        self.sent = []

    def send(self, notification):  # type: ignore[no-untyped-def]
        self.sent.append(notification.id)
        return True


class _FakeRedis:
    def __init__(self, *, error: Exception | None = None, receivers: int = 1):
        self.error = error
        self.receivers = receivers
        self.published = []

    def publish(self, channel, payload):  # type: ignore[no-untyped-def]
        if self.error is not None:
            raise self.error
        self.published.append((channel, payload))
        return self.receivers


class NotificationStateTests(unittest.TestCase):
    def test_mark_all_read_is_idempotent(self) -> None:
        fake_db = _FakeNotificationDB(rowcounts=[3, 0])

        first = mark_all_read(fake_db, recipient_id=3)  # type: ignore[arg-type]
        second = mark_all_read(fake_db, recipient_id=3)  # type: ignore[arg-type]

        self.assertEqual((first, second), (3, 0))
        self.assertEqual(fake_db.commits, 2)

    def test_mark_read_rejects_other_recipient(self) -> None:
        fake_db = _FakeNotificationDB(notification=_notification(recipient_id=8))

        with self.assertRaises(NotFoundError) as ctx:
            mark_read(fake_db, recipient_id=3, notification_id=40)  # type: ignore[arg-type]

        self.assertEqual(ctx.exception.code, "NOTIFICATION_NOT_FOUND")
        self.assertEqual(fake_db.commits, 0)

    def test_mark_read_sets_read_at_once(self) -> None:
        row = _notification()
        fake_db = _FakeNotificationDB(notification=row)

        mark_read(fake_db, recipient_id=3, notification_id=40)  # type: ignore[arg-type]
        first_read_at = row.read_at
        mark_read(fake_db, recipient_id=3, notification_id=40)  # type: ignore[arg-type]

        self.assertTrue(row.is_read)
        self.assertIsNotNone(first_read_at)
        self.assertEqual(row.read_at, first_read_at)
        self.assertEqual(fake_db.commits, 1)

    def test_notify_commits_before_delivery(self) -> None:
        fake_db = _FakeNotificationDB()

        with patch("pointage.services.notifications.deliver_notifications") as deliver_mock:
            row = notify(
                fake_db,  # type: ignore[arg-type]
                recipient_id=3,
                type=NotificationType.SYSTEM_ALERT,
                title="Maintenance",
                message="Service indisponible de 22h à 23h.",
                metadata={"window": "22:00-23:00"},
            )

        self.assertEqual(fake_db.added, [row])
        self.assertEqual(fake_db.commits, 1)
        self.assertFalse(row.is_read)
        self.assertEqual(row.meta, {"window": "22:00-23:00"})
        deliver_mock.assert_called_once_with(fake_db, [row])

    def test_approver_ids_exclude_the_subject(self) -> None:
        fake_db = _FakeNotificationDB(approver_ids=[1, 3, 7])

        self.assertEqual(list_approver_ids(fake_db, exclude=(3,)), [1, 7])  # type: ignore[arg-type]


class DeliveryTests(unittest.TestCase):
    def test_failing_channel_does_not_block_others(self) -> None:
        recording = _RecordingChannel()

        with self.assertLogs("pointage.notifications", level="WARNING") as captured:
            delivered = deliver_notifications(
                None,  # type: ignore[arg-type]
                [_notification(id=40), _notification(id=41)],
                channels=[_FailingChannel(), recording],
            )

        self.assertEqual(delivered, 2)
        self.assertEqual(recording.sent, [40, 41])
        self.assertTrue(any("notification_delivery_failed" in line for line in captured.output))

    def test_all_channels_failing_reports_zero(self) -> None:
        with self.assertLogs("pointage.notifications", level="WARNING"):
            delivered = deliver_notifications(
                None,  # type: ignore[arg-type]
                [_notification()],
                channels=[_FailingChannel()],
            )
        self.assertEqual(delivered, 0)

    def test_unexpected_channel_error_is_logged_not_raised(self) -> None:
        recording = _RecordingChannel()

        with self.assertLogs("pointage.notifications", level="WARNING") as captured:
            delivered = deliver_notifications(
                None,  # type: ignore[arg-type]
                [_notification()],
                channels=[_BrokenSocketChannel(), recording],
            )

        self.assertEqual(delivered, 1)
        self.assertEqual(recording.sent, [40])
        self.assertTrue(any("notification_delivery_failed" in line for line in captured.output))

    def test_channel_setup_failure_is_logged_not_raised(self) -> None:
        with (
            patch(
                "pointage.services.notifications.default_channels",
                side_effect=ValueError("Redis URL must specify one of the following schemes"),
            ),
            self.assertLogs("pointage.notifications", level="WARNING") as captured,
        ):
            delivered = deliver_notifications(None, [_notification()])  # type: ignore[arg-type]

        self.assertEqual(delivered, 0)
        self.assertTrue(any("notification_channels_unavailable" in line for line in captured.output))

    def test_web_push_transport_errors_become_delivery_errors(self) -> None:
        with (
            patch("pointage.services.transport.is_push_enabled", return_value=True),
            patch(
                "pointage.services.transport.send_push_to_account",
                side_effect=ConnectionError("push host down"),
            ),
        ):
            with self.assertRaises(DeliveryError):
                WebPushChannel(None).send(_notification())  # type: ignore[arg-type]

    def test_redis_channel_publishes_on_recipient_channel(self) -> None:
        client = _FakeRedis()

        sent = RedisChannel(client=client).send(_notification())  # type: ignore[arg-type]

        self.assertTrue(sent)
        channel, payload = client.published[0]
        self.assertEqual(channel, "notifications:3")
        body = json.loads(payload)
        self.assertEqual(body["type"], "POINTAGE_ANOMALY")
        self.assertEqual(body["metadata"], {"anomaly_id": 12})
        self.assertFalse(body["isRead"])

    def test_redis_errors_become_delivery_errors(self) -> None:
        client = _FakeRedis(error=redis.ConnectionError("connection refused"))

        with self.assertRaises(DeliveryError):
            RedisChannel(client=client).send(_notification())  # type: ignore[arg-type]

    def test_web_push_skips_normal_priority(self) -> None:
        with patch("pointage.services.transport.send_push_to_account") as push_mock:
            sent = WebPushChannel(None).send(  # type: ignore[arg-type]
                _notification(priority=NotificationPriority.NORMAL)
            )

        self.assertFalse(sent)
        push_mock.assert_not_called()


class _FakePushDB:
    def __init__(self):
        self.commits = 0

    def commit(self):  # type: ignore[no-untyped-def]
        self.commits += 1


class PushSubscriptionTests(unittest.TestCase):
    def test_gone_endpoint_is_deactivated(self) -> None:
        gone = PushSubscription(id=1, account_id=3, endpoint="https://push.example/a", p256dh="k", auth="a", is_active=True)
        alive = PushSubscription(id=2, account_id=3, endpoint="https://push.example/b", p256dh="k", auth="a", is_active=True)
        outcomes = {1: (False, "410 Gone", 410), 2: (True, None, None)}
        fake_db = _FakePushDB()

        with patch(
            "pointage.services.push_notifications._send_to_subscription_row",
            side_effect=lambda row, **_kwargs: outcomes[row.id],
        ):
            summary = send_push_to_subscriptions(
                fake_db,  # type: ignore[arg-type]
                subscriptions=[gone, alive],
                title="Profil approuvé",
                body="Votre profil a été approuvé.",
            )

        self.assertEqual(summary["sent"], 1)
        self.assertEqual(summary["deactivated"], 1)
        self.assertFalse(gone.is_active)
        self.assertTrue(alive.is_active)
        self.assertEqual(gone.last_error, "410 Gone")
        self.assertEqual(fake_db.commits, 1)

    def test_transport_error_is_recorded_and_subscription_kept(self) -> None:
        row = PushSubscription(id=3, account_id=3, endpoint="https://push.example/c", p256dh="k", auth="a", is_active=True)
        settings = SimpleNamespace(push_vapid_private_key="private", push_vapid_subject="mailto:rh@example.tn")
        fake_db = _FakePushDB()

        with (
            patch("pointage.services.push_notifications.get_settings", return_value=settings),
            patch(
                "pointage.services.push_notifications.webpush",
                side_effect=ConnectionError("push host down"),
            ),
        ):
            summary = send_push_to_subscriptions(
                fake_db,  # type: ignore[arg-type]
                subscriptions=[row],
                title="Anomalie de pointage",
                body="Face verification failed. Score: 42",
            )

        self.assertEqual(summary["failed"], 1)
        self.assertEqual(summary["deactivated"], 0)
        self.assertTrue(row.is_active)
        self.assertEqual(row.last_error, "push host down")
        self.assertEqual(fake_db.commits, 1)


if __name__ == "__main__":
    unittest.main()
