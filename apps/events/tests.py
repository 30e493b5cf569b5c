import uuid
from io import StringIO
from unittest import mock

from django.core.management import call_command
from django.test import TestCase, override_settings

from apps.events.models import EventType, OutboxEvent, OutboxStatus
from apps.events.services import deliver, dispatch_pending, publish

received = []


def remember(event):
    received.append(event.pk)


def explode(event):
    raise RuntimeError("subscriber unavailable")


@override_settings(EVENT_SUBSCRIBERS={"*": ["apps.events.tests.remember"]}, EVENTS_DISPATCH_ON_COMMIT=False)
class OutboxTests(TestCase):
    def setUp(self):
        received.clear()
        self.aggregate_id = uuid.uuid4()

    def test_dedup_key_makes_publish_idempotent(self):
        first, created = publish(EventType.DESIGN_APPROVED, {"n": 1}, aggregate_id=self.aggregate_id, dedup_key="approved:1")
        second, created_again = publish(
            EventType.DESIGN_APPROVED, {"n": 2}, aggregate_id=self.aggregate_id, dedup_key="approved:1"
        )
        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first.pk, second.pk)
        self.assertEqual(OutboxEvent.objects.count(), 1)

    def test_events_without_key_are_always_stored(self):
        publish(EventType.REQUEST_CREATED, {}, aggregate_id=self.aggregate_id)
        publish(EventType.REQUEST_CREATED, {}, aggregate_id=self.aggregate_id)
        self.assertEqual(OutboxEvent.objects.count(), 2)

    def test_deliver_marks_event_delivered_once(self):
        event, _ = publish(EventType.PAYMENT_HELD, {"amount": "100.00"}, aggregate_id=self.aggregate_id)

        self.assertTrue(deliver(event.pk))
        self.assertFalse(deliver(event.pk))

        event.refresh_from_db()
        self.assertEqual(event.status, OutboxStatus.DELIVERED)
        self.assertEqual(event.attempts, 1)
        self.assertIsNotNone(event.delivered_at)
        self.assertEqual(received, [event.pk])

    @override_settings(EVENT_SUBSCRIBERS={"*": ["apps.events.tests.explode"]}, EVENTS_MAX_ATTEMPTS=2)
    def test_failing_subscriber_is_retried_then_parked(self):
        event, _ = publish(EventType.PAYOUT_FAILED, {}, aggregate_id=self.aggregate_id)

        self.assertFalse(deliver(event.pk))
        event.refresh_from_db()
        self.assertEqual(event.status, OutboxStatus.PENDING)
        self.assertIn("subscriber unavailable", event.last_error)

        self.assertFalse(deliver(event.pk))
        event.refresh_from_db()
        self.assertEqual(event.status, OutboxStatus.FAILED)
        self.assertEqual(event.attempts, 2)

    def test_subscribers_are_matched_by_event_type(self):
        with override_settings(
            EVENT_SUBSCRIBERS={EventType.PAYOUT_REQUESTED: ["apps.events.tests.remember"], "*": []}
        ):
            requested, _ = publish(EventType.PAYOUT_REQUESTED, {}, aggregate_id=self.aggregate_id)
            other, _ = publish(EventType.PAYMENT_HELD, {}, aggregate_id=self.aggregate_id)
            self.assertEqual(dispatch_pending(), (2, 2))
        self.assertEqual(received, [requested.pk])

    def test_dispatch_command_delivers_pending_events(self):
        for _ in range(3):
            publish(EventType.REQUEST_CREATED, {}, aggregate_id=self.aggregate_id)
        out = StringIO()
        call_command("dispatch_events", "--limit", "2", stdout=out)
        self.assertIn("Delivered events: 2/2", out.getvalue())
        self.assertEqual(OutboxEvent.objects.filter(status=OutboxStatus.PENDING).count(), 1)

    @override_settings(EVENTS_DISPATCH_ON_COMMIT=True)
    def test_publish_delivers_after_commit(self):
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            event, _ = publish(EventType.DESIGN_COMPLETED, {}, aggregate_id=self.aggregate_id)
        self.assertEqual(len(callbacks), 1)
        event.refresh_from_db()
        self.assertEqual(event.status, OutboxStatus.DELIVERED)

    @override_settings(EVENTS_DISPATCH_ON_COMMIT=True)
    def test_subscriber_failure_never_breaks_the_publisher(self):
        with mock.patch("apps.events.tests.remember", side_effect=RuntimeError("down")):
            with self.captureOnCommitCallbacks(execute=True):
                event, created = publish(EventType.DESIGN_COMPLETED, {}, aggregate_id=self.aggregate_id)
        self.assertTrue(created)
        event.refresh_from_db()
        self.assertEqual(event.status, OutboxStatus.PENDING)
        self.assertEqual(event.attempts, 1)
