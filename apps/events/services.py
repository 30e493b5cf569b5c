"""Transactional outbox.

Events are stored in the same database transaction as the state change that
produced them and handed to subscribers afterwards. A subscriber that raises
never affects the publishing transaction; the event stays pending and is
retried by ``dispatch_pending`` until ``EVENTS_MAX_ATTEMPTS`` is reached.
Subscribers receive the ``OutboxEvent`` and can use ``event.id`` to drop
repeated deliveries.
"""

import logging

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone
from django.utils.module_loading import import_string

from apps.events.models import OutboxEvent, OutboxStatus

logger = logging.getLogger(__name__)


def publish(event_type, payload, *, aggregate_id, dedup_key=None):
    """Store an event. Returns ``(event, created)``; a repeated ``dedup_key`` returns the stored event."""
    if dedup_key:
        existing = OutboxEvent.objects.filter(dedup_key=dedup_key).first()
        if existing:
            logger.info("Skipping duplicate event %s (%s)", event_type, dedup_key)
            return existing, False
    try:
        with transaction.atomic():
            event = OutboxEvent.objects.create(
                event_type=event_type,
                aggregate_id=str(aggregate_id),
                payload=payload,
                dedup_key=dedup_key,
            )
    except IntegrityError:
        # Lost a race against a concurrent publisher with the same key.
        return OutboxEvent.objects.get(dedup_key=dedup_key), False

    if getattr(settings, "EVENTS_DISPATCH_ON_COMMIT", False):
        transaction.on_commit(lambda: deliver(event.pk))
    return event, True


def subscribers_for(event_type):
    configured = getattr(settings, "EVENT_SUBSCRIBERS", {})
    paths = list(configured.get(event_type, [])) + list(configured.get("*", []))
    return [import_string(path) for path in paths]


def deliver(event_id):
    """Hand one pending event to its subscribers. Returns True when it was delivered."""
    with transaction.atomic():
        event = OutboxEvent.objects.select_for_update().filter(pk=event_id, status=OutboxStatus.PENDING).first()
        if event is None:
            return False

        event.attempts += 1
        try:
            with transaction.atomic():
                for handler in subscribers_for(event.event_type):
                    handler(event)
        except Exception as exc:
            logger.exception("Subscriber failed for event %s (%s)", event.pk, event.event_type)
            event.last_error = f"{exc.__class__.__name__}: {exc}"
            max_attempts = getattr(settings, "EVENTS_MAX_ATTEMPTS", 5)
            if event.attempts >= max_attempts:
                event.status = OutboxStatus.FAILED
            event.save(update_fields=["attempts", "last_error", "status"])
            return False

        event.status = OutboxStatus.DELIVERED
        event.delivered_at = timezone.now()
        event.last_error = ""
        event.save(update_fields=["attempts", "status", "delivered_at", "last_error"])
        return True


def dispatch_pending(limit=100):
    pending_ids = list(
        OutboxEvent.objects.filter(status=OutboxStatus.PENDING).order_by("created_at").values_list("pk", flat=True)[:limit]
    )
    delivered = sum(1 for event_id in pending_ids if deliver(event_id))
    if pending_ids:
        logger.info("Outbox dispatch: %s/%s delivered", delivered, len(pending_ids))
    return delivered, len(pending_ids)
