import logging

logger = logging.getLogger("apps.events.delivery")


def log_event(event):
    logger.info("event=%s aggregate=%s id=%s payload=%s", event.event_type, event.aggregate_id, event.pk, event.payload)
