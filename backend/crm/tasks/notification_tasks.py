"""ATA CRM — Order event delivery (Celery).

- deliver_order_event: publishes the event on the company/client pub/sub rooms
  read by the websocket gateway, and queues client-facing events on the email
  outbox list consumed by the mailer.
"""
import json
import logging

import redis

from crm.config import get_settings
from crm.worker import celery_app

logger = logging.getLogger(__name__)


def _sync_redis():
    """Get a sync Redis client for Celery tasks."""
    settings = get_settings()
    return redis.from_url(settings.REDIS_URL, decode_responses=True)


def channel_for(room: str) -> str:
    return f"{get_settings().NOTIFICATION_CHANNEL_PREFIX}:{room}"


@celery_app.task(bind=True, max_retries=3)
def deliver_order_event(self, descriptor: dict) -> dict:
    """Retries with exponential backoff (5s, 10s, 20s) while Redis is unreachable."""
    try:
        return publish_order_event(_sync_redis(), descriptor)
    except redis.ConnectionError as exc:
        delay = (2 ** self.request.retries) * 5
        logger.warning(
            "Event %s for order %s not delivered, retrying in %ss: %s",
            descriptor.get("event_type"), descriptor.get("order_id"), delay, exc,
        )
        raise self.retry(exc=exc, countdown=delay)


def publish_order_event(client, descriptor: dict) -> dict:
    settings = get_settings()
    message = json.dumps(descriptor, default=str)
    rooms = descriptor.get("rooms") or []
    for room in rooms:
        client.publish(channel_for(room), message)

    emailed = False
    if descriptor.get("notify_client"):
        client.lpush(settings.EMAIL_OUTBOX_KEY, json.dumps({
            "template": descriptor["event_type"],
            "order_id": descriptor["order_id"],
            "client_id": descriptor.get("client_id"),
            "company_id": descriptor.get("company_id"),
            "payload": descriptor.get("payload") or {},
        }, default=str))
        emailed = True

    logger.info(
        "Delivered %s for order %s to %d room(s)%s",
        descriptor.get("event_type"), descriptor.get("order_id"), len(rooms),
        " and email outbox" if emailed else "",
    )
    return {"rooms": len(rooms), "emailed": emailed}
