"""ATA CRM — NotificationDispatcher: hands order events to delivery after commit.

Services never dispatch directly. They queue events on the session with
``queue_event``; the ``after_commit`` hook below dispatches them once the
transaction is durable and ``after_rollback`` discards them. A failing
dispatcher is logged and never propagates into the request.
"""
import logging
from typing import Iterable

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from crm.lifecycle.events import OrderEvent

logger = logging.getLogger(__name__)

_PENDING_KEY = "pending_order_events"


class NotificationDispatcher:
    """Receives event descriptors once their transaction has committed."""

    def dispatch(self, event: OrderEvent) -> None:
        raise NotImplementedError


class CeleryNotificationDispatcher(NotificationDispatcher):
    """Enqueues ``deliver_order_event`` on the default Celery queue."""

    def dispatch(self, event: OrderEvent) -> None:
        from crm.tasks.notification_tasks import deliver_order_event

        deliver_order_event.delay(event.to_descriptor())


def dispatch_safely(dispatcher: NotificationDispatcher, events: Iterable[OrderEvent]) -> int:
    """Dispatch each event; return how many succeeded."""
    sent = 0
    for order_event in events:
        try:
            dispatcher.dispatch(order_event)
            sent += 1
        except Exception:
            logger.exception(
                "Notification dispatch failed for order %s (%s)",
                order_event.order_id, order_event.event_type,
            )
    return sent


def queue_event(db: AsyncSession | Session, dispatcher: NotificationDispatcher, order_event: OrderEvent) -> None:
    """Hold ``order_event`` until ``db`` commits."""
    sync_session = db.sync_session if isinstance(db, AsyncSession) else db
    sync_session.info.setdefault(_PENDING_KEY, []).append((dispatcher, order_event))


def pending_events(db: AsyncSession | Session) -> list[OrderEvent]:
    sync_session = db.sync_session if isinstance(db, AsyncSession) else db
    return [order_event for _, order_event in sync_session.info.get(_PENDING_KEY, [])]


@event.listens_for(Session, "after_commit")
def _dispatch_after_commit(session: Session) -> None:
    pending = session.info.pop(_PENDING_KEY, None)
    if not pending:
        return
    for dispatcher, order_event in pending:
        dispatch_safely(dispatcher, [order_event])


@event.listens_for(Session, "after_rollback")
def _discard_after_rollback(session: Session) -> None:
    dropped = session.info.pop(_PENDING_KEY, None)
    if dropped:
        logger.info("Discarded %d order event(s) after rollback", len(dropped))
