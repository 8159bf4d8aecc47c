"""ATA CRM — Reminder sweeps (Celery Beat, daily).

- send_lifecycle_reminders: deposit reminders for orders stuck at
  AWAITING_DEPOSIT and follow-ups for quotations the client has not answered.
"""
import logging

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from crm.config import get_settings
from crm.db.base import utcnow
from crm.lifecycle.reminders import reminder_events
from crm.lifecycle.snapshot import OrderSnapshot, QuotationDecision
from crm.lifecycle.stages import TERMINAL_STATUSES, OrderStage
from crm.models import Order, Quotation
from crm.services.notification_dispatcher import CeleryNotificationDispatcher, dispatch_safely
from crm.worker import celery_app

logger = logging.getLogger(__name__)


def _sync_engine():
    """Create a sync engine for Celery tasks (workers cannot use async)."""
    from sqlalchemy import create_engine

    settings = get_settings()
    sync_url = settings.DATABASE_URL.replace("+asyncpg", "+psycopg2").replace("postgresql+psycopg2", "postgresql")
    return create_engine(sync_url, pool_pre_ping=True, pool_size=2)


def _dispatcher():
    return CeleryNotificationDispatcher()


def load_reminder_candidates(db: Session) -> list[OrderSnapshot]:
    stmt = (
        select(Order)
        .where(
            Order.status.not_in([s.value for s in TERMINAL_STATUSES]),
            or_(
                Order.stage == OrderStage.AWAITING_DEPOSIT.value,
                Order.quotations.any(Quotation.decision == QuotationDecision.PENDING.value),
            ),
        )
        .order_by(Order.id)
    )
    return [OrderSnapshot.from_order(order) for order in db.execute(stmt).scalars().all()]


@celery_app.task(bind=True, max_retries=2)
def send_lifecycle_reminders(self) -> dict:
    settings = get_settings()
    engine = _sync_engine()
    try:
        with Session(engine) as db:
            snapshots = load_reminder_candidates(db)
    finally:
        engine.dispose()

    events = reminder_events(
        snapshots,
        now=utcnow(),
        deposit_days=settings.DEPOSIT_REMINDER_AFTER_DAYS,
        quotation_days=settings.QUOTATION_FOLLOWUP_AFTER_DAYS,
    )
    sent = dispatch_safely(_dispatcher(), events)
    logger.info("Reminder sweep: %d candidate order(s), %d reminder(s) sent", len(snapshots), sent)
    return {"candidates": len(snapshots), "reminders": len(events), "sent": sent}
