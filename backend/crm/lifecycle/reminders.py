"""ATA CRM — Reminder sweeps: overdue deposits and unanswered quotations.

Pure selectors over snapshots. The Celery beat task loads candidate orders,
builds snapshots and hands the resulting events to the dispatcher.
"""
from datetime import datetime, timedelta, timezone
from typing import Iterable

from crm.lifecycle.actors import ActorRole
from crm.lifecycle.events import EVENT_DEPOSIT_REMINDER, EVENT_QUOTATION_FOLLOWUP, OrderEvent
from crm.lifecycle.snapshot import OrderSnapshot, QuotationView
from crm.lifecycle.stages import OrderStage


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC (SQLite drops tzinfo)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _days_since(value: datetime, now: datetime) -> int:
    return (as_utc(now) - as_utc(value)).days


def deposit_reminder_due(snapshot: OrderSnapshot, now: datetime, after_days: int = 3) -> bool:
    if snapshot.is_terminal or snapshot.stage is not OrderStage.AWAITING_DEPOSIT:
        return False
    if not snapshot.deposit_outstanding:
        return False
    last_touched = snapshot.updated_at or snapshot.created_at
    if last_touched is None:
        return False
    return as_utc(last_touched) <= as_utc(now) - timedelta(days=after_days)


def quotation_followups(
    snapshot: OrderSnapshot, now: datetime, after_days: int = 7
) -> list[QuotationView]:
    """Quotations sent with a file, still undecided after ``after_days``."""
    if snapshot.is_terminal:
        return []
    cutoff = as_utc(now) - timedelta(days=after_days)
    return [
        q for q in snapshot.quotations
        if q.awaits_review and q.created_at is not None and as_utc(q.created_at) <= cutoff
    ]


def reminder_events(
    snapshots: Iterable[OrderSnapshot],
    now: datetime,
    deposit_days: int = 3,
    quotation_days: int = 7,
) -> list[OrderEvent]:
    events: list[OrderEvent] = []
    for snapshot in snapshots:
        if deposit_reminder_due(snapshot, now, deposit_days):
            po = snapshot.purchase_order
            events.append(OrderEvent(
                order_id=snapshot.order_id,
                company_id=snapshot.company_id,
                client_id=snapshot.client_id,
                event_type=EVENT_DEPOSIT_REMINDER,
                actor_role=ActorRole.SYSTEM,
                from_stage=snapshot.stage,
                to_stage=snapshot.stage,
                payload={
                    "po_number": po.po_number if po else None,
                    "deposit_amount": str(snapshot.deposit_amount) if snapshot.deposit_amount is not None else None,
                    "deposit_percent": str(snapshot.deposit_percentage),
                    "currency": snapshot.currency,
                    "days_overdue": _days_since(snapshot.updated_at or snapshot.created_at, now),
                },
            ))
        for quotation in quotation_followups(snapshot, now, quotation_days):
            events.append(OrderEvent(
                order_id=snapshot.order_id,
                company_id=snapshot.company_id,
                client_id=snapshot.client_id,
                event_type=EVENT_QUOTATION_FOLLOWUP,
                actor_role=ActorRole.SYSTEM,
                from_stage=snapshot.stage,
                to_stage=snapshot.stage,
                payload={
                    "quotation_id": quotation.id,
                    "total": str(quotation.total_amount),
                    "currency": quotation.currency,
                    "days_pending": _days_since(quotation.created_at, now),
                },
            ))
    return events
