"""Daily reminder sweep against a synchronous database."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from conftest import RecordingDispatcher
from crm.db.base import Base, utcnow
from crm.lifecycle.events import EVENT_DEPOSIT_REMINDER, EVENT_QUOTATION_FOLLOWUP
from crm.lifecycle.stages import OrderStage, OrderStatus
from crm.models import Client, Company, Order, PurchaseOrder, Quotation
from crm.tasks import reminder_tasks


def _order(company, client, title, stage, status, **kwargs):
    defaults = dict(
        total_amount=Decimal("10000.00"), deposit_percentage=None, deposit_amount=None,
        deposit_paid_at=None, final_payment_at=None, details=None,
    )
    defaults.update(kwargs)
    return Order(company_id=company.id, client_id=client.id, title=title, stage=stage.value, status=status.value, **defaults)


def _quotation(decision, created_at, file_url="/uploads/q/q.pdf"):
    return Quotation(
        total_amount=Decimal("10000.00"), currency="AED", file_url=file_url, decision=decision,
        client_comment=None, rejection_reason=None, deposit_required=False, deposit_percent=None,
        deposit_amount=None, notes=None, reviewed_at=None, created_at=created_at,
    )


@pytest.fixture
def sync_engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def seeded(sync_engine):
    now = utcnow()
    with Session(sync_engine) as db:
        company = Company(name="ATA Power Equipment")
        db.add(company)
        db.flush()
        client = Client(company_id=company.id, name="Gulf Power LLC", email=None, phone=None)
        db.add(client)
        db.flush()

        overdue = _order(
            company, client, "Overdue deposit", OrderStage.AWAITING_DEPOSIT, OrderStatus.APPROVED,
            deposit_percentage=Decimal("30"), deposit_amount=Decimal("3000.00"),
            updated_at=now - timedelta(days=5),
            quotations=[_quotation("ACCEPTED", now - timedelta(days=20))],
            purchase_orders=[PurchaseOrder(
                po_number="PO-31", files=[], deposit_required=True, deposit_percent=Decimal("30"),
                deposit_amount=Decimal("3000.00"), notes=None, uploaded_by_client=False, created_by=None,
            )],
        )
        unanswered = _order(
            company, client, "Unanswered quotation", OrderStage.QUOTATION_SENT, OrderStatus.PENDING,
            quotations=[_quotation("PENDING", now - timedelta(days=10))],
        )
        fresh = _order(
            company, client, "Fresh quotation", OrderStage.QUOTATION_SENT, OrderStatus.PENDING,
            quotations=[_quotation("PENDING", now - timedelta(days=1))],
        )
        cancelled = _order(
            company, client, "Cancelled", OrderStage.AWAITING_DEPOSIT, OrderStatus.CANCELLED,
            deposit_percentage=Decimal("30"), updated_at=now - timedelta(days=30),
        )
        db.add_all([overdue, unanswered, fresh, cancelled])
        db.commit()
        return {"overdue": overdue.id, "unanswered": unanswered.id, "fresh": fresh.id}


class TestReminderSweep:
    def test_candidates_exclude_terminal_orders(self, sync_engine, seeded):
        with Session(sync_engine) as db:
            snapshots = reminder_tasks.load_reminder_candidates(db)
        assert [s.order_id for s in snapshots] == [seeded["overdue"], seeded["unanswered"], seeded["fresh"]]

    def test_sweep_dispatches_reminders(self, sync_engine, seeded, monkeypatch):
        dispatcher = RecordingDispatcher()
        monkeypatch.setattr(reminder_tasks, "_sync_engine", lambda: sync_engine)
        monkeypatch.setattr(reminder_tasks, "_dispatcher", lambda: dispatcher)

        result = reminder_tasks.send_lifecycle_reminders()

        assert result == {"candidates": 3, "reminders": 2, "sent": 2}
        assert [(e.order_id, e.event_type) for e in dispatcher.events] == [
            (seeded["overdue"], EVENT_DEPOSIT_REMINDER),
            (seeded["unanswered"], EVENT_QUOTATION_FOLLOWUP),
        ]
        assert dispatcher.events[0].payload["po_number"] == "PO-31"
        assert dispatcher.events[0].payload["days_overdue"] == 5
