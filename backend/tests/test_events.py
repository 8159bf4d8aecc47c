"""OrderEvent construction and client notification rules."""

from decimal import Decimal

from conftest import ADMIN, CLIENT, accepted_quotation, make_quotation, make_snapshot
from crm.lifecycle.actors import ActorRole
from crm.lifecycle.events import EVENT_DEPOSIT_REMINDER, OrderEvent, build_event
from crm.lifecycle.stages import OrderStage
from crm.lifecycle.transitions import LifecycleEvent, TransitionRequest, TransitionValidator

validator = TransitionValidator()


class TestBuildEvent:
    def test_quotation_sent_event(self):
        snap = make_snapshot(OrderStage.UNDER_REVIEW)
        plan = validator.validate(
            snap, TransitionRequest(event=LifecycleEvent.SEND_QUOTATION, actor=ADMIN, file_url="/q.pdf")
        )
        event = build_event(snap, plan, extra={"total": "5000"})
        assert event.event_type == "quotation_sent"
        assert event.from_stage is OrderStage.UNDER_REVIEW
        assert event.to_stage is OrderStage.QUOTATION_SENT
        assert event.actor_id == ADMIN.id
        assert event.payload == {"file_url": "/q.pdf", "total": "5000"}
        assert event.notify_client

    def test_status_change_recorded_in_payload(self):
        snap = make_snapshot(OrderStage.QUOTATION_SENT, quotations=[make_quotation(1)])
        plan = validator.validate(
            snap, TransitionRequest(event=LifecycleEvent.ACCEPT_QUOTATION, actor=CLIENT, quotation_id=1)
        )
        event = build_event(snap, plan)
        assert event.payload["from_status"] == "PENDING"
        assert event.payload["to_status"] == "APPROVED"
        # the client triggered it, so the client is not emailed
        assert not event.notify_client

    def test_override_flag(self):
        snap = make_snapshot(OrderStage.PO_PREPARED, quotations=[accepted_quotation()], total_amount=Decimal("1"))
        plan = validator.validate(
            snap,
            TransitionRequest(event=LifecycleEvent.OVERRIDE_STAGE, actor=ADMIN, target_stage=OrderStage.QUOTATION_ACCEPTED),
        )
        assert build_event(snap, plan).payload["override"] is True


class TestNotifyClient:
    def event(self, **kwargs):
        defaults = dict(order_id=1, company_id=1, client_id=3, event_type="review_started", actor_role=ActorRole.ADMIN)
        defaults.update(kwargs)
        return OrderEvent(**defaults)

    def test_internal_stage_change_is_not_emailed(self):
        event = self.event(from_stage=OrderStage.RECEIVED, to_stage=OrderStage.UNDER_REVIEW)
        assert not event.notify_client

    def test_payments_are_emailed(self):
        assert self.event(event_type="payment_received_partial").notify_client

    def test_reminders_are_emailed(self):
        assert self.event(event_type=EVENT_DEPOSIT_REMINDER, actor_role=ActorRole.SYSTEM).notify_client

    def test_no_client_no_email(self):
        assert not self.event(client_id=None, event_type="payment_received_final").notify_client

    def test_descriptor_and_rooms(self):
        event = self.event(from_stage=OrderStage.RECEIVED, to_stage=OrderStage.UNDER_REVIEW, actor_id=4)
        descriptor = event.to_descriptor()
        assert descriptor["rooms"] == ["company_1", "client_3"]
        assert descriptor["from_stage"] == "RECEIVED"
        assert descriptor["to_stage"] == "UNDER_REVIEW"
        assert descriptor["actor_role"] == "ADMIN"
        assert descriptor["actor_id"] == 4
        assert descriptor["notify_client"] is False
