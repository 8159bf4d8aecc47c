"""TransitionValidator guards, targets and effects."""

from decimal import Decimal

import pytest

from conftest import (
    ADMIN,
    CLIENT,
    accepted_quotation,
    delivery_note,
    make_quotation,
    make_snapshot,
    payment,
    purchase_order,
)
from crm.lifecycle.errors import PreconditionError, TerminalStateError
from crm.lifecycle.snapshot import PaymentType, QuotationDecision
from crm.lifecycle.stages import STAGES, OrderStage, OrderStatus, index_of
from crm.lifecycle.transitions import (
    ACTION_QUOTATION_SENT,
    Effect,
    LifecycleEvent,
    TransitionRequest,
    TransitionValidator,
)

validator = TransitionValidator()


def request(event: LifecycleEvent, actor=ADMIN, **kwargs) -> TransitionRequest:
    return TransitionRequest(event=event, actor=actor, **kwargs)


def accepted_order(**kwargs):
    return make_snapshot(
        OrderStage.QUOTATION_ACCEPTED,
        quotations=[accepted_quotation(total="5000.00")],
        total_amount=Decimal("5000.00"),
        **kwargs,
    )


class TestQuotation:
    def test_send_from_early_stages(self):
        for stage in (OrderStage.RECEIVED, OrderStage.UNDER_REVIEW, OrderStage.QUOTATION_PREPARATION):
            plan = validator.validate(
                make_snapshot(stage), request(LifecycleEvent.SEND_QUOTATION, file_url="/q.pdf")
            )
            assert plan.to_stage is OrderStage.QUOTATION_SENT
            assert plan.to_status is OrderStatus.PENDING
            assert plan.history_action == ACTION_QUOTATION_SENT

    def test_send_requires_a_file(self):
        with pytest.raises(PreconditionError, match="no quotation file"):
            validator.validate(make_snapshot(), request(LifecycleEvent.SEND_QUOTATION, file_url=None))

    def test_deposit_quotation_needs_terms(self):
        with pytest.raises(PreconditionError, match="no deposit terms"):
            validator.validate(
                make_snapshot(),
                request(LifecycleEvent.SEND_QUOTATION, file_url="/q.pdf", deposit_required=True),
            )
        plan = validator.validate(
            make_snapshot(),
            request(
                LifecycleEvent.SEND_QUOTATION,
                file_url="/q.pdf",
                deposit_required=True,
                deposit_percent=Decimal("25"),
            ),
        )
        assert plan.to_stage is OrderStage.QUOTATION_SENT

    def test_cannot_send_once_sent(self):
        snap = make_snapshot(OrderStage.QUOTATION_SENT, quotations=[make_quotation()])
        with pytest.raises(PreconditionError, match="already at 'Quotation Sent'"):
            validator.validate(snap, request(LifecycleEvent.SEND_QUOTATION, file_url="/q2.pdf"))

    def test_accept_closes_other_open_quotations(self):
        snap = make_snapshot(
            OrderStage.QUOTATION_SENT,
            quotations=[make_quotation(1), make_quotation(2, file_url=None)],
        )
        plan = validator.validate(snap, request(LifecycleEvent.ACCEPT_QUOTATION, CLIENT, quotation_id=1))
        assert plan.to_stage is OrderStage.QUOTATION_ACCEPTED
        assert plan.to_status is OrderStatus.APPROVED
        assert Effect.MARK_QUOTATION_ACCEPTED in plan.effects
        assert plan.closed_quotation_ids == (2,)

    def test_accept_refused_when_another_is_accepted(self):
        snap = make_snapshot(
            OrderStage.QUOTATION_SENT,
            status=OrderStatus.PENDING,
            quotations=[accepted_quotation(1), make_quotation(2)],
        )
        with pytest.raises(PreconditionError, match="another quotation is already accepted"):
            validator.validate(snap, request(LifecycleEvent.ACCEPT_QUOTATION, CLIENT, quotation_id=2))

    def test_accept_unknown_quotation(self):
        snap = make_snapshot(OrderStage.QUOTATION_SENT, quotations=[make_quotation(1)])
        with pytest.raises(PreconditionError, match="not found"):
            validator.validate(snap, request(LifecycleEvent.ACCEPT_QUOTATION, CLIENT, quotation_id=99))

    def test_decided_quotation_cannot_be_decided_again(self):
        snap = make_snapshot(
            OrderStage.QUOTATION_SENT,
            quotations=[make_quotation(1, decision=QuotationDecision.REJECTED), make_quotation(2)],
        )
        with pytest.raises(PreconditionError, match="already rejected"):
            validator.validate(snap, request(LifecycleEvent.ACCEPT_QUOTATION, CLIENT, quotation_id=1))

    def test_reject_reopens_preparation(self):
        snap = make_snapshot(OrderStage.QUOTATION_SENT, quotations=[make_quotation(1)])
        plan = validator.validate(
            snap, request(LifecycleEvent.REJECT_QUOTATION, CLIENT, quotation_id=1, reason="Too expensive")
        )
        assert plan.to_stage is OrderStage.QUOTATION_PREPARATION
        assert plan.is_reopen
        assert Effect.MARK_QUOTATION_REJECTED in plan.effects
        assert plan.payload["rejection_reason"] == "Too expensive"


class TestPurchaseOrder:
    def test_requires_accepted_quotation(self):
        snap = make_snapshot(OrderStage.QUOTATION_SENT, quotations=[make_quotation()])
        with pytest.raises(PreconditionError, match="no accepted quotation"):
            validator.validate(snap, request(LifecycleEvent.CREATE_PURCHASE_ORDER))

    def test_without_deposit_goes_to_po_prepared(self):
        plan = validator.validate(accepted_order(), request(LifecycleEvent.CREATE_PURCHASE_ORDER))
        assert plan.to_stage is OrderStage.PO_PREPARED
        assert Effect.SET_DEPOSIT_TERMS not in plan.effects

    def test_with_deposit_goes_to_awaiting_deposit(self):
        plan = validator.validate(
            accepted_order(),
            request(
                LifecycleEvent.CREATE_PURCHASE_ORDER,
                deposit_required=True,
                deposit_percent=Decimal("30"),
                deposit_amount=Decimal("1500"),
            ),
        )
        assert plan.to_stage is OrderStage.AWAITING_DEPOSIT
        assert plan.deposit_percent == Decimal("30")
        assert plan.deposit_amount == Decimal("1500")

    def test_deposit_terms_without_flag_require_deposit(self):
        plan = validator.validate(
            accepted_order(),
            request(
                LifecycleEvent.CREATE_PURCHASE_ORDER,
                deposit_percent=Decimal("30"),
                deposit_amount=Decimal("1500"),
            ),
        )
        assert plan.to_stage is OrderStage.AWAITING_DEPOSIT
        assert Effect.SET_DEPOSIT_TERMS in plan.effects
        assert plan.deposit_percent == Decimal("30")
        assert plan.deposit_amount == Decimal("1500")

    def test_deposit_amount_alone_requires_deposit(self):
        plan = validator.validate(
            accepted_order(),
            request(LifecycleEvent.CREATE_PURCHASE_ORDER, deposit_amount=Decimal("1000")),
        )
        assert plan.to_stage is OrderStage.AWAITING_DEPOSIT
        assert plan.deposit_percent == Decimal("20.00")

    def test_explicit_no_deposit_ignores_terms(self):
        plan = validator.validate(
            accepted_order(),
            request(
                LifecycleEvent.CREATE_PURCHASE_ORDER,
                deposit_required=False,
                deposit_percent=Decimal("30"),
            ),
        )
        assert plan.to_stage is OrderStage.PO_PREPARED
        assert plan.deposit_percent is None

    def test_deposit_amount_derived_from_percent(self):
        plan = validator.validate(
            accepted_order(),
            request(LifecycleEvent.CREATE_PURCHASE_ORDER, deposit_required=True, deposit_percent=Decimal("30")),
        )
        assert plan.deposit_amount == Decimal("1500.00")

    def test_deposit_terms_fall_back_to_quotation(self):
        snap = make_snapshot(
            OrderStage.QUOTATION_ACCEPTED,
            quotations=[accepted_quotation(total="5000.00", deposit_required=True, deposit_percent="20")],
            total_amount=Decimal("5000.00"),
        )
        plan = validator.validate(snap, request(LifecycleEvent.CLIENT_UPLOAD_PURCHASE_ORDER, CLIENT))
        assert plan.to_stage is OrderStage.AWAITING_DEPOSIT
        assert plan.deposit_amount == Decimal("1000.00")
        assert plan.history_action == "po_uploaded_by_client"

    def test_deposit_required_without_terms(self):
        with pytest.raises(PreconditionError, match="no deposit percentage"):
            validator.validate(
                make_snapshot(OrderStage.QUOTATION_ACCEPTED, quotations=[accepted_quotation()]),
                request(LifecycleEvent.CREATE_PURCHASE_ORDER, deposit_required=True),
            )

    def test_second_purchase_order_rejected(self):
        snap = make_snapshot(
            OrderStage.PO_PREPARED,
            quotations=[accepted_quotation()],
            purchase_orders=[purchase_order()],
        )
        with pytest.raises(PreconditionError, match="PO already exists for this order"):
            validator.validate(snap, request(LifecycleEvent.CREATE_PURCHASE_ORDER))


class TestPayments:
    def deposit_order(self, **kwargs):
        return make_snapshot(
            OrderStage.AWAITING_DEPOSIT,
            quotations=[accepted_quotation(total="5000.00")],
            purchase_orders=[purchase_order(deposit_percent="30")],
            total_amount=Decimal("5000.00"),
            deposit_percentage=Decimal("30"),
            deposit_amount=Decimal("1500"),
            **kwargs,
        )

    def test_deposit_moves_to_deposit_received(self):
        plan = validator.validate(
            self.deposit_order(),
            request(LifecycleEvent.RECORD_PAYMENT, payment_type=PaymentType.DEPOSIT, amount=Decimal("1500")),
        )
        assert plan.to_stage is OrderStage.DEPOSIT_RECEIVED
        assert Effect.SET_DEPOSIT_PAID in plan.effects
        assert plan.history_action == "payment_received_deposit"

    def test_short_deposit_is_recorded_only(self):
        plan = validator.validate(
            self.deposit_order(),
            request(LifecycleEvent.RECORD_PAYMENT, payment_type=PaymentType.DEPOSIT, amount=Decimal("500")),
        )
        assert plan.to_stage is OrderStage.AWAITING_DEPOSIT
        assert plan.effects == frozenset()

    def test_instalments_complete_the_deposit(self):
        snap = self.deposit_order(payments=[payment(1, PaymentType.DEPOSIT, "1000")])
        plan = validator.validate(
            snap,
            request(LifecycleEvent.RECORD_PAYMENT, payment_type=PaymentType.DEPOSIT, amount=Decimal("500")),
        )
        assert plan.to_stage is OrderStage.DEPOSIT_RECEIVED

    def test_second_deposit_changes_nothing(self):
        snap = make_snapshot(
            OrderStage.DEPOSIT_RECEIVED,
            quotations=[accepted_quotation()],
            purchase_orders=[purchase_order(deposit_percent="30")],
            deposit_percentage=Decimal("30"),
            deposit_amount=Decimal("1500"),
            deposit_paid=True,
            payments=[payment(1, PaymentType.DEPOSIT, "1500")],
        )
        plan = validator.validate(
            snap,
            request(LifecycleEvent.RECORD_PAYMENT, payment_type=PaymentType.DEPOSIT, amount=Decimal("1500")),
        )
        assert plan.to_stage is OrderStage.DEPOSIT_RECEIVED
        assert plan.effects == frozenset()

    def test_payment_needs_purchase_order(self):
        with pytest.raises(PreconditionError, match="no Purchase Order"):
            validator.validate(
                accepted_order(),
                request(LifecycleEvent.RECORD_PAYMENT, payment_type=PaymentType.PARTIAL, amount=Decimal("10")),
            )

    def test_amount_must_be_positive(self):
        with pytest.raises(PreconditionError, match="amount must be positive"):
            validator.validate(
                self.deposit_order(),
                request(LifecycleEvent.RECORD_PAYMENT, payment_type=PaymentType.DEPOSIT, amount=Decimal("0")),
            )

    def test_final_payment_needs_delivery_note(self):
        with pytest.raises(PreconditionError, match="no delivery note"):
            validator.validate(
                self.deposit_order(),
                request(LifecycleEvent.RECORD_PAYMENT, payment_type=PaymentType.FINAL, amount=Decimal("3500")),
            )

    def test_final_payment_received(self):
        snap = make_snapshot(
            OrderStage.AWAITING_FINAL_PAYMENT,
            quotations=[accepted_quotation()],
            purchase_orders=[purchase_order()],
            delivery_notes=[delivery_note()],
        )
        plan = validator.validate(
            snap,
            request(LifecycleEvent.RECORD_PAYMENT, payment_type=PaymentType.FINAL, amount=Decimal("10000")),
        )
        assert plan.to_stage is OrderStage.FINAL_PAYMENT_RECEIVED
        assert Effect.SET_FINAL_PAYMENT_RECEIVED in plan.effects


class TestManufacturingAndDelivery:
    def test_start_from_po_prepared_without_deposit(self):
        snap = make_snapshot(OrderStage.PO_PREPARED, quotations=[accepted_quotation()], purchase_orders=[purchase_order()])
        plan = validator.validate(snap, request(LifecycleEvent.START_MANUFACTURING))
        assert plan.to_stage is OrderStage.IN_MANUFACTURING

    def test_start_blocked_while_deposit_outstanding(self):
        snap = make_snapshot(
            OrderStage.AWAITING_DEPOSIT,
            quotations=[accepted_quotation()],
            purchase_orders=[purchase_order(deposit_percent="30")],
            deposit_percentage=Decimal("30"),
        )
        with pytest.raises(PreconditionError, match="deposit not received"):
            validator.validate(snap, request(LifecycleEvent.START_MANUFACTURING))

    def test_complete_passes_through_manufacturing_complete(self):
        snap = make_snapshot(OrderStage.IN_MANUFACTURING, quotations=[accepted_quotation()], purchase_orders=[purchase_order()])
        plan = validator.validate(snap, request(LifecycleEvent.COMPLETE_MANUFACTURING))
        assert plan.path == (OrderStage.MANUFACTURING_COMPLETE, OrderStage.READY_FOR_DELIVERY)
        assert plan.to_stage is OrderStage.READY_FOR_DELIVERY

    def test_delivery_note_moves_to_awaiting_final_payment(self):
        snap = make_snapshot(OrderStage.READY_FOR_DELIVERY, quotations=[accepted_quotation()], purchase_orders=[purchase_order()])
        plan = validator.validate(snap, request(LifecycleEvent.CREATE_DELIVERY_NOTE))
        assert plan.path == (OrderStage.DELIVERY_NOTE_SENT, OrderStage.AWAITING_FINAL_PAYMENT)
        assert plan.to_stage is OrderStage.AWAITING_FINAL_PAYMENT

    def test_close_requires_final_payment(self):
        snap = make_snapshot(
            OrderStage.AWAITING_FINAL_PAYMENT,
            quotations=[accepted_quotation()],
            purchase_orders=[purchase_order()],
            delivery_notes=[delivery_note()],
        )
        with pytest.raises(PreconditionError, match="final payment not received"):
            validator.validate(snap, request(LifecycleEvent.CLOSE_ORDER))

    def test_close_completes(self):
        snap = make_snapshot(
            OrderStage.FINAL_PAYMENT_RECEIVED,
            quotations=[accepted_quotation()],
            purchase_orders=[purchase_order()],
            delivery_notes=[delivery_note()],
            final_payment_received=True,
        )
        plan = validator.validate(snap, request(LifecycleEvent.CLOSE_ORDER))
        assert plan.to_stage is OrderStage.COMPLETED_DELIVERED
        assert plan.to_status is OrderStatus.COMPLETED


class TestCancellationAndTerminal:
    def test_admin_cancel_keeps_stage(self):
        snap = make_snapshot(OrderStage.IN_MANUFACTURING, quotations=[accepted_quotation()], purchase_orders=[purchase_order()])
        plan = validator.validate(snap, request(LifecycleEvent.CANCEL_ORDER, reason="Client withdrew"))
        assert plan.to_stage is OrderStage.IN_MANUFACTURING
        assert plan.to_status is OrderStatus.CANCELLED
        assert plan.payload["previous_status"] == "APPROVED"

    def test_client_cancel_only_before_quotation(self):
        plan = validator.validate(make_snapshot(OrderStage.UNDER_REVIEW), request(LifecycleEvent.CLIENT_CANCEL_ORDER, CLIENT))
        assert plan.to_status is OrderStatus.CANCELLED
        snap = make_snapshot(OrderStage.QUOTATION_SENT, quotations=[make_quotation()])
        with pytest.raises(PreconditionError, match="before a quotation is sent"):
            validator.validate(snap, request(LifecycleEvent.CLIENT_CANCEL_ORDER, CLIENT))

    @pytest.mark.parametrize("status", [OrderStatus.CANCELLED, OrderStatus.COMPLETED])
    @pytest.mark.parametrize("event", list(LifecycleEvent))
    def test_terminal_orders_accept_nothing(self, status, event):
        snap = make_snapshot(OrderStage.RECEIVED, status=status)
        with pytest.raises(TerminalStateError):
            validator.validate(snap, request(event, target_stage=OrderStage.UNDER_REVIEW))


class TestOverride:
    def test_override_sets_status_shadow(self):
        snap = make_snapshot(OrderStage.QUOTATION_SENT, quotations=[make_quotation()])
        plan = validator.validate(
            snap, request(LifecycleEvent.OVERRIDE_STAGE, target_stage=OrderStage.UNDER_REVIEW, reason="Re-scope")
        )
        assert plan.is_override
        assert plan.to_status is OrderStatus.PENDING
        assert plan.history_action == "stage_changed_to_under_review"

    def test_override_to_same_stage(self):
        with pytest.raises(PreconditionError, match="already at"):
            validator.validate(make_snapshot(), request(LifecycleEvent.OVERRIDE_STAGE, target_stage=OrderStage.RECEIVED))

    def test_override_cannot_undo_final_payment(self):
        snap = make_snapshot(
            OrderStage.FINAL_PAYMENT_RECEIVED,
            quotations=[accepted_quotation()],
            purchase_orders=[purchase_order()],
            delivery_notes=[delivery_note()],
            final_payment_received=True,
        )
        with pytest.raises(PreconditionError, match="final payment is recorded"):
            validator.validate(snap, request(LifecycleEvent.OVERRIDE_STAGE, target_stage=OrderStage.IN_MANUFACTURING))


class TestMonotonicPath:
    """Driving an order through the happy path never moves the stage backwards."""

    def test_happy_path_is_monotonic(self):
        steps = [
            (make_snapshot(OrderStage.RECEIVED), request(LifecycleEvent.START_REVIEW)),
            (make_snapshot(OrderStage.UNDER_REVIEW), request(LifecycleEvent.SEND_QUOTATION, file_url="/q.pdf")),
            (make_snapshot(OrderStage.QUOTATION_SENT, quotations=[make_quotation()]),
             request(LifecycleEvent.ACCEPT_QUOTATION, CLIENT, quotation_id=1)),
            (accepted_order(), request(LifecycleEvent.CREATE_PURCHASE_ORDER)),
        ]
        indices = []
        for snap, req in steps:
            plan = validator.validate(snap, req)
            assert index_of(plan.to_stage) > index_of(plan.from_stage)
            indices.append(index_of(plan.to_stage))
        assert indices == sorted(indices)
        assert max(indices) < len(STAGES)
