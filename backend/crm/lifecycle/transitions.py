"""ATA CRM — TransitionValidator: the single authority on legal order transitions.

``validate`` takes a fresh OrderSnapshot and a TransitionRequest and returns a
TransitionPlan describing the target stage/status and the state effects the
caller must apply. It never mutates anything. Guard failures raise
PreconditionError; requests against CANCELLED/COMPLETED orders raise
TerminalStateError.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from crm.lifecycle.actors import Actor
from crm.lifecycle.errors import PreconditionError, TerminalStateError
from crm.lifecycle.snapshot import OrderSnapshot, PaymentType
from crm.lifecycle.stages import (
    OrderStage,
    OrderStatus,
    display_label,
    index_of,
    parse_stage,
    status_for_stage,
)


class LifecycleEvent(str, Enum):
    START_REVIEW = "START_REVIEW"
    SEND_QUOTATION = "SEND_QUOTATION"
    ACCEPT_QUOTATION = "ACCEPT_QUOTATION"
    REJECT_QUOTATION = "REJECT_QUOTATION"
    CREATE_PURCHASE_ORDER = "CREATE_PURCHASE_ORDER"
    CLIENT_UPLOAD_PURCHASE_ORDER = "CLIENT_UPLOAD_PURCHASE_ORDER"
    RECORD_PAYMENT = "RECORD_PAYMENT"
    START_MANUFACTURING = "START_MANUFACTURING"
    COMPLETE_MANUFACTURING = "COMPLETE_MANUFACTURING"
    CREATE_DELIVERY_NOTE = "CREATE_DELIVERY_NOTE"
    CLOSE_ORDER = "CLOSE_ORDER"
    CANCEL_ORDER = "CANCEL_ORDER"
    CLIENT_CANCEL_ORDER = "CLIENT_CANCEL_ORDER"
    OVERRIDE_STAGE = "OVERRIDE_STAGE"


class Effect(str, Enum):
    """Order-state mutations a plan requires beyond stage/status."""

    MARK_QUOTATION_ACCEPTED = "MARK_QUOTATION_ACCEPTED"
    CLOSE_OTHER_QUOTATIONS = "CLOSE_OTHER_QUOTATIONS"
    MARK_QUOTATION_REJECTED = "MARK_QUOTATION_REJECTED"
    SET_DEPOSIT_TERMS = "SET_DEPOSIT_TERMS"
    SET_DEPOSIT_PAID = "SET_DEPOSIT_PAID"
    SET_FINAL_PAYMENT_RECEIVED = "SET_FINAL_PAYMENT_RECEIVED"


# ── History action codes ────────────────────────────────────────────────────
ACTION_ORDER_CREATED = "order_created"
ACTION_REVIEW_STARTED = "review_started"
ACTION_QUOTATION_SENT = "quotation_sent"
ACTION_QUOTATION_ACCEPTED = "quotation_accepted_by_client"
ACTION_QUOTATION_REJECTED = "quotation_rejected_by_client"
ACTION_PO_CREATED = "po_created"
ACTION_PO_UPLOADED_BY_CLIENT = "po_uploaded_by_client"
ACTION_MANUFACTURING_STARTED = "manufacturing_started"
ACTION_MANUFACTURING_COMPLETED = "manufacturing_completed"
ACTION_DELIVERY_NOTE_SENT = "delivery_note_sent"
ACTION_ORDER_CLOSED = "order_closed"
ACTION_ORDER_CANCELLED = "order_cancelled"
ACTION_ORDER_CANCELLED_BY_CLIENT = "order_cancelled_by_client"

CLIENT_CANCELLABLE_STAGES = frozenset({
    OrderStage.RECEIVED,
    OrderStage.UNDER_REVIEW,
    OrderStage.QUOTATION_PREPARATION,
})


def payment_action(payment_type: PaymentType) -> str:
    return f"payment_received_{payment_type.value.lower()}"


def stage_override_action(stage: OrderStage) -> str:
    return f"stage_changed_to_{stage.value.lower()}"


@dataclass(frozen=True)
class TransitionRequest:
    """
    A requested change. Only the arguments relevant to ``event`` are read:
    SEND_QUOTATION -> file_url, deposit_required, deposit_percent, deposit_amount;
    ACCEPT/REJECT_QUOTATION -> quotation_id;
    CREATE/CLIENT_UPLOAD_PURCHASE_ORDER -> deposit_required, deposit_percent, deposit_amount;
    RECORD_PAYMENT -> payment_type, amount; OVERRIDE_STAGE -> target_stage.
    """

    event: LifecycleEvent
    actor: Actor
    quotation_id: int | None = None
    file_url: str | None = None
    deposit_required: bool | None = None
    deposit_percent: Decimal | None = None
    deposit_amount: Decimal | None = None
    payment_type: PaymentType | None = None
    amount: Decimal | None = None
    target_stage: OrderStage | None = None
    reason: str | None = None


@dataclass(frozen=True)
class TransitionPlan:
    event: LifecycleEvent
    actor: Actor
    from_stage: OrderStage
    to_stage: OrderStage
    from_status: OrderStatus
    to_status: OrderStatus
    history_action: str
    path: tuple[OrderStage, ...] = ()
    effects: frozenset[Effect] = frozenset()
    quotation_id: int | None = None
    closed_quotation_ids: tuple[int, ...] = ()
    deposit_percent: Decimal | None = None
    deposit_amount: Decimal | None = None
    is_override: bool = False
    is_reopen: bool = False
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def changes_stage(self) -> bool:
        return self.from_stage is not self.to_stage

    @property
    def changes_status(self) -> bool:
        return self.from_status is not self.to_status


def _idx(stage: OrderStage) -> int:
    return index_of(stage)


class TransitionValidator:
    """Evaluates guards in a fixed precedence; the first failing guard is reported."""

    def validate(self, snapshot: OrderSnapshot, request: TransitionRequest) -> TransitionPlan:
        if snapshot.is_terminal:
            raise TerminalStateError(
                f"Order #{snapshot.order_id} is {snapshot.status.value}; no further changes are accepted"
            )
        handler = self._handlers[request.event]
        return handler(self, snapshot, request)

    # ── helpers ─────────────────────────────────────────────────────────────

    @staticmethod
    def _plan(
        snapshot: OrderSnapshot,
        request: TransitionRequest,
        to_stage: OrderStage,
        history_action: str,
        to_status: OrderStatus | None = None,
        **kwargs: Any,
    ) -> TransitionPlan:
        path = kwargs.pop("path", None) or ((to_stage,) if to_stage is not snapshot.stage else ())
        return TransitionPlan(
            event=request.event,
            actor=request.actor,
            from_stage=snapshot.stage,
            to_stage=to_stage,
            from_status=snapshot.status,
            to_status=to_status or snapshot.status,
            history_action=history_action,
            path=path,
            **kwargs,
        )

    @staticmethod
    def _require_stage(snapshot: OrderSnapshot, expected: OrderStage, what: str) -> None:
        if snapshot.stage is not expected:
            raise PreconditionError(
                f"cannot {what}: order is at '{display_label(snapshot.stage)}', "
                f"expected '{display_label(expected)}'"
            )

    # ── rules ───────────────────────────────────────────────────────────────

    def _start_review(self, snapshot: OrderSnapshot, request: TransitionRequest) -> TransitionPlan:
        self._require_stage(snapshot, OrderStage.RECEIVED, "start review")
        return self._plan(snapshot, request, OrderStage.UNDER_REVIEW, ACTION_REVIEW_STARTED)

    def _send_quotation(self, snapshot: OrderSnapshot, request: TransitionRequest) -> TransitionPlan:
        if _idx(snapshot.stage) >= _idx(OrderStage.QUOTATION_SENT):
            raise PreconditionError(
                f"cannot send quotation: order is already at '{display_label(snapshot.stage)}'"
            )
        if not request.file_url:
            raise PreconditionError("cannot send quotation: no quotation file attached")
        if request.deposit_required and request.deposit_percent is None and request.deposit_amount is None:
            raise PreconditionError("cannot send quotation: deposit required but no deposit terms given")
        return self._plan(
            snapshot, request, OrderStage.QUOTATION_SENT, ACTION_QUOTATION_SENT,
            payload={"file_url": request.file_url},
        )

    def _decided_quotation(self, snapshot: OrderSnapshot, request: TransitionRequest, verb: str):
        quotation = snapshot.quotation(request.quotation_id) if request.quotation_id is not None else None
        if quotation is None:
            raise PreconditionError(f"cannot {verb} quotation: quotation not found on this order")
        if not quotation.is_pending:
            raise PreconditionError(
                f"cannot {verb} quotation: it was already {quotation.decision.value.lower()}"
            )
        self._require_stage(snapshot, OrderStage.QUOTATION_SENT, f"{verb} quotation")
        return quotation

    def _accept_quotation(self, snapshot: OrderSnapshot, request: TransitionRequest) -> TransitionPlan:
        quotation = self._decided_quotation(snapshot, request, "accept")
        if snapshot.has_accepted_quotation:
            raise PreconditionError("cannot accept quotation: another quotation is already accepted")
        others = tuple(
            q.id for q in snapshot.quotations if q.is_pending and q.id != quotation.id
        )
        return self._plan(
            snapshot, request, OrderStage.QUOTATION_ACCEPTED, ACTION_QUOTATION_ACCEPTED,
            to_status=OrderStatus.APPROVED,
            effects=frozenset({Effect.MARK_QUOTATION_ACCEPTED, Effect.CLOSE_OTHER_QUOTATIONS}),
            quotation_id=quotation.id,
            closed_quotation_ids=others,
            payload={"quotation_id": quotation.id, "total": str(quotation.total_amount)},
        )

    def _reject_quotation(self, snapshot: OrderSnapshot, request: TransitionRequest) -> TransitionPlan:
        quotation = self._decided_quotation(snapshot, request, "reject")
        return self._plan(
            snapshot, request, OrderStage.QUOTATION_PREPARATION, ACTION_QUOTATION_REJECTED,
            effects=frozenset({Effect.MARK_QUOTATION_REJECTED}),
            quotation_id=quotation.id,
            is_reopen=True,
            payload={"quotation_id": quotation.id, "rejection_reason": request.reason},
        )

    def _create_purchase_order(self, snapshot: OrderSnapshot, request: TransitionRequest) -> TransitionPlan:
        if snapshot.has_purchase_order:
            raise PreconditionError("PO already exists for this order")
        if not snapshot.has_accepted_quotation:
            raise PreconditionError("cannot create Purchase Order: no accepted quotation")
        self._require_stage(snapshot, OrderStage.QUOTATION_ACCEPTED, "create Purchase Order")

        quotation = snapshot.accepted_quotation
        deposit_required = request.deposit_required
        percent, amount = request.deposit_percent, request.deposit_amount
        if deposit_required is None and (percent is not None or amount is not None):
            deposit_required = True
        elif deposit_required is None:
            # fall back to the deposit terms offered with the accepted quotation
            deposit_required = quotation.deposit_required
            percent = percent if percent is not None else quotation.deposit_percent
            amount = amount if amount is not None else quotation.deposit_amount
        if deposit_required:
            percent, amount = self._deposit_terms(snapshot, percent, amount)

        to_stage = OrderStage.AWAITING_DEPOSIT if deposit_required else OrderStage.PO_PREPARED
        client_upload = request.event is LifecycleEvent.CLIENT_UPLOAD_PURCHASE_ORDER
        return self._plan(
            snapshot, request, to_stage,
            ACTION_PO_UPLOADED_BY_CLIENT if client_upload else ACTION_PO_CREATED,
            effects=frozenset({Effect.SET_DEPOSIT_TERMS}) if deposit_required else frozenset(),
            deposit_percent=percent if deposit_required else None,
            deposit_amount=amount if deposit_required else None,
            payload={
                "deposit_required": bool(deposit_required),
                "deposit_percent": str(percent) if deposit_required and percent is not None else None,
                "deposit_amount": str(amount) if deposit_required and amount is not None else None,
            },
        )

    @staticmethod
    def _deposit_terms(
        snapshot: OrderSnapshot, percent: Decimal | None, amount: Decimal | None
    ) -> tuple[Decimal, Decimal | None]:
        """Fill in whichever of percent/amount is missing from the order total."""
        total = snapshot.total_amount
        if percent is None:
            if amount is None or not total:
                raise PreconditionError(
                    "cannot create Purchase Order: deposit required but no deposit percentage given"
                )
            percent = (amount * Decimal("100") / total).quantize(Decimal("0.01"))
        if amount is None and total is not None:
            amount = (total * percent / Decimal("100")).quantize(Decimal("0.01"))
        return percent, amount

    def _record_payment(self, snapshot: OrderSnapshot, request: TransitionRequest) -> TransitionPlan:
        payment_type = request.payment_type
        amount = request.amount
        if payment_type is None:
            raise PreconditionError("cannot record payment: payment type is required")
        if amount is None or amount <= 0:
            raise PreconditionError("cannot record payment: amount must be positive")

        action = payment_action(payment_type)
        payload = {"payment_type": payment_type.value, "amount": str(amount)}

        if payment_type is PaymentType.FINAL:
            if not snapshot.has_delivery_note:
                raise PreconditionError("cannot record final payment: no delivery note")
            if snapshot.final_payment_received or snapshot.stage is not OrderStage.AWAITING_FINAL_PAYMENT:
                return self._plan(snapshot, request, snapshot.stage, action, payload=payload)
            return self._plan(
                snapshot, request, OrderStage.FINAL_PAYMENT_RECEIVED, action,
                effects=frozenset({Effect.SET_FINAL_PAYMENT_RECEIVED}),
                payload=payload,
            )

        if not snapshot.has_purchase_order:
            raise PreconditionError(
                f"cannot record {payment_type.value.lower()} payment: no Purchase Order for this order"
            )
        if payment_type is PaymentType.DEPOSIT and not snapshot.deposit_paid \
                and snapshot.stage is OrderStage.AWAITING_DEPOSIT:
            required = snapshot.deposit_amount
            if required is None or snapshot.deposit_paid_total + amount >= required:
                return self._plan(
                    snapshot, request, OrderStage.DEPOSIT_RECEIVED, action,
                    effects=frozenset({Effect.SET_DEPOSIT_PAID}),
                    payload=payload,
                )
        # recorded only: partial payments, top-ups and repeat deposits do not move the order
        return self._plan(snapshot, request, snapshot.stage, action, payload=payload)

    def _start_manufacturing(self, snapshot: OrderSnapshot, request: TransitionRequest) -> TransitionPlan:
        if snapshot.stage is OrderStage.DEPOSIT_RECEIVED:
            pass
        elif snapshot.stage is OrderStage.PO_PREPARED:
            if snapshot.deposit_outstanding:
                raise PreconditionError("cannot start manufacturing: deposit not received")
        elif snapshot.stage is OrderStage.AWAITING_DEPOSIT:
            raise PreconditionError("cannot start manufacturing: deposit not received")
        else:
            raise PreconditionError(
                f"cannot start manufacturing: order is at '{display_label(snapshot.stage)}', "
                "expected a prepared Purchase Order or a received deposit"
            )
        return self._plan(snapshot, request, OrderStage.IN_MANUFACTURING, ACTION_MANUFACTURING_STARTED)

    def _complete_manufacturing(self, snapshot: OrderSnapshot, request: TransitionRequest) -> TransitionPlan:
        self._require_stage(snapshot, OrderStage.IN_MANUFACTURING, "complete manufacturing")
        return self._plan(
            snapshot, request, OrderStage.READY_FOR_DELIVERY, ACTION_MANUFACTURING_COMPLETED,
            path=(OrderStage.MANUFACTURING_COMPLETE, OrderStage.READY_FOR_DELIVERY),
        )

    def _create_delivery_note(self, snapshot: OrderSnapshot, request: TransitionRequest) -> TransitionPlan:
        if not snapshot.has_accepted_quotation:
            raise PreconditionError("cannot create delivery note: no accepted quotation")
        if snapshot.deposit_outstanding:
            raise PreconditionError("cannot create delivery note: deposit not received")
        self._require_stage(snapshot, OrderStage.READY_FOR_DELIVERY, "create delivery note")
        return self._plan(
            snapshot, request, OrderStage.AWAITING_FINAL_PAYMENT, ACTION_DELIVERY_NOTE_SENT,
            path=(OrderStage.DELIVERY_NOTE_SENT, OrderStage.AWAITING_FINAL_PAYMENT),
        )

    def _close_order(self, snapshot: OrderSnapshot, request: TransitionRequest) -> TransitionPlan:
        if not snapshot.final_payment_received:
            raise PreconditionError("cannot close order: final payment not received")
        self._require_stage(snapshot, OrderStage.FINAL_PAYMENT_RECEIVED, "close order")
        return self._plan(
            snapshot, request, OrderStage.COMPLETED_DELIVERED, ACTION_ORDER_CLOSED,
            to_status=OrderStatus.COMPLETED,
        )

    def _cancel_order(self, snapshot: OrderSnapshot, request: TransitionRequest) -> TransitionPlan:
        return self._plan(
            snapshot, request, snapshot.stage, ACTION_ORDER_CANCELLED,
            to_status=OrderStatus.CANCELLED,
            payload={"reason": request.reason, "previous_status": snapshot.status.value},
        )

    def _client_cancel_order(self, snapshot: OrderSnapshot, request: TransitionRequest) -> TransitionPlan:
        if snapshot.stage not in CLIENT_CANCELLABLE_STAGES:
            raise PreconditionError(
                "cannot cancel order: cancellation is only allowed before a quotation is sent"
            )
        return self._plan(
            snapshot, request, snapshot.stage, ACTION_ORDER_CANCELLED_BY_CLIENT,
            to_status=OrderStatus.CANCELLED,
            payload={"reason": request.reason, "previous_status": snapshot.status.value},
        )

    def _override_stage(self, snapshot: OrderSnapshot, request: TransitionRequest) -> TransitionPlan:
        if request.target_stage is None:
            raise PreconditionError("cannot override stage: no target stage given")
        target = parse_stage(request.target_stage)
        if target is snapshot.stage:
            raise PreconditionError(f"order is already at '{display_label(target)}'")
        if snapshot.final_payment_received and _idx(target) < _idx(OrderStage.AWAITING_FINAL_PAYMENT):
            raise PreconditionError(
                "cannot override stage: final payment is recorded, stage must stay at or beyond "
                f"'{display_label(OrderStage.AWAITING_FINAL_PAYMENT)}'"
            )
        return self._plan(
            snapshot, request, target, stage_override_action(target),
            to_status=status_for_stage(target),
            is_override=True,
            payload={"previous_stage": snapshot.stage.value, "new_stage": target.value, "note": request.reason},
        )

    _handlers = {
        LifecycleEvent.START_REVIEW: _start_review,
        LifecycleEvent.SEND_QUOTATION: _send_quotation,
        LifecycleEvent.ACCEPT_QUOTATION: _accept_quotation,
        LifecycleEvent.REJECT_QUOTATION: _reject_quotation,
        LifecycleEvent.CREATE_PURCHASE_ORDER: _create_purchase_order,
        LifecycleEvent.CLIENT_UPLOAD_PURCHASE_ORDER: _create_purchase_order,
        LifecycleEvent.RECORD_PAYMENT: _record_payment,
        LifecycleEvent.START_MANUFACTURING: _start_manufacturing,
        LifecycleEvent.COMPLETE_MANUFACTURING: _complete_manufacturing,
        LifecycleEvent.CREATE_DELIVERY_NOTE: _create_delivery_note,
        LifecycleEvent.CLOSE_ORDER: _close_order,
        LifecycleEvent.CANCEL_ORDER: _cancel_order,
        LifecycleEvent.CLIENT_CANCEL_ORDER: _client_cancel_order,
        LifecycleEvent.OVERRIDE_STAGE: _override_stage,
    }
