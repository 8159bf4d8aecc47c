"""ATA CRM — OrderLifecycleService: transactional read-validate-apply for orders.

Every mutating operation follows the same path (``_transition``):

1. re-read the order with ``SELECT ... FOR UPDATE`` and ``populate_existing``;
2. compare ``expected_version`` when the caller supplied one;
3. build a fresh OrderSnapshot and ask TransitionValidator for a plan;
4. apply the plan's stage/status and effects, add child rows, append exactly
   one OrderHistory row;
5. flush, converting lost races (stale version, unique index) into
   ConcurrentModificationError;
6. queue the OrderEvent; it is dispatched only after the session commits.

Committing is left to the caller (the request-scoped ``get_db`` dependency).
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import AbstractSet, Any, Callable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from crm.db.base import utcnow
from crm.lifecycle.actions import ActionResolver, RequiredAction
from crm.lifecycle.actors import Actor, ActorRole
from crm.lifecycle.errors import ConcurrentModificationError, OrderNotFoundError, PreconditionError
from crm.lifecycle.events import OrderEvent, build_event
from crm.lifecycle.snapshot import OrderSnapshot, PaymentType, QuotationDecision, normalize_file_refs
from crm.lifecycle.stages import TERMINAL_STATUSES, OrderStage, OrderStatus, parse_stage, parse_status
from crm.lifecycle.transitions import (
    ACTION_ORDER_CREATED,
    Effect,
    LifecycleEvent,
    TransitionPlan,
    TransitionRequest,
    TransitionValidator,
)
from crm.models import DeliveryNote, Order, OrderHistory, Payment, PurchaseOrder, Quotation
from crm.services.notification_dispatcher import NotificationDispatcher, queue_event

logger = logging.getLogger(__name__)

_validator = TransitionValidator()

ChildBuilder = Callable[[Order, TransitionPlan], None]


@dataclass
class TransitionResult:
    order: Order
    plan: TransitionPlan
    event: OrderEvent
    snapshot: OrderSnapshot


class OrderLifecycleService:
    """All order writes go through here; reads are scoped by company or client."""

    # ── Reads ───────────────────────────────────────────────────────────────

    @staticmethod
    async def _load_order(
        db: AsyncSession,
        order_id: int,
        company_id: int | None = None,
        client_id: int | None = None,
        lock: bool = False,
    ) -> Order:
        stmt = select(Order).where(Order.id == order_id)
        if company_id is not None:
            stmt = stmt.where(Order.company_id == company_id)
        if client_id is not None:
            stmt = stmt.where(Order.client_id == client_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        order = (await db.execute(stmt)).scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(f"Order #{order_id} not found")
        return order

    @staticmethod
    async def get_order(
        db: AsyncSession, order_id: int, company_id: int | None = None, client_id: int | None = None
    ) -> Order:
        return await OrderLifecycleService._load_order(db, order_id, company_id, client_id)

    @staticmethod
    async def get_by_token(db: AsyncSession, token: str) -> Order:
        order = (await db.execute(select(Order).where(Order.public_token == token))).scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError("Order not found")
        return order

    @staticmethod
    async def get_snapshot(
        db: AsyncSession, order_id: int, company_id: int | None = None, client_id: int | None = None
    ) -> OrderSnapshot:
        order = await OrderLifecycleService._load_order(db, order_id, company_id, client_id)
        return OrderSnapshot.from_order(order)

    @staticmethod
    async def list_orders(
        db: AsyncSession,
        company_id: int,
        client_id: int | None = None,
        stage: str | None = None,
        status: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[Order], int]:
        """Newest first. ``stage``/``status`` filters are validated against the catalog."""
        filters = [Order.company_id == company_id]
        if client_id is not None:
            filters.append(Order.client_id == client_id)
        if stage:
            filters.append(Order.stage == parse_stage(stage).value)
        if status:
            filters.append(Order.status == parse_status(status).value)

        total = (await db.execute(select(func.count(Order.id)).where(*filters))).scalar_one()
        stmt = (
            select(Order)
            .where(*filters)
            .order_by(Order.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        orders = list((await db.execute(stmt)).scalars().all())
        return orders, total

    @staticmethod
    async def _open_snapshots(
        db: AsyncSession, company_id: int, client_id: int | None = None
    ) -> list[OrderSnapshot]:
        stmt = select(Order).where(
            Order.company_id == company_id,
            Order.status.not_in([s.value for s in TERMINAL_STATUSES]),
        )
        if client_id is not None:
            stmt = stmt.where(Order.client_id == client_id)
        orders = (await db.execute(stmt.order_by(Order.id))).scalars().all()
        return [OrderSnapshot.from_order(order) for order in orders]

    @staticmethod
    async def list_admin_actions(db: AsyncSession, company_id: int) -> list[RequiredAction]:
        snapshots = await OrderLifecycleService._open_snapshots(db, company_id)
        return ActionResolver.resolve_many(snapshots, ActorRole.ADMIN)

    @staticmethod
    async def list_client_actions(
        db: AsyncSession, company_id: int, client_id: int, acknowledged: AbstractSet[str] = frozenset()
    ) -> list[RequiredAction]:
        snapshots = await OrderLifecycleService._open_snapshots(db, company_id, client_id)
        return ActionResolver.resolve_many(snapshots, ActorRole.CLIENT, acknowledged)

    # ── Creation ────────────────────────────────────────────────────────────

    @staticmethod
    async def create_order(
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        company_id: int,
        client_id: int,
        title: str,
        actor: Actor,
        details: str | None = None,
    ) -> Order:
        """Client submission: a new order at RECEIVED / PENDING."""
        order = Order(
            company_id=company_id,
            client_id=client_id,
            title=title,
            details=details,
            status=OrderStatus.PENDING.value,
            stage=OrderStage.RECEIVED.value,
            total_amount=None,
            deposit_percentage=None,
            deposit_amount=None,
            deposit_paid_at=None,
            final_payment_at=None,
            quotations=[],
            purchase_orders=[],
            payments=[],
            delivery_notes=[],
            history=[
                OrderHistory(
                    action=ACTION_ORDER_CREATED,
                    actor_name=actor.name,
                    actor_id=actor.id,
                    actor_role=actor.role.value,
                    from_stage=None,
                    to_stage=OrderStage.RECEIVED.value,
                    payload={"title": title},
                )
            ],
        )
        db.add(order)
        await db.flush()
        queue_event(db, dispatcher, OrderEvent(
            order_id=order.id,
            company_id=company_id,
            client_id=client_id,
            event_type=ACTION_ORDER_CREATED,
            actor_role=actor.role,
            actor_id=actor.id,
            from_stage=None,
            to_stage=OrderStage.RECEIVED,
            payload={"title": title},
        ))
        logger.info("Order #%s created by client %s", order.id, client_id)
        return order

    # ── Shared transition path ──────────────────────────────────────────────

    @staticmethod
    async def _transition(
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        order_id: int,
        request: TransitionRequest,
        company_id: int | None = None,
        client_id: int | None = None,
        expected_version: int | None = None,
        build_children: ChildBuilder | None = None,
        history_payload: dict[str, Any] | None = None,
    ) -> TransitionResult:
        order = await OrderLifecycleService._load_order(db, order_id, company_id, client_id, lock=True)
        if expected_version is not None and expected_version != order.version:
            raise ConcurrentModificationError(
                f"Order #{order_id} was modified (version {order.version}, expected {expected_version})"
            )

        before = OrderSnapshot.from_order(order)
        plan = _validator.validate(before, request)

        _apply_plan(order, plan, request)
        if build_children is not None:
            build_children(order, plan)
        # always touch the row so the version counter serializes writers
        order.updated_at = utcnow()

        payload = dict(plan.payload)
        if history_payload:
            payload.update(history_payload)
        order.history.append(
            OrderHistory(
                action=plan.history_action,
                actor_name=plan.actor.name,
                actor_id=plan.actor.id,
                actor_role=plan.actor.role.value,
                from_stage=plan.from_stage.value,
                to_stage=plan.to_stage.value,
                payload=payload,
            )
        )

        try:
            await db.flush()
        except StaleDataError as exc:
            raise ConcurrentModificationError(
                f"Order #{order_id} was modified by another request; reload and retry"
            ) from exc
        except IntegrityError as exc:
            raise ConcurrentModificationError(
                f"Order #{order_id} conflicts with a concurrent change; reload and retry"
            ) from exc

        order_event = build_event(before, plan, extra=history_payload)
        queue_event(db, dispatcher, order_event)

        logger.info(
            "Order #%s %s: %s -> %s (%s)",
            order.id, plan.history_action, plan.from_stage.value, plan.to_stage.value, plan.actor.role.value,
        )
        return TransitionResult(
            order=order,
            plan=plan,
            event=order_event,
            snapshot=OrderSnapshot.from_order(order),
        )

    # ── Admin operations ────────────────────────────────────────────────────

    @staticmethod
    async def start_review(
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        order_id: int,
        company_id: int,
        actor: Actor,
        expected_version: int | None = None,
    ) -> TransitionResult:
        request = TransitionRequest(event=LifecycleEvent.START_REVIEW, actor=actor)
        return await OrderLifecycleService._transition(
            db, dispatcher, order_id, request, company_id=company_id, expected_version=expected_version
        )

    @staticmethod
    async def upload_quotation(
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        order_id: int,
        company_id: int,
        actor: Actor,
        total_amount: Decimal,
        file_url: str | None,
        currency: str = "AED",
        deposit_required: bool = False,
        deposit_percent: Decimal | None = None,
        deposit_amount: Decimal | None = None,
        notes: str | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        if total_amount is None or total_amount <= 0:
            raise PreconditionError("cannot send quotation: total amount must be positive")
        request = TransitionRequest(
            event=LifecycleEvent.SEND_QUOTATION,
            actor=actor,
            file_url=file_url,
            deposit_required=deposit_required,
            deposit_percent=deposit_percent,
            deposit_amount=deposit_amount,
        )

        def add_quotation(order: Order, plan: TransitionPlan) -> None:
            order.quotations.append(
                Quotation(
                    total_amount=total_amount,
                    currency=currency,
                    file_url=file_url,
                    decision=QuotationDecision.PENDING.value,
                    client_comment=None,
                    rejection_reason=None,
                    deposit_required=deposit_required,
                    deposit_percent=deposit_percent if deposit_required else None,
                    deposit_amount=deposit_amount if deposit_required else None,
                    notes=notes,
                    reviewed_at=None,
                )
            )

        return await OrderLifecycleService._transition(
            db, dispatcher, order_id, request,
            company_id=company_id,
            expected_version=expected_version,
            build_children=add_quotation,
            history_payload={"total": str(total_amount), "currency": currency},
        )

    @staticmethod
    async def create_purchase_order(
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        order_id: int,
        company_id: int,
        actor: Actor,
        po_number: str,
        files: Any = None,
        deposit_required: bool | None = None,
        deposit_percent: Decimal | None = None,
        deposit_amount: Decimal | None = None,
        notes: str | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        """Admin records the client's PO. Deposit terms default to the accepted quotation's."""
        request = TransitionRequest(
            event=LifecycleEvent.CREATE_PURCHASE_ORDER,
            actor=actor,
            deposit_required=deposit_required,
            deposit_percent=deposit_percent,
            deposit_amount=deposit_amount,
        )
        return await OrderLifecycleService._transition(
            db, dispatcher, order_id, request,
            company_id=company_id,
            expected_version=expected_version,
            build_children=_purchase_order_builder(po_number, files, notes, actor, uploaded_by_client=False),
            history_payload={"po_number": po_number},
        )

    @staticmethod
    async def record_payment(
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        order_id: int,
        company_id: int,
        actor: Actor,
        payment_type: PaymentType | str,
        amount: Decimal,
        currency: str | None = None,
        method: str | None = None,
        reference: str | None = None,
        notes: str | None = None,
        paid_at: datetime | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        """Append a payment; advance the stage only when the payment completes a gate."""
        payment_type = PaymentType(payment_type)
        request = TransitionRequest(
            event=LifecycleEvent.RECORD_PAYMENT, actor=actor, payment_type=payment_type, amount=amount
        )

        def add_payment(order: Order, plan: TransitionPlan) -> None:
            order.payments.append(
                Payment(
                    payment_type=payment_type.value,
                    amount=amount,
                    currency=currency or order.currency,
                    method=method,
                    reference=reference,
                    notes=notes,
                    paid_at=paid_at or utcnow(),
                    recorded_by=actor.id if actor.role is ActorRole.ADMIN else None,
                )
            )

        return await OrderLifecycleService._transition(
            db, dispatcher, order_id, request,
            company_id=company_id,
            expected_version=expected_version,
            build_children=add_payment,
            history_payload={"method": method, "reference": reference},
        )

    @staticmethod
    async def start_manufacturing(
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        order_id: int,
        company_id: int,
        actor: Actor,
        expected_version: int | None = None,
    ) -> TransitionResult:
        request = TransitionRequest(event=LifecycleEvent.START_MANUFACTURING, actor=actor)
        return await OrderLifecycleService._transition(
            db, dispatcher, order_id, request, company_id=company_id, expected_version=expected_version
        )

    @staticmethod
    async def complete_manufacturing(
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        order_id: int,
        company_id: int,
        actor: Actor,
        expected_version: int | None = None,
    ) -> TransitionResult:
        request = TransitionRequest(event=LifecycleEvent.COMPLETE_MANUFACTURING, actor=actor)
        return await OrderLifecycleService._transition(
            db, dispatcher, order_id, request, company_id=company_id, expected_version=expected_version
        )

    @staticmethod
    async def create_delivery_note(
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        order_id: int,
        company_id: int,
        actor: Actor,
        dn_number: str,
        files: Any = None,
        items: list[Any] | None = None,
        delivered_at: datetime | None = None,
        notes: str | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        request = TransitionRequest(event=LifecycleEvent.CREATE_DELIVERY_NOTE, actor=actor)

        def add_delivery_note(order: Order, plan: TransitionPlan) -> None:
            order.delivery_notes.append(
                DeliveryNote(
                    dn_number=dn_number,
                    files=list(normalize_file_refs(files)),
                    delivered_at=delivered_at,
                    items=list(items or []),
                    notes=notes,
                )
            )

        return await OrderLifecycleService._transition(
            db, dispatcher, order_id, request,
            company_id=company_id,
            expected_version=expected_version,
            build_children=add_delivery_note,
            history_payload={"dn_number": dn_number},
        )

    @staticmethod
    async def close_order(
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        order_id: int,
        company_id: int,
        actor: Actor,
        expected_version: int | None = None,
    ) -> TransitionResult:
        request = TransitionRequest(event=LifecycleEvent.CLOSE_ORDER, actor=actor)
        return await OrderLifecycleService._transition(
            db, dispatcher, order_id, request, company_id=company_id, expected_version=expected_version
        )

    @staticmethod
    async def cancel_order(
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        order_id: int,
        company_id: int,
        actor: Actor,
        reason: str | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        request = TransitionRequest(event=LifecycleEvent.CANCEL_ORDER, actor=actor, reason=reason)
        return await OrderLifecycleService._transition(
            db, dispatcher, order_id, request, company_id=company_id, expected_version=expected_version
        )

    @staticmethod
    async def override_stage(
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        order_id: int,
        company_id: int,
        actor: Actor,
        target_stage: OrderStage | str,
        note: str | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        """Administrative stage change outside the normal guards. Recorded as an override."""
        request = TransitionRequest(
            event=LifecycleEvent.OVERRIDE_STAGE,
            actor=actor,
            target_stage=parse_stage(target_stage),
            reason=note,
        )
        return await OrderLifecycleService._transition(
            db, dispatcher, order_id, request, company_id=company_id, expected_version=expected_version
        )

    # ── Client operations ───────────────────────────────────────────────────

    @staticmethod
    async def decide_quotation(
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        order_id: int,
        client_id: int,
        actor: Actor,
        quotation_id: int,
        accept: bool,
        comment: str | None = None,
        rejection_reason: str | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        request = TransitionRequest(
            event=LifecycleEvent.ACCEPT_QUOTATION if accept else LifecycleEvent.REJECT_QUOTATION,
            actor=actor,
            quotation_id=quotation_id,
            reason=rejection_reason,
        )

        def record_comment(order: Order, plan: TransitionPlan) -> None:
            if comment:
                _quotation(order, quotation_id).client_comment = comment

        return await OrderLifecycleService._transition(
            db, dispatcher, order_id, request,
            client_id=client_id,
            expected_version=expected_version,
            build_children=record_comment,
            history_payload={"comment": comment} if comment else None,
        )

    @staticmethod
    async def upload_client_purchase_order(
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        order_id: int,
        client_id: int,
        actor: Actor,
        po_number: str,
        files: Any = None,
        notes: str | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        """Client uploads their own PO; deposit terms come from the accepted quotation."""
        request = TransitionRequest(event=LifecycleEvent.CLIENT_UPLOAD_PURCHASE_ORDER, actor=actor)
        return await OrderLifecycleService._transition(
            db, dispatcher, order_id, request,
            client_id=client_id,
            expected_version=expected_version,
            build_children=_purchase_order_builder(po_number, files, notes, actor, uploaded_by_client=True),
            history_payload={"po_number": po_number},
        )

    @staticmethod
    async def client_cancel_order(
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        order_id: int,
        client_id: int,
        actor: Actor,
        reason: str | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        request = TransitionRequest(event=LifecycleEvent.CLIENT_CANCEL_ORDER, actor=actor, reason=reason)
        return await OrderLifecycleService._transition(
            db, dispatcher, order_id, request, client_id=client_id, expected_version=expected_version
        )


# ── Plan application ────────────────────────────────────────────────────────


def _quotation(order: Order, quotation_id: int) -> Quotation:
    for quotation in order.quotations:
        if quotation.id == quotation_id:
            return quotation
    raise PreconditionError(f"quotation #{quotation_id} not found on order #{order.id}")


def _apply_plan(order: Order, plan: TransitionPlan, request: TransitionRequest) -> None:
    now = utcnow()
    order.stage = plan.to_stage.value
    order.status = plan.to_status.value

    if Effect.MARK_QUOTATION_ACCEPTED in plan.effects:
        accepted = _quotation(order, plan.quotation_id)
        accepted.decision = QuotationDecision.ACCEPTED.value
        accepted.reviewed_at = now
        # the accepted quotation fixes the order's price
        order.total_amount = accepted.total_amount
        order.currency = accepted.currency
    if Effect.CLOSE_OTHER_QUOTATIONS in plan.effects:
        for other_id in plan.closed_quotation_ids:
            other = _quotation(order, other_id)
            other.decision = QuotationDecision.REJECTED.value
            other.rejection_reason = f"Superseded by quotation #{plan.quotation_id}"
            other.reviewed_at = now
    if Effect.MARK_QUOTATION_REJECTED in plan.effects:
        rejected = _quotation(order, plan.quotation_id)
        rejected.decision = QuotationDecision.REJECTED.value
        rejected.rejection_reason = request.reason
        rejected.reviewed_at = now
    if Effect.SET_DEPOSIT_TERMS in plan.effects:
        order.deposit_percentage = plan.deposit_percent
        order.deposit_amount = plan.deposit_amount
    if Effect.SET_DEPOSIT_PAID in plan.effects:
        order.deposit_paid = True
        order.deposit_paid_at = now
    if Effect.SET_FINAL_PAYMENT_RECEIVED in plan.effects:
        order.final_payment_received = True
        order.final_payment_at = now


def _purchase_order_builder(
    po_number: str, files: Any, notes: str | None, actor: Actor, uploaded_by_client: bool
) -> ChildBuilder:
    def add_purchase_order(order: Order, plan: TransitionPlan) -> None:
        deposit_required = Effect.SET_DEPOSIT_TERMS in plan.effects
        order.purchase_orders.append(
            PurchaseOrder(
                po_number=po_number,
                files=list(normalize_file_refs(files)),
                deposit_required=deposit_required,
                deposit_percent=plan.deposit_percent,
                deposit_amount=plan.deposit_amount,
                notes=notes,
                uploaded_by_client=uploaded_by_client,
                created_by=actor.id if actor.role is ActorRole.ADMIN else None,
            )
        )

    return add_purchase_order
