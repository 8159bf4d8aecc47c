"""ATA CRM — ActionResolver: outstanding actions per actor, derived from a snapshot.

Resolution is a pure function of (snapshot, role, acknowledged keys). Admin
actions ignore acknowledgements; client actions are suppressed when their key
is in the acknowledged set. Client keys carry the id of the quotation, purchase
order or delivery note they refer to, so acknowledging one quotation's review
never hides the review of a later one.
"""
from dataclasses import dataclass
from enum import Enum
from typing import AbstractSet, Iterable

from crm.lifecycle.actors import ActorRole
from crm.lifecycle.snapshot import OrderSnapshot
from crm.lifecycle.stages import OrderStage, OrderStatus


class ActionType(str, Enum):
    # admin
    NEW_ORDER_REVIEW = "NEW_ORDER_REVIEW"
    NEEDS_PO = "NEEDS_PO"
    DEPOSIT_STAGE_UPDATE = "DEPOSIT_STAGE_UPDATE"
    CLOSE_ORDER = "CLOSE_ORDER"
    # client
    QUOTATION_REVIEW = "QUOTATION_REVIEW"
    DEPOSIT_PAYMENT_DUE = "DEPOSIT_PAYMENT_DUE"
    FINAL_PAYMENT_DUE = "FINAL_PAYMENT_DUE"


ADMIN_ACTION_TYPES = (
    ActionType.NEW_ORDER_REVIEW,
    ActionType.NEEDS_PO,
    ActionType.DEPOSIT_STAGE_UPDATE,
    ActionType.CLOSE_ORDER,
)
CLIENT_ACTION_TYPES = (
    ActionType.QUOTATION_REVIEW,
    ActionType.DEPOSIT_PAYMENT_DUE,
    ActionType.FINAL_PAYMENT_DUE,
)

ACTION_LABELS = {
    ActionType.NEW_ORDER_REVIEW: "New order awaiting review",
    ActionType.NEEDS_PO: "Quotation accepted, Purchase Order needed",
    ActionType.DEPOSIT_STAGE_UPDATE: "Deposit paid, stage not advanced",
    ActionType.CLOSE_ORDER: "Final payment received, close the order",
    ActionType.QUOTATION_REVIEW: "Review your quotation",
    ActionType.DEPOSIT_PAYMENT_DUE: "Deposit payment due",
    ActionType.FINAL_PAYMENT_DUE: "Final payment due",
}


def action_key(order_id: int, action_type: ActionType, subject_id: int | None = None) -> str:
    """``{order_id}_{action_type}`` or, for per-instance actions, ``{order_id}_{action_type}_{subject_id}``."""
    key = f"{order_id}_{action_type.value}"
    return key if subject_id is None else f"{key}_{subject_id}"


@dataclass(frozen=True)
class RequiredAction:
    order_id: int
    action_type: ActionType
    role: ActorRole
    key: str
    subject_id: int | None = None

    @property
    def label(self) -> str:
        return ACTION_LABELS[self.action_type]


class ActionResolver:
    """Stateless; safe to share."""

    @staticmethod
    def resolve(
        snapshot: OrderSnapshot,
        role: ActorRole,
        acknowledged: AbstractSet[str] = frozenset(),
    ) -> list[RequiredAction]:
        if snapshot.status is OrderStatus.CANCELLED:
            return []
        if role is ActorRole.ADMIN:
            return ActionResolver._admin_actions(snapshot)
        if role is ActorRole.CLIENT:
            return [
                action for action in ActionResolver._client_actions(snapshot)
                if action.key not in acknowledged
            ]
        return []

    @staticmethod
    def resolve_many(
        snapshots: Iterable[OrderSnapshot],
        role: ActorRole,
        acknowledged: AbstractSet[str] = frozenset(),
    ) -> list[RequiredAction]:
        """Actions across many orders, ordered by order id then priority."""
        actions: list[RequiredAction] = []
        for snapshot in sorted(snapshots, key=lambda s: s.order_id):
            actions.extend(ActionResolver.resolve(snapshot, role, acknowledged))
        return actions

    @staticmethod
    def _admin_actions(snapshot: OrderSnapshot) -> list[RequiredAction]:
        found = []
        if snapshot.status is OrderStatus.PENDING and snapshot.stage is OrderStage.RECEIVED:
            found.append(ActionType.NEW_ORDER_REVIEW)
        if snapshot.has_accepted_quotation and not snapshot.has_purchase_order:
            found.append(ActionType.NEEDS_PO)
        if snapshot.deposit_paid and snapshot.stage is OrderStage.AWAITING_DEPOSIT:
            found.append(ActionType.DEPOSIT_STAGE_UPDATE)
        if snapshot.final_payment_received and snapshot.status is not OrderStatus.COMPLETED:
            found.append(ActionType.CLOSE_ORDER)
        return [
            RequiredAction(
                order_id=snapshot.order_id,
                action_type=action_type,
                role=ActorRole.ADMIN,
                key=action_key(snapshot.order_id, action_type),
            )
            for action_type in found
        ]

    @staticmethod
    def _client_actions(snapshot: OrderSnapshot) -> list[RequiredAction]:
        found: list[tuple[ActionType, int | None]] = []
        if snapshot.has_pending_quotation_review:
            found.append((ActionType.QUOTATION_REVIEW, snapshot.pending_review_quotation.id))
        if snapshot.deposit_outstanding:
            po = snapshot.purchase_order
            found.append((ActionType.DEPOSIT_PAYMENT_DUE, po.id if po else None))
        if snapshot.final_payment_outstanding:
            found.append((ActionType.FINAL_PAYMENT_DUE, snapshot.latest_delivery_note.id))
        return [
            RequiredAction(
                order_id=snapshot.order_id,
                action_type=action_type,
                role=ActorRole.CLIENT,
                key=action_key(snapshot.order_id, action_type, subject_id),
                subject_id=subject_id,
            )
            for action_type, subject_id in found
        ]
