"""ATA CRM — Stage catalog: the 15 ordered lifecycle stages and the coarse status shadow."""
from enum import Enum

from crm.lifecycle.errors import UnknownStageError


class OrderStage(str, Enum):
    RECEIVED = "RECEIVED"
    UNDER_REVIEW = "UNDER_REVIEW"
    QUOTATION_PREPARATION = "QUOTATION_PREPARATION"
    QUOTATION_SENT = "QUOTATION_SENT"
    QUOTATION_ACCEPTED = "QUOTATION_ACCEPTED"
    PO_PREPARED = "PO_PREPARED"
    AWAITING_DEPOSIT = "AWAITING_DEPOSIT"
    DEPOSIT_RECEIVED = "DEPOSIT_RECEIVED"
    IN_MANUFACTURING = "IN_MANUFACTURING"
    MANUFACTURING_COMPLETE = "MANUFACTURING_COMPLETE"
    READY_FOR_DELIVERY = "READY_FOR_DELIVERY"
    DELIVERY_NOTE_SENT = "DELIVERY_NOTE_SENT"
    AWAITING_FINAL_PAYMENT = "AWAITING_FINAL_PAYMENT"
    FINAL_PAYMENT_RECEIVED = "FINAL_PAYMENT_RECEIVED"
    COMPLETED_DELIVERED = "COMPLETED_DELIVERED"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


STAGES: tuple[OrderStage, ...] = tuple(OrderStage)
STAGE_COUNT = len(STAGES)

_INDEX: dict[OrderStage, int] = {stage: i for i, stage in enumerate(STAGES)}

_LABELS: dict[OrderStage, str] = {
    OrderStage.RECEIVED: "Order Received",
    OrderStage.UNDER_REVIEW: "Under Review",
    OrderStage.QUOTATION_PREPARATION: "Quotation Preparation",
    OrderStage.QUOTATION_SENT: "Quotation Sent",
    OrderStage.QUOTATION_ACCEPTED: "Quotation Accepted",
    OrderStage.PO_PREPARED: "PO Prepared",
    OrderStage.AWAITING_DEPOSIT: "Awaiting Deposit",
    OrderStage.DEPOSIT_RECEIVED: "Deposit Received",
    OrderStage.IN_MANUFACTURING: "In Manufacturing",
    OrderStage.MANUFACTURING_COMPLETE: "Manufacturing Complete",
    OrderStage.READY_FOR_DELIVERY: "Ready for Delivery",
    OrderStage.DELIVERY_NOTE_SENT: "Delivery Note Sent",
    OrderStage.AWAITING_FINAL_PAYMENT: "Awaiting Final Payment",
    OrderStage.FINAL_PAYMENT_RECEIVED: "Final Payment Received",
    OrderStage.COMPLETED_DELIVERED: "Completed & Delivered",
}

TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})


def parse_stage(raw: OrderStage | str) -> OrderStage:
    """Coerce a persisted value to an OrderStage, failing loudly on anything else."""
    if isinstance(raw, OrderStage):
        return raw
    try:
        return OrderStage(raw)
    except ValueError:
        raise UnknownStageError(raw) from None


def parse_status(raw: OrderStatus | str) -> OrderStatus:
    if isinstance(raw, OrderStatus):
        return raw
    try:
        return OrderStatus(raw)
    except ValueError:
        raise UnknownStageError(raw) from None


def index_of(stage: OrderStage | str) -> int:
    """Position of a stage in the catalog, 0..14."""
    return _INDEX[parse_stage(stage)]


def display_label(stage: OrderStage | str) -> str:
    return _LABELS[parse_stage(stage)]


def status_for_stage(stage: OrderStage | str) -> OrderStatus:
    """
    Coarse status a stage implies:
    PENDING up to QUOTATION_SENT, APPROVED from QUOTATION_ACCEPTED through
    FINAL_PAYMENT_RECEIVED, COMPLETED only for COMPLETED_DELIVERED.
    """
    idx = index_of(stage)
    if idx <= _INDEX[OrderStage.QUOTATION_SENT]:
        return OrderStatus.PENDING
    if idx < _INDEX[OrderStage.COMPLETED_DELIVERED]:
        return OrderStatus.APPROVED
    return OrderStatus.COMPLETED


def is_terminal_status(status: OrderStatus | str) -> bool:
    return parse_status(status) in TERMINAL_STATUSES
