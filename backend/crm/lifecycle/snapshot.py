"""ATA CRM — OrderSnapshot: immutable read model of one order and its children.

Built from already-loaded rows (ORM objects or anything with the same
attributes); never touches the database. Derived flags are computed once in
``__post_init__`` and consistency problems are surfaced as
``DataConsistencyWarning`` instead of being silently resolved.
"""
import json
import logging
import warnings
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable

from crm.lifecycle.errors import DataConsistencyWarning
from crm.lifecycle.progress import progress_percent
from crm.lifecycle.stages import (
    OrderStage,
    OrderStatus,
    index_of,
    is_terminal_status,
    parse_stage,
    parse_status,
)

logger = logging.getLogger(__name__)


class QuotationDecision(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class PaymentType(str, Enum):
    DEPOSIT = "DEPOSIT"
    FINAL = "FINAL"
    PARTIAL = "PARTIAL"


def normalize_file_refs(raw: Any) -> tuple[str, ...]:
    """
    Always return an ordered tuple of file references.
    Accepts None, a list, a bare path/URL, or a JSON-encoded array of paths.
    """
    if raw is None:
        return ()
    if isinstance(raw, (list, tuple)):
        return tuple(str(ref) for ref in raw if ref)
    text = str(raw).strip()
    if not text:
        return ()
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            return (text,)
        if isinstance(parsed, list):
            return tuple(str(ref) for ref in parsed if ref)
    return (text,)


def _decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass(frozen=True)
class QuotationView:
    id: int
    total_amount: Decimal | None
    currency: str
    file_url: str | None
    decision: QuotationDecision
    deposit_required: bool = False
    deposit_percent: Decimal | None = None
    deposit_amount: Decimal | None = None
    client_comment: str | None = None
    rejection_reason: str | None = None
    created_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.decision is QuotationDecision.PENDING

    @property
    def awaits_review(self) -> bool:
        return self.is_pending and bool(self.file_url)

    @classmethod
    def from_row(cls, row: Any) -> "QuotationView":
        return cls(
            id=row.id,
            total_amount=_decimal(row.total_amount),
            currency=row.currency,
            file_url=row.file_url,
            decision=QuotationDecision(row.decision),
            deposit_required=bool(row.deposit_required),
            deposit_percent=_decimal(row.deposit_percent),
            deposit_amount=_decimal(row.deposit_amount),
            client_comment=row.client_comment,
            rejection_reason=row.rejection_reason,
            created_at=row.created_at,
        )


@dataclass(frozen=True)
class PurchaseOrderView:
    id: int
    po_number: str
    files: tuple[str, ...] = ()
    deposit_required: bool = False
    deposit_percent: Decimal | None = None
    deposit_amount: Decimal | None = None
    uploaded_by_client: bool = False
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> "PurchaseOrderView":
        return cls(
            id=row.id,
            po_number=row.po_number,
            files=normalize_file_refs(row.files),
            deposit_required=bool(row.deposit_required),
            deposit_percent=_decimal(row.deposit_percent),
            deposit_amount=_decimal(row.deposit_amount),
            uploaded_by_client=bool(row.uploaded_by_client),
            created_at=row.created_at,
        )


@dataclass(frozen=True)
class PaymentView:
    id: int
    payment_type: PaymentType
    amount: Decimal
    currency: str
    method: str | None = None
    reference: str | None = None
    paid_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> "PaymentView":
        return cls(
            id=row.id,
            payment_type=PaymentType(row.payment_type),
            amount=_decimal(row.amount),
            currency=row.currency,
            method=row.method,
            reference=row.reference,
            paid_at=row.paid_at,
        )


@dataclass(frozen=True)
class DeliveryNoteView:
    id: int
    dn_number: str
    files: tuple[str, ...] = ()
    delivered_at: datetime | None = None
    items: tuple[Any, ...] = ()
    notes: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "DeliveryNoteView":
        return cls(
            id=row.id,
            dn_number=row.dn_number,
            files=normalize_file_refs(row.files),
            delivered_at=row.delivered_at,
            items=tuple(row.items or ()),
            notes=row.notes,
        )


@dataclass(frozen=True)
class OrderSnapshot:
    """Point-in-time view of an order. Construct via ``from_order`` or directly in tests."""

    order_id: int
    company_id: int
    client_id: int | None
    stage: OrderStage
    status: OrderStatus
    public_token: str | None = None
    total_amount: Decimal | None = None
    currency: str = "AED"
    deposit_percentage: Decimal | None = None
    deposit_amount: Decimal | None = None
    deposit_paid: bool = False
    deposit_paid_at: datetime | None = None
    final_payment_received: bool = False
    final_payment_at: datetime | None = None
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None
    quotations: tuple[QuotationView, ...] = ()
    purchase_orders: tuple[PurchaseOrderView, ...] = ()
    payments: tuple[PaymentView, ...] = ()
    delivery_notes: tuple[DeliveryNoteView, ...] = ()

    has_accepted_quotation: bool = field(init=False)
    has_pending_quotation_review: bool = field(init=False)
    has_purchase_order: bool = field(init=False)
    deposit_outstanding: bool = field(init=False)
    has_delivery_note: bool = field(init=False)
    final_payment_outstanding: bool = field(init=False)
    consistency_issues: tuple[str, ...] = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "stage", parse_stage(self.stage))
        object.__setattr__(self, "status", parse_status(self.status))

        accepted = [q for q in self.quotations if q.decision is QuotationDecision.ACCEPTED]
        has_dn = bool(self.delivery_notes)
        derived = {
            "has_accepted_quotation": bool(accepted),
            "has_pending_quotation_review": any(q.awaits_review for q in self.quotations),
            "has_purchase_order": bool(self.purchase_orders),
            "deposit_outstanding": self.deposit_percentage is not None and not self.deposit_paid,
            "has_delivery_note": has_dn,
            "final_payment_outstanding": has_dn and not self.final_payment_received,
        }
        for name, value in derived.items():
            object.__setattr__(self, name, value)

        issues = self._check_consistency(len(accepted))
        object.__setattr__(self, "consistency_issues", issues)
        for issue in issues:
            logger.warning("Order %s data inconsistency: %s", self.order_id, issue)
            warnings.warn(f"order {self.order_id}: {issue}", DataConsistencyWarning, stacklevel=3)

    def _check_consistency(self, accepted_count: int) -> tuple[str, ...]:
        issues = []
        if self.has_purchase_order and not self.has_accepted_quotation:
            issues.append("purchase order exists without an accepted quotation")
        if accepted_count > 1:
            issues.append(f"{accepted_count} quotations are marked accepted")
        if self.deposit_paid and self.deposit_amount is not None:
            if self.deposit_paid_total < self.deposit_amount:
                issues.append(
                    f"deposit flagged paid but DEPOSIT payments total {self.deposit_paid_total} "
                    f"< required {self.deposit_amount}"
                )
        if self.final_payment_received and index_of(self.stage) < index_of(OrderStage.AWAITING_FINAL_PAYMENT):
            issues.append(f"final payment flagged received at stage {self.stage.value}")
        if self.has_delivery_note and not self.has_accepted_quotation:
            issues.append("delivery note exists without an accepted quotation")
        return tuple(issues)

    # ── Derived helpers ─────────────────────────────────────────────────────

    @property
    def is_terminal(self) -> bool:
        return is_terminal_status(self.status)

    @property
    def stage_index(self) -> int:
        return index_of(self.stage)

    @property
    def progress_percent(self) -> int:
        return progress_percent(self.stage)

    @property
    def accepted_quotation(self) -> QuotationView | None:
        return next((q for q in self.quotations if q.decision is QuotationDecision.ACCEPTED), None)

    @property
    def pending_review_quotation(self) -> QuotationView | None:
        """Most recent quotation still awaiting the client's decision."""
        pending = [q for q in self.quotations if q.awaits_review]
        return max(pending, key=lambda q: q.id) if pending else None

    @property
    def purchase_order(self) -> PurchaseOrderView | None:
        return self.purchase_orders[0] if self.purchase_orders else None

    @property
    def latest_delivery_note(self) -> DeliveryNoteView | None:
        return max(self.delivery_notes, key=lambda dn: dn.id) if self.delivery_notes else None

    @property
    def deposit_paid_total(self) -> Decimal:
        return sum(
            (p.amount for p in self.payments if p.payment_type is PaymentType.DEPOSIT),
            Decimal("0"),
        )

    @property
    def deposit_required(self) -> bool:
        return self.deposit_percentage is not None or self.deposit_amount is not None

    def quotation(self, quotation_id: int) -> QuotationView | None:
        return next((q for q in self.quotations if q.id == quotation_id), None)

    @classmethod
    def from_order(
        cls,
        order: Any,
        quotations: Iterable[Any] | None = None,
        purchase_orders: Iterable[Any] | None = None,
        payments: Iterable[Any] | None = None,
        delivery_notes: Iterable[Any] | None = None,
    ) -> "OrderSnapshot":
        """Assemble a snapshot from an Order row and its (already loaded) children."""
        quotations = order.quotations if quotations is None else quotations
        purchase_orders = order.purchase_orders if purchase_orders is None else purchase_orders
        payments = order.payments if payments is None else payments
        delivery_notes = order.delivery_notes if delivery_notes is None else delivery_notes
        return cls(
            order_id=order.id,
            company_id=order.company_id,
            client_id=order.client_id,
            stage=order.stage,
            status=order.status,
            public_token=order.public_token,
            total_amount=_decimal(order.total_amount),
            currency=order.currency,
            deposit_percentage=_decimal(order.deposit_percentage),
            deposit_amount=_decimal(order.deposit_amount),
            deposit_paid=bool(order.deposit_paid),
            deposit_paid_at=order.deposit_paid_at,
            final_payment_received=bool(order.final_payment_received),
            final_payment_at=order.final_payment_at,
            version=order.version,
            created_at=order.created_at,
            updated_at=order.updated_at,
            quotations=tuple(sorted((QuotationView.from_row(q) for q in quotations), key=lambda q: q.id)),
            purchase_orders=tuple(sorted((PurchaseOrderView.from_row(p) for p in purchase_orders), key=lambda p: p.id)),
            payments=tuple(sorted((PaymentView.from_row(p) for p in payments), key=lambda p: p.id)),
            delivery_notes=tuple(sorted((DeliveryNoteView.from_row(d) for d in delivery_notes), key=lambda d: d.id)),
        )
