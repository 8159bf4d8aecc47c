"""ATA CRM — Order lifecycle schemas (requests and responses)."""
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from crm.config import get_settings
from crm.lifecycle.actions import RequiredAction
from crm.lifecycle.snapshot import (
    DeliveryNoteView,
    OrderSnapshot,
    PaymentType,
    PaymentView,
    PurchaseOrderView,
    QuotationView,
    normalize_file_refs,
)
from crm.lifecycle.stages import STAGES, display_label


def _file_list(value: Any) -> list[str]:
    return list(normalize_file_refs(value))


# --- Requests ---

class VersionedRequest(BaseModel):
    """Optional optimistic-lock token: the ``version`` the caller last saw."""

    expected_version: int | None = Field(default=None, ge=1)


class OrderCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    details: str | None = None


class QuotationCreate(VersionedRequest):
    total_amount: Decimal = Field(..., gt=0)
    currency: str = Field(default="AED", min_length=3, max_length=3)
    file_url: str = Field(..., min_length=1, max_length=500)
    deposit_required: bool = False
    deposit_percent: Decimal | None = Field(default=None, gt=0, le=100)
    deposit_amount: Decimal | None = Field(default=None, gt=0)
    notes: str | None = None

    @model_validator(mode="after")
    def _deposit_needs_terms(self):
        if self.deposit_required and self.deposit_percent is None and self.deposit_amount is None:
            raise ValueError("deposit_percent or deposit_amount is required when a deposit is required")
        return self


class QuotationDecisionRequest(VersionedRequest):
    accept: bool
    comment: str | None = None
    rejection_reason: str | None = None


class PurchaseOrderCreate(VersionedRequest):
    po_number: str = Field(..., min_length=1, max_length=100)
    files: list[str] = []
    deposit_required: bool | None = None
    deposit_percent: Decimal | None = Field(default=None, gt=0, le=100)
    deposit_amount: Decimal | None = Field(default=None, gt=0)
    notes: str | None = None

    @field_validator("files", mode="before")
    @classmethod
    def _normalize_files(cls, value: Any) -> list[str]:
        return _file_list(value)


class ClientPurchaseOrderUpload(VersionedRequest):
    po_number: str = Field(..., min_length=1, max_length=100)
    files: list[str] = Field(..., min_length=1)
    notes: str | None = None

    @field_validator("files", mode="before")
    @classmethod
    def _normalize_files(cls, value: Any) -> list[str]:
        return _file_list(value)


class PaymentCreate(VersionedRequest):
    payment_type: PaymentType
    amount: Decimal = Field(..., gt=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    method: str | None = Field(default=None, max_length=50)
    reference: str | None = Field(default=None, max_length=255)
    notes: str | None = None
    paid_at: datetime | None = None


class DeliveryNoteCreate(VersionedRequest):
    dn_number: str = Field(..., min_length=1, max_length=100)
    files: list[str] = []
    items: list[dict[str, Any]] = []
    delivered_at: datetime | None = None
    notes: str | None = None

    @field_validator("files", mode="before")
    @classmethod
    def _normalize_files(cls, value: Any) -> list[str]:
        return _file_list(value)


class CancelRequest(VersionedRequest):
    reason: str | None = None


class StageOverrideRequest(VersionedRequest):
    stage: str = Field(..., min_length=1)
    note: str | None = None


# --- Responses ---

class QuotationResponse(BaseModel):
    id: int
    total_amount: Decimal | None
    currency: str
    file_url: str | None
    decision: str
    deposit_required: bool
    deposit_percent: Decimal | None
    deposit_amount: Decimal | None
    client_comment: str | None
    rejection_reason: str | None
    created_at: datetime | None

    class Config:
        from_attributes = True


class PurchaseOrderResponse(BaseModel):
    id: int
    po_number: str
    files: list[str]
    deposit_required: bool
    deposit_percent: Decimal | None
    deposit_amount: Decimal | None
    uploaded_by_client: bool
    created_at: datetime | None

    class Config:
        from_attributes = True


class PaymentResponse(BaseModel):
    id: int
    payment_type: str
    amount: Decimal
    currency: str
    method: str | None
    reference: str | None
    paid_at: datetime | None

    class Config:
        from_attributes = True


class DeliveryNoteResponse(BaseModel):
    id: int
    dn_number: str
    files: list[str]
    delivered_at: datetime | None
    items: list[Any]
    notes: str | None

    class Config:
        from_attributes = True


class HistoryResponse(BaseModel):
    id: int
    action: str
    actor_name: str
    actor_role: str
    from_stage: str | None
    to_stage: str | None
    payload: dict[str, Any] | None
    created_at: datetime | None

    class Config:
        from_attributes = True


class RequiredActionResponse(BaseModel):
    order_id: int
    action_type: str
    role: str
    key: str
    subject_id: int | None
    label: str


class StageStep(BaseModel):
    stage: str
    label: str
    index: int
    reached: bool
    current: bool


class OrderSummary(BaseModel):
    id: int
    title: str
    client_id: int | None
    status: str
    stage: str
    stage_label: str
    progress_percent: int
    total_amount: Decimal | None
    currency: str
    deposit_percentage: Decimal | None
    deposit_amount: Decimal | None
    deposit_paid: bool
    final_payment_received: bool
    version: int
    created_at: datetime | None
    updated_at: datetime | None


class OrderDetail(OrderSummary):
    details: str | None = None
    public_token: str | None = None
    tracking_url: str | None = None
    quotations: list[QuotationResponse] = []
    purchase_order: PurchaseOrderResponse | None = None
    payments: list[PaymentResponse] = []
    delivery_notes: list[DeliveryNoteResponse] = []
    actions: list[RequiredActionResponse] = []
    consistency_issues: list[str] = []


class TrackingView(BaseModel):
    """Client-facing projection behind the public tracking link."""

    order_id: int
    title: str
    status: str
    stage: str
    stage_label: str
    progress_percent: int
    currency: str
    total_amount: Decimal | None
    deposit_amount: Decimal | None
    deposit_paid: bool
    final_payment_received: bool
    stages: list[StageStep]
    quotations: list[QuotationResponse]
    purchase_order: PurchaseOrderResponse | None
    delivery_notes: list[DeliveryNoteResponse]
    history: list[HistoryResponse]
    actions: list[RequiredActionResponse]


# --- Builders (snapshot -> response) ---

def quotation_response(q: QuotationView) -> QuotationResponse:
    return QuotationResponse(
        id=q.id,
        total_amount=q.total_amount,
        currency=q.currency,
        file_url=q.file_url,
        decision=q.decision.value,
        deposit_required=q.deposit_required,
        deposit_percent=q.deposit_percent,
        deposit_amount=q.deposit_amount,
        client_comment=q.client_comment,
        rejection_reason=q.rejection_reason,
        created_at=q.created_at,
    )


def purchase_order_response(po: PurchaseOrderView | None) -> PurchaseOrderResponse | None:
    if po is None:
        return None
    return PurchaseOrderResponse(
        id=po.id,
        po_number=po.po_number,
        files=list(po.files),
        deposit_required=po.deposit_required,
        deposit_percent=po.deposit_percent,
        deposit_amount=po.deposit_amount,
        uploaded_by_client=po.uploaded_by_client,
        created_at=po.created_at,
    )


def payment_response(p: PaymentView) -> PaymentResponse:
    return PaymentResponse(
        id=p.id,
        payment_type=p.payment_type.value,
        amount=p.amount,
        currency=p.currency,
        method=p.method,
        reference=p.reference,
        paid_at=p.paid_at,
    )


def delivery_note_response(dn: DeliveryNoteView) -> DeliveryNoteResponse:
    return DeliveryNoteResponse(
        id=dn.id,
        dn_number=dn.dn_number,
        files=list(dn.files),
        delivered_at=dn.delivered_at,
        items=list(dn.items),
        notes=dn.notes,
    )


def action_response(action: RequiredAction) -> RequiredActionResponse:
    return RequiredActionResponse(
        order_id=action.order_id,
        action_type=action.action_type.value,
        role=action.role.value,
        key=action.key,
        subject_id=action.subject_id,
        label=action.label,
    )


def stage_steps(snapshot: OrderSnapshot) -> list[StageStep]:
    current = snapshot.stage_index
    return [
        StageStep(stage=stage.value, label=display_label(stage), index=i, reached=i <= current, current=i == current)
        for i, stage in enumerate(STAGES)
    ]


def tracking_url(token: str | None) -> str | None:
    """Client-facing link to the public tracking page."""
    if not token:
        return None
    return f"{get_settings().PUBLIC_BASE_URL.rstrip('/')}/track/{token}"


def order_summary(order: Any, snapshot: OrderSnapshot) -> OrderSummary:
    return OrderSummary(**_summary_fields(order, snapshot))


def order_detail(
    order: Any, snapshot: OrderSnapshot, actions: list[RequiredAction], internal: bool = True
) -> OrderDetail:
    """``internal=False`` hides the data-consistency findings from portal users."""
    return OrderDetail(
        **_summary_fields(order, snapshot),
        details=order.details,
        public_token=snapshot.public_token,
        tracking_url=tracking_url(snapshot.public_token),
        quotations=[quotation_response(q) for q in snapshot.quotations],
        purchase_order=purchase_order_response(snapshot.purchase_order),
        payments=[payment_response(p) for p in snapshot.payments],
        delivery_notes=[delivery_note_response(dn) for dn in snapshot.delivery_notes],
        actions=[action_response(a) for a in actions],
        consistency_issues=list(snapshot.consistency_issues) if internal else [],
    )


def _summary_fields(order: Any, snapshot: OrderSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.order_id,
        "title": order.title,
        "client_id": snapshot.client_id,
        "status": snapshot.status.value,
        "stage": snapshot.stage.value,
        "stage_label": display_label(snapshot.stage),
        "progress_percent": snapshot.progress_percent,
        "total_amount": snapshot.total_amount,
        "currency": snapshot.currency,
        "deposit_percentage": snapshot.deposit_percentage,
        "deposit_amount": snapshot.deposit_amount,
        "deposit_paid": snapshot.deposit_paid,
        "final_payment_received": snapshot.final_payment_received,
        "version": snapshot.version,
        "created_at": snapshot.created_at,
        "updated_at": snapshot.updated_at,
    }
