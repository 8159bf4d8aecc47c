"""ATA CRM — Admin order lifecycle endpoints."""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from crm.api.deps import (
    CurrentUser, get_db, get_dispatcher, require_permission,
    PERM_ORDERS_MANAGE, PERM_ORDERS_OVERRIDE, PERM_ORDERS_READ, PERM_PAYMENTS_RECORD,
)
from crm.lifecycle.actions import ActionResolver
from crm.lifecycle.actors import ActorRole
from crm.lifecycle.snapshot import OrderSnapshot
from crm.schemas.common import ApiResponse, Meta
from crm.schemas.order import (
    CancelRequest,
    DeliveryNoteCreate,
    HistoryResponse,
    OrderDetail,
    OrderSummary,
    PaymentCreate,
    PurchaseOrderCreate,
    QuotationCreate,
    RequiredActionResponse,
    StageOverrideRequest,
    VersionedRequest,
    action_response,
    order_detail,
    order_summary,
)
from crm.services.notification_dispatcher import NotificationDispatcher
from crm.services.order_service import OrderLifecycleService, TransitionResult

router = APIRouter()


def _admin_detail(order, snapshot: OrderSnapshot) -> OrderDetail:
    return order_detail(order, snapshot, ActionResolver.resolve(snapshot, ActorRole.ADMIN))


def _result_response(result: TransitionResult) -> ApiResponse[OrderDetail]:
    return ApiResponse(data=_admin_detail(result.order, result.snapshot))


def _version(body: VersionedRequest | None) -> int | None:
    return body.expected_version if body else None


@router.get("", response_model=ApiResponse[list[OrderSummary]])
async def list_orders(
    stage: str | None = Query(None),
    status_filter: str | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    user: CurrentUser = Depends(require_permission(PERM_ORDERS_READ)),
    db: AsyncSession = Depends(get_db),
):
    """List orders for the current company, newest first."""
    orders, total = await OrderLifecycleService.list_orders(
        db, user.company_id, stage=stage, status=status_filter, page=page, page_size=page_size
    )
    return ApiResponse(
        data=[order_summary(order, OrderSnapshot.from_order(order)) for order in orders],
        meta=Meta(page=page, page_size=page_size, total_count=total),
    )


@router.get("/actions", response_model=ApiResponse[list[RequiredActionResponse]])
async def list_admin_actions(
    user: CurrentUser = Depends(require_permission(PERM_ORDERS_READ)),
    db: AsyncSession = Depends(get_db),
):
    """Dashboard: every open admin action across the company's orders."""
    actions = await OrderLifecycleService.list_admin_actions(db, user.company_id)
    return ApiResponse(data=[action_response(a) for a in actions])


@router.get("/{order_id}", response_model=ApiResponse[OrderDetail])
async def get_order(
    order_id: int,
    user: CurrentUser = Depends(require_permission(PERM_ORDERS_READ)),
    db: AsyncSession = Depends(get_db),
):
    order = await OrderLifecycleService.get_order(db, order_id, company_id=user.company_id)
    return ApiResponse(data=_admin_detail(order, OrderSnapshot.from_order(order)))


@router.get("/{order_id}/history", response_model=ApiResponse[list[HistoryResponse]])
async def get_order_history(
    order_id: int,
    user: CurrentUser = Depends(require_permission(PERM_ORDERS_READ)),
    db: AsyncSession = Depends(get_db),
):
    order = await OrderLifecycleService.get_order(db, order_id, company_id=user.company_id)
    return ApiResponse(data=[HistoryResponse.model_validate(row) for row in order.history])


@router.post("/{order_id}/review", response_model=ApiResponse[OrderDetail])
async def start_review(
    order_id: int,
    body: VersionedRequest | None = None,
    user: CurrentUser = Depends(require_permission(PERM_ORDERS_MANAGE)),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """RECEIVED → UNDER_REVIEW."""
    result = await OrderLifecycleService.start_review(
        db, dispatcher, order_id, user.company_id, user.actor, expected_version=_version(body)
    )
    await db.commit()
    return _result_response(result)


@router.post("/{order_id}/quotations", response_model=ApiResponse[OrderDetail], status_code=status.HTTP_201_CREATED)
async def upload_quotation(
    order_id: int,
    body: QuotationCreate,
    user: CurrentUser = Depends(require_permission(PERM_ORDERS_MANAGE)),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Attach a quotation file and send it to the client (→ QUOTATION_SENT)."""
    result = await OrderLifecycleService.upload_quotation(
        db, dispatcher, order_id, user.company_id, user.actor,
        total_amount=body.total_amount,
        file_url=body.file_url,
        currency=body.currency,
        deposit_required=body.deposit_required,
        deposit_percent=body.deposit_percent,
        deposit_amount=body.deposit_amount,
        notes=body.notes,
        expected_version=body.expected_version,
    )
    await db.commit()
    return _result_response(result)


@router.post("/{order_id}/purchase-order", response_model=ApiResponse[OrderDetail], status_code=status.HTTP_201_CREATED)
async def create_purchase_order(
    order_id: int,
    body: PurchaseOrderCreate,
    user: CurrentUser = Depends(require_permission(PERM_ORDERS_MANAGE)),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """
    Record the client's Purchase Order. Requires an accepted quotation.
    With a deposit the order moves to AWAITING_DEPOSIT, otherwise PO_PREPARED.
    """
    result = await OrderLifecycleService.create_purchase_order(
        db, dispatcher, order_id, user.company_id, user.actor,
        po_number=body.po_number,
        files=body.files,
        deposit_required=body.deposit_required,
        deposit_percent=body.deposit_percent,
        deposit_amount=body.deposit_amount,
        notes=body.notes,
        expected_version=body.expected_version,
    )
    await db.commit()
    return _result_response(result)


@router.post("/{order_id}/payments", response_model=ApiResponse[OrderDetail], status_code=status.HTTP_201_CREATED)
async def record_payment(
    order_id: int,
    body: PaymentCreate,
    user: CurrentUser = Depends(require_permission(PERM_PAYMENTS_RECORD)),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Append a DEPOSIT, FINAL or PARTIAL payment. The stage moves only when a gate is met."""
    result = await OrderLifecycleService.record_payment(
        db, dispatcher, order_id, user.company_id, user.actor,
        payment_type=body.payment_type,
        amount=body.amount,
        currency=body.currency,
        method=body.method,
        reference=body.reference,
        notes=body.notes,
        paid_at=body.paid_at,
        expected_version=body.expected_version,
    )
    await db.commit()
    return _result_response(result)


@router.post("/{order_id}/manufacturing/start", response_model=ApiResponse[OrderDetail])
async def start_manufacturing(
    order_id: int,
    body: VersionedRequest | None = None,
    user: CurrentUser = Depends(require_permission(PERM_ORDERS_MANAGE)),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    result = await OrderLifecycleService.start_manufacturing(
        db, dispatcher, order_id, user.company_id, user.actor, expected_version=_version(body)
    )
    await db.commit()
    return _result_response(result)


@router.post("/{order_id}/manufacturing/complete", response_model=ApiResponse[OrderDetail])
async def complete_manufacturing(
    order_id: int,
    body: VersionedRequest | None = None,
    user: CurrentUser = Depends(require_permission(PERM_ORDERS_MANAGE)),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """IN_MANUFACTURING → MANUFACTURING_COMPLETE → READY_FOR_DELIVERY."""
    result = await OrderLifecycleService.complete_manufacturing(
        db, dispatcher, order_id, user.company_id, user.actor, expected_version=_version(body)
    )
    await db.commit()
    return _result_response(result)


@router.post("/{order_id}/delivery-note", response_model=ApiResponse[OrderDetail], status_code=status.HTTP_201_CREATED)
async def create_delivery_note(
    order_id: int,
    body: DeliveryNoteCreate,
    user: CurrentUser = Depends(require_permission(PERM_ORDERS_MANAGE)),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    result = await OrderLifecycleService.create_delivery_note(
        db, dispatcher, order_id, user.company_id, user.actor,
        dn_number=body.dn_number,
        files=body.files,
        items=body.items,
        delivered_at=body.delivered_at,
        notes=body.notes,
        expected_version=body.expected_version,
    )
    await db.commit()
    return _result_response(result)


@router.post("/{order_id}/close", response_model=ApiResponse[OrderDetail])
async def close_order(
    order_id: int,
    body: VersionedRequest | None = None,
    user: CurrentUser = Depends(require_permission(PERM_ORDERS_MANAGE)),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    result = await OrderLifecycleService.close_order(
        db, dispatcher, order_id, user.company_id, user.actor, expected_version=_version(body)
    )
    await db.commit()
    return _result_response(result)


@router.post("/{order_id}/cancel", response_model=ApiResponse[OrderDetail])
async def cancel_order(
    order_id: int,
    body: CancelRequest | None = None,
    user: CurrentUser = Depends(require_permission(PERM_ORDERS_MANAGE)),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    result = await OrderLifecycleService.cancel_order(
        db, dispatcher, order_id, user.company_id, user.actor,
        reason=body.reason if body else None,
        expected_version=_version(body),
    )
    await db.commit()
    return _result_response(result)


@router.patch("/{order_id}/stage", response_model=ApiResponse[OrderDetail])
async def override_stage(
    order_id: int,
    body: StageOverrideRequest,
    user: CurrentUser = Depends(require_permission(PERM_ORDERS_OVERRIDE)),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Administrative stage override. Unknown stage names are rejected with 422."""
    result = await OrderLifecycleService.override_stage(
        db, dispatcher, order_id, user.company_id, user.actor,
        target_stage=body.stage,
        note=body.note,
        expected_version=body.expected_version,
    )
    await db.commit()
    return _result_response(result)
