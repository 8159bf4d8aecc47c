"""ATA CRM — Client portal endpoints: a client's own orders and actions."""
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from crm.api.deps import CurrentUser, get_acknowledgement_store, get_db, get_dispatcher, require_client
from crm.lifecycle.actions import ActionResolver
from crm.lifecycle.actors import ActorRole
from crm.lifecycle.snapshot import OrderSnapshot
from crm.schemas.common import ApiResponse, Meta
from crm.schemas.order import (
    CancelRequest,
    ClientPurchaseOrderUpload,
    OrderCreate,
    OrderDetail,
    OrderSummary,
    QuotationDecisionRequest,
    RequiredActionResponse,
    action_response,
    order_detail,
    order_summary,
)
from crm.services.acknowledgement_service import AcknowledgementStore, order_id_from_key
from crm.services.notification_dispatcher import NotificationDispatcher
from crm.services.order_service import OrderLifecycleService, TransitionResult

router = APIRouter()


async def _client_detail(order, snapshot: OrderSnapshot, user: CurrentUser, store: AcknowledgementStore) -> OrderDetail:
    acknowledged = await store.acknowledged(user.id)
    actions = ActionResolver.resolve(snapshot, ActorRole.CLIENT, acknowledged)
    return order_detail(order, snapshot, actions, internal=False)


async def _result_response(result: TransitionResult, user: CurrentUser, store: AcknowledgementStore):
    return ApiResponse(data=await _client_detail(result.order, result.snapshot, user, store))


@router.post("/orders", response_model=ApiResponse[OrderDetail], status_code=status.HTTP_201_CREATED)
async def create_order(
    body: OrderCreate,
    user: CurrentUser = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    store: AcknowledgementStore = Depends(get_acknowledgement_store),
):
    """Submit a new order request (RECEIVED / PENDING)."""
    order = await OrderLifecycleService.create_order(
        db, dispatcher, user.company_id, user.client_id, body.title, user.actor, details=body.details
    )
    await db.commit()
    return ApiResponse(data=await _client_detail(order, OrderSnapshot.from_order(order), user, store))


@router.get("/orders", response_model=ApiResponse[list[OrderSummary]])
async def list_my_orders(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    user: CurrentUser = Depends(require_client),
    db: AsyncSession = Depends(get_db),
):
    orders, total = await OrderLifecycleService.list_orders(
        db, user.company_id, client_id=user.client_id, page=page, page_size=page_size
    )
    return ApiResponse(
        data=[order_summary(order, OrderSnapshot.from_order(order)) for order in orders],
        meta=Meta(page=page, page_size=page_size, total_count=total),
    )


@router.get("/orders/{order_id}", response_model=ApiResponse[OrderDetail])
async def get_my_order(
    order_id: int,
    user: CurrentUser = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    store: AcknowledgementStore = Depends(get_acknowledgement_store),
):
    order = await OrderLifecycleService.get_order(db, order_id, company_id=user.company_id, client_id=user.client_id)
    return ApiResponse(data=await _client_detail(order, OrderSnapshot.from_order(order), user, store))


@router.post("/orders/{order_id}/quotations/{quotation_id}/decision", response_model=ApiResponse[OrderDetail])
async def decide_quotation(
    order_id: int,
    quotation_id: int,
    body: QuotationDecisionRequest,
    user: CurrentUser = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    store: AcknowledgementStore = Depends(get_acknowledgement_store),
):
    """Accept or reject a quotation. Rejection reopens the order for a revised quotation."""
    result = await OrderLifecycleService.decide_quotation(
        db, dispatcher, order_id, user.client_id, user.actor,
        quotation_id=quotation_id,
        accept=body.accept,
        comment=body.comment,
        rejection_reason=body.rejection_reason,
        expected_version=body.expected_version,
    )
    await db.commit()
    return await _result_response(result, user, store)


@router.post("/orders/{order_id}/purchase-order", response_model=ApiResponse[OrderDetail], status_code=status.HTTP_201_CREATED)
async def upload_purchase_order(
    order_id: int,
    body: ClientPurchaseOrderUpload,
    user: CurrentUser = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    store: AcknowledgementStore = Depends(get_acknowledgement_store),
):
    result = await OrderLifecycleService.upload_client_purchase_order(
        db, dispatcher, order_id, user.client_id, user.actor,
        po_number=body.po_number,
        files=body.files,
        notes=body.notes,
        expected_version=body.expected_version,
    )
    await db.commit()
    return await _result_response(result, user, store)


@router.post("/orders/{order_id}/cancel", response_model=ApiResponse[OrderDetail])
async def cancel_my_order(
    order_id: int,
    body: CancelRequest | None = None,
    user: CurrentUser = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    store: AcknowledgementStore = Depends(get_acknowledgement_store),
):
    """Clients may withdraw an order only before a quotation has been sent."""
    result = await OrderLifecycleService.client_cancel_order(
        db, dispatcher, order_id, user.client_id, user.actor,
        reason=body.reason if body else None,
        expected_version=body.expected_version if body else None,
    )
    await db.commit()
    return await _result_response(result, user, store)


@router.get("/actions", response_model=ApiResponse[list[RequiredActionResponse]])
async def list_my_actions(
    user: CurrentUser = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    store: AcknowledgementStore = Depends(get_acknowledgement_store),
):
    acknowledged = await store.acknowledged(user.id)
    actions = await OrderLifecycleService.list_client_actions(db, user.company_id, user.client_id, acknowledged)
    return ApiResponse(data=[action_response(a) for a in actions])


@router.post("/actions/{key}/acknowledge", response_model=ApiResponse[dict])
async def acknowledge_action(
    key: str,
    user: CurrentUser = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    store: AcknowledgementStore = Depends(get_acknowledgement_store),
):
    """Hide a client action. The key must belong to one of the client's orders."""
    try:
        order_id = order_id_from_key(key)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    await OrderLifecycleService.get_order(db, order_id, company_id=user.company_id, client_id=user.client_id)
    await store.acknowledge(user.id, key)
    return ApiResponse(data={"key": key, "acknowledged": True})
