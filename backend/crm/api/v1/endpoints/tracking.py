"""ATA CRM — Public order tracking (no login; the token is the credential)."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from crm.api.deps import get_db
from crm.schemas.common import ApiResponse
from crm.schemas.order import TrackingView
from crm.services.tracking_service import TrackingService

router = APIRouter()


@router.get("/{token}", response_model=ApiResponse[TrackingView])
async def track_order(
    token: str,
    ack: list[str] = Query(default=[]),
    db: AsyncSession = Depends(get_db),
):
    """
    Progress, documents and open client actions for one order.
    Keys acknowledged in the browser are passed back as repeated ``ack`` params.
    """
    view = await TrackingService.get_tracking_view(db, token, acknowledged=frozenset(ack))
    return ApiResponse(data=view)
