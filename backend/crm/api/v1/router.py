"""ATA CRM — API v1 router aggregation."""
from fastapi import APIRouter

from crm.api.v1.endpoints import client_portal, orders, tracking

api_router = APIRouter()

api_router.include_router(orders.router, prefix="/orders", tags=["orders"])
api_router.include_router(client_portal.router, prefix="/client", tags=["client-portal"])
api_router.include_router(tracking.router, prefix="/track", tags=["tracking"])
