"""ATA CRM — Client tracking surface behind the public order link.

Read-only. Shows the client their order's progress, documents, history and
the client actions still open. Admin action types never appear here.
"""
from typing import AbstractSet

from sqlalchemy.ext.asyncio import AsyncSession

from crm.lifecycle.actions import ActionResolver
from crm.lifecycle.actors import ActorRole
from crm.lifecycle.snapshot import OrderSnapshot
from crm.lifecycle.stages import display_label
from crm.schemas.order import (
    HistoryResponse,
    TrackingView,
    action_response,
    delivery_note_response,
    purchase_order_response,
    quotation_response,
    stage_steps,
)
from crm.services.order_service import OrderLifecycleService


class TrackingService:
    @staticmethod
    async def get_tracking_view(
        db: AsyncSession, token: str, acknowledged: AbstractSet[str] = frozenset()
    ) -> TrackingView:
        order = await OrderLifecycleService.get_by_token(db, token)
        snapshot = OrderSnapshot.from_order(order)
        actions = ActionResolver.resolve(snapshot, ActorRole.CLIENT, acknowledged)
        return TrackingView(
            order_id=snapshot.order_id,
            title=order.title,
            status=snapshot.status.value,
            stage=snapshot.stage.value,
            stage_label=display_label(snapshot.stage),
            progress_percent=snapshot.progress_percent,
            currency=snapshot.currency,
            total_amount=snapshot.total_amount,
            deposit_amount=snapshot.deposit_amount,
            deposit_paid=snapshot.deposit_paid,
            final_payment_received=snapshot.final_payment_received,
            stages=stage_steps(snapshot),
            quotations=[quotation_response(q) for q in snapshot.quotations],
            purchase_order=purchase_order_response(snapshot.purchase_order),
            delivery_notes=[delivery_note_response(dn) for dn in snapshot.delivery_notes],
            history=[HistoryResponse.model_validate(row) for row in order.history],
            actions=[action_response(a) for a in actions],
        )
