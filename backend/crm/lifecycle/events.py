"""ATA CRM — Order events: the descriptors handed to the NotificationDispatcher.

One event per accepted transition (built from the plan that produced it), plus
the reminder events raised by the periodic sweeps. Events are plain frozen
values so they can be queued on the session and serialized to Celery as JSON.
"""
from dataclasses import dataclass, field
from typing import Any

from crm.lifecycle.actors import ActorRole
from crm.lifecycle.snapshot import OrderSnapshot
from crm.lifecycle.stages import OrderStage
from crm.lifecycle.transitions import TransitionPlan

EVENT_DEPOSIT_REMINDER = "deposit_reminder"
EVENT_QUOTATION_FOLLOWUP = "quotation_followup"

# Stages whose arrival the client must hear about (email + client room).
CLIENT_FACING_STAGES = frozenset({
    OrderStage.QUOTATION_SENT,
    OrderStage.AWAITING_DEPOSIT,
    OrderStage.DELIVERY_NOTE_SENT,
    OrderStage.AWAITING_FINAL_PAYMENT,
    OrderStage.COMPLETED_DELIVERED,
})

_CLIENT_FACING_TYPES = frozenset({EVENT_DEPOSIT_REMINDER, EVENT_QUOTATION_FOLLOWUP})


@dataclass(frozen=True)
class OrderEvent:
    order_id: int
    company_id: int
    client_id: int | None
    event_type: str
    actor_role: ActorRole
    actor_id: int | None = None
    from_stage: OrderStage | None = None
    to_stage: OrderStage | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def notify_client(self) -> bool:
        """Whether the client should be emailed about this event."""
        if self.client_id is None or self.actor_role is ActorRole.CLIENT:
            return False
        if self.event_type in _CLIENT_FACING_TYPES or self.event_type.startswith("payment_received_"):
            return True
        return self.to_stage in CLIENT_FACING_STAGES and self.to_stage is not self.from_stage

    def rooms(self) -> list[str]:
        rooms = [f"company_{self.company_id}"]
        if self.client_id is not None:
            rooms.append(f"client_{self.client_id}")
        return rooms

    def to_descriptor(self) -> dict[str, Any]:
        """JSON-safe form sent over the wire."""
        return {
            "order_id": self.order_id,
            "event_type": self.event_type,
            "actor_role": self.actor_role.value,
            "actor_id": self.actor_id,
            "from_stage": self.from_stage.value if self.from_stage else None,
            "to_stage": self.to_stage.value if self.to_stage else None,
            "company_id": self.company_id,
            "client_id": self.client_id,
            "notify_client": self.notify_client,
            "rooms": self.rooms(),
            "payload": dict(self.payload),
        }


def build_event(
    snapshot: OrderSnapshot, plan: TransitionPlan, extra: dict[str, Any] | None = None
) -> OrderEvent:
    """Event for an applied plan. ``snapshot`` is the pre-transition view."""
    payload = dict(plan.payload)
    if extra:
        payload.update(extra)
    if plan.changes_status:
        payload.setdefault("from_status", plan.from_status.value)
        payload.setdefault("to_status", plan.to_status.value)
    if plan.is_override:
        payload["override"] = True
    if plan.is_reopen:
        payload["reopened"] = True
    return OrderEvent(
        order_id=snapshot.order_id,
        company_id=snapshot.company_id,
        client_id=snapshot.client_id,
        event_type=plan.history_action,
        actor_role=plan.actor.role,
        actor_id=plan.actor.id,
        from_stage=plan.from_stage,
        to_stage=plan.to_stage,
        payload=payload,
    )
