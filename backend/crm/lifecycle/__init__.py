"""ATA CRM — Order lifecycle core: stage catalog, guards, action resolution.

Everything in this package is pure: it reads snapshots and returns plans,
actions and events. Persistence and delivery live in ``crm.services``.
"""
from crm.lifecycle.actions import ActionResolver, ActionType, RequiredAction, action_key
from crm.lifecycle.actors import SYSTEM_ACTOR, Actor, ActorRole
from crm.lifecycle.errors import (
    ConcurrentModificationError,
    DataConsistencyWarning,
    LifecycleError,
    OrderNotFoundError,
    PreconditionError,
    TerminalStateError,
    UnknownStageError,
)
from crm.lifecycle.events import OrderEvent, build_event
from crm.lifecycle.progress import progress_percent
from crm.lifecycle.snapshot import OrderSnapshot, PaymentType, QuotationDecision
from crm.lifecycle.stages import (
    STAGES,
    OrderStage,
    OrderStatus,
    display_label,
    index_of,
    status_for_stage,
)
from crm.lifecycle.transitions import (
    Effect,
    LifecycleEvent,
    TransitionPlan,
    TransitionRequest,
    TransitionValidator,
)

__all__ = [
    "STAGES",
    "SYSTEM_ACTOR",
    "ActionResolver",
    "ActionType",
    "Actor",
    "ActorRole",
    "ConcurrentModificationError",
    "DataConsistencyWarning",
    "Effect",
    "LifecycleError",
    "LifecycleEvent",
    "OrderEvent",
    "OrderNotFoundError",
    "OrderSnapshot",
    "OrderStage",
    "OrderStatus",
    "PaymentType",
    "PreconditionError",
    "QuotationDecision",
    "RequiredAction",
    "TerminalStateError",
    "TransitionPlan",
    "TransitionRequest",
    "TransitionValidator",
    "UnknownStageError",
    "action_key",
    "build_event",
    "display_label",
    "index_of",
    "progress_percent",
    "status_for_stage",
]
