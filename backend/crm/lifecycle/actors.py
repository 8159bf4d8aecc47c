"""ATA CRM — Who is acting on an order."""
from dataclasses import dataclass
from enum import Enum


class ActorRole(str, Enum):
    ADMIN = "ADMIN"
    CLIENT = "CLIENT"
    SYSTEM = "SYSTEM"


@dataclass(frozen=True)
class Actor:
    role: ActorRole
    id: int | None = None
    name: str = "User"


SYSTEM_ACTOR = Actor(role=ActorRole.SYSTEM, id=None, name="System")
