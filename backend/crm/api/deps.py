"""ATA CRM — FastAPI dependencies (auth, DB, permissions, delivery)."""
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.redis import get_redis
from crm.db.session import get_db
from crm.lifecycle.actors import Actor, ActorRole
from crm.services.acknowledgement_service import AcknowledgementStore, RedisAcknowledgementStore
from crm.services.notification_dispatcher import CeleryNotificationDispatcher, NotificationDispatcher

DbSession = Annotated[AsyncSession, Depends(get_db)]

# ── Permission keys ─────────────────────────────────────────────────────────
PERM_ORDERS_MANAGE = "orders:manage"
PERM_ORDERS_OVERRIDE = "orders:override"
PERM_PAYMENTS_RECORD = "payments:record"
PERM_ORDERS_READ = "orders:read"
PERM_PORTAL_USE = "portal:use"

# ── Role → permissions matrix ────────────────────────────────────────────────
_ADMIN_PERMS = {
    PERM_ORDERS_MANAGE,
    PERM_ORDERS_OVERRIDE,
    PERM_PAYMENTS_RECORD,
    PERM_ORDERS_READ,
}

_ACCOUNTANT_PERMS = {
    PERM_PAYMENTS_RECORD,
    PERM_ORDERS_READ,
}

_CLIENT_PERMS = {
    PERM_PORTAL_USE,
}

PERMISSION_MATRIX: dict[str, set[str]] = {
    "ADMIN": _ADMIN_PERMS,
    "ACCOUNTANT": _ACCOUNTANT_PERMS,
    "CLIENT": _CLIENT_PERMS,
}


class CurrentUser:
    """User identity from the JWT, set on request.state by the middleware."""

    def __init__(
        self,
        id: int,
        company_id: int,
        role: str,
        name: str = "User",
        client_id: int | None = None,
    ):
        self.id = id
        self.company_id = company_id
        self.role = role
        self.name = name
        # set only for portal users; the client record they act for
        self.client_id = client_id

    def has_permission(self, permission: str) -> bool:
        return permission in PERMISSION_MATRIX.get(self.role, set())

    @property
    def actor(self) -> Actor:
        """Lifecycle actor: portal users act as their client, staff as ADMIN."""
        if self.role == "CLIENT":
            return Actor(role=ActorRole.CLIENT, id=self.client_id, name=self.name)
        return Actor(role=ActorRole.ADMIN, id=self.id, name=self.name)


async def get_current_user(request: Request) -> CurrentUser | None:
    """Extract user from request.state (populated by auth middleware)."""
    return getattr(request.state, "user", None)


async def require_auth(request: Request) -> CurrentUser:
    """Require authenticated user. Raise 401 if not logged in."""
    user = getattr(request.state, "user", None)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return user


def require_permission(permission: str):
    """Dependency factory: require specific RBAC permission."""

    async def _check(user: CurrentUser = Depends(require_auth)) -> CurrentUser:
        if not user.has_permission(permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: '{permission}' required. Your role: {user.role}",
            )
        return user

    return _check


async def require_client(user: CurrentUser = Depends(require_permission(PERM_PORTAL_USE))) -> CurrentUser:
    """Portal user bound to a client record."""
    if user.client_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Portal access requires a client account",
        )
    return user


_dispatcher = CeleryNotificationDispatcher()


def get_dispatcher() -> NotificationDispatcher:
    return _dispatcher


async def get_acknowledgement_store() -> AcknowledgementStore:
    return RedisAcknowledgementStore(await get_redis())
