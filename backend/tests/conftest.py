"""Pytest configuration and fixtures."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from crm.api.deps import get_acknowledgement_store, get_db, get_dispatcher
from crm.core.security import create_access_token
from crm.db.base import Base
from crm.lifecycle.actors import Actor, ActorRole
from crm.lifecycle.snapshot import (
    DeliveryNoteView,
    OrderSnapshot,
    PaymentType,
    PaymentView,
    PurchaseOrderView,
    QuotationDecision,
    QuotationView,
)
from crm.lifecycle.stages import OrderStage, OrderStatus, status_for_stage
from crm.main import app
# Import all models to ensure they're registered with Base.metadata
from crm.models import Client, Company, User
from crm.services.acknowledgement_service import AcknowledgementStore
from crm.services.notification_dispatcher import NotificationDispatcher

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

ADMIN = Actor(role=ActorRole.ADMIN, id=1, name="Sara Admin")
CLIENT = Actor(role=ActorRole.CLIENT, id=1, name="Gulf Power LLC")

NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


# ── Test doubles ────────────────────────────────────────────────────────────

class RecordingDispatcher(NotificationDispatcher):
    """Collects every dispatched event in order."""

    def __init__(self):
        self.events = []

    def dispatch(self, event) -> None:
        self.events.append(event)

    @property
    def event_types(self) -> list[str]:
        return [e.event_type for e in self.events]


class FailingDispatcher(NotificationDispatcher):
    def dispatch(self, event) -> None:
        raise RuntimeError("notification backend unavailable")


class InMemoryAcknowledgementStore(AcknowledgementStore):
    def __init__(self):
        self.keys: dict[int, set[str]] = {}

    async def acknowledged(self, user_id: int) -> frozenset[str]:
        return frozenset(self.keys.get(user_id, set()))

    async def acknowledge(self, user_id: int, key: str) -> None:
        self.keys.setdefault(user_id, set()).add(key)


# ── Snapshot builders ───────────────────────────────────────────────────────

def make_quotation(
    id: int = 1,
    decision: QuotationDecision = QuotationDecision.PENDING,
    total: str = "10000.00",
    file_url: str | None = "/uploads/quotations/q1.pdf",
    deposit_required: bool = False,
    deposit_percent: str | None = None,
    created_at: datetime | None = None,
) -> QuotationView:
    return QuotationView(
        id=id,
        total_amount=Decimal(total),
        currency="AED",
        file_url=file_url,
        decision=decision,
        deposit_required=deposit_required,
        deposit_percent=Decimal(deposit_percent) if deposit_percent else None,
        created_at=created_at,
    )


def make_snapshot(
    stage: OrderStage = OrderStage.RECEIVED,
    status: OrderStatus | None = None,
    quotations=(),
    purchase_orders=(),
    payments=(),
    delivery_notes=(),
    **kwargs,
) -> OrderSnapshot:
    """Snapshot with a status consistent with ``stage`` unless one is given."""
    return OrderSnapshot(
        order_id=kwargs.pop("order_id", 1),
        company_id=kwargs.pop("company_id", 1),
        client_id=kwargs.pop("client_id", 1),
        stage=stage,
        status=status or status_for_stage(stage),
        quotations=tuple(quotations),
        purchase_orders=tuple(purchase_orders),
        payments=tuple(payments),
        delivery_notes=tuple(delivery_notes),
        **kwargs,
    )


def accepted_quotation(id: int = 1, **kwargs) -> QuotationView:
    return make_quotation(id=id, decision=QuotationDecision.ACCEPTED, **kwargs)


def purchase_order(id: int = 1, deposit_percent: str | None = None) -> PurchaseOrderView:
    return PurchaseOrderView(
        id=id,
        po_number="PO-2026-001",
        files=("/uploads/po/po1.pdf",),
        deposit_required=deposit_percent is not None,
        deposit_percent=Decimal(deposit_percent) if deposit_percent else None,
    )


def payment(id: int, payment_type: PaymentType, amount: str) -> PaymentView:
    return PaymentView(id=id, payment_type=payment_type, amount=Decimal(amount), currency="AED")


def delivery_note(id: int = 1) -> DeliveryNoteView:
    return DeliveryNoteView(id=id, dn_number=f"DN-{id:03d}", files=("/uploads/dn/dn1.pdf",))


# ── Database ────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def company(db_session: AsyncSession) -> Company:
    company = Company(name="ATA Power Equipment")
    db_session.add(company)
    await db_session.commit()
    return company


@pytest_asyncio.fixture
async def client_account(db_session: AsyncSession, company: Company) -> Client:
    client = Client(company_id=company.id, name="Gulf Power LLC", email="orders@gulfpower.example", phone=None)
    db_session.add(client)
    await db_session.commit()
    return client


@pytest_asyncio.fixture
async def other_client(db_session: AsyncSession, company: Company) -> Client:
    client = Client(company_id=company.id, name="Desert Grid Co", email="po@desertgrid.example", phone=None)
    db_session.add(client)
    await db_session.commit()
    return client


@pytest_asyncio.fixture
async def admin_user(db_session: AsyncSession, company: Company) -> User:
    user = User(company_id=company.id, name="Sara Admin", email="sara@ata.example", role="ADMIN")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def ack_store() -> InMemoryAcknowledgementStore:
    return InMemoryAcknowledgementStore()


# ── HTTP ────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def http(session_maker, dispatcher, ack_store) -> AsyncGenerator[AsyncClient, None]:
    """Async test client with database, dispatcher and acknowledgement overrides."""

    async def override_get_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_acknowledgement_store] = lambda: ack_store
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers(admin_user: User, company: Company) -> dict:
    token = create_access_token(admin_user.id, company.id, "ADMIN", name=admin_user.name)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def accountant_headers(company: Company) -> dict:
    token = create_access_token(99, company.id, "ACCOUNTANT", name="Omar Accounts")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client_headers(client_account: Client, company: Company) -> dict:
    token = create_access_token(501, company.id, "CLIENT", name="Gulf Power Buyer", client_id=client_account.id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def other_client_headers(other_client: Client, company: Company) -> dict:
    token = create_access_token(502, company.id, "CLIENT", name="Desert Grid Buyer", client_id=other_client.id)
    return {"Authorization": f"Bearer {token}"}
