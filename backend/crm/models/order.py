"""ATA CRM — Order aggregate root."""
import secrets
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from crm.db.base import Base, utcnow
from crm.lifecycle.stages import OrderStage, OrderStatus


def generate_public_token() -> str:
    """Opaque URL-safe token for the client tracking link."""
    return secrets.token_urlsafe(16)


class Order(Base):
    """
    One customer order moving through the 15-stage lifecycle.
    ``version`` is SQLAlchemy's version counter: every UPDATE is conditioned on it.
    """

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    client_id: Mapped[int | None] = mapped_column(ForeignKey("clients.id", ondelete="SET NULL"), nullable=True, index=True)
    public_token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, default=generate_public_token)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=OrderStatus.PENDING.value, index=True)
    stage: Mapped[str] = mapped_column(String(40), nullable=False, default=OrderStage.RECEIVED.value, index=True)

    total_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="AED")
    deposit_percentage: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    deposit_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    deposit_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deposit_paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    final_payment_received: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    final_payment_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    quotations: Mapped[list["Quotation"]] = relationship(
        "Quotation", back_populates="order", cascade="all, delete-orphan", lazy="selectin", order_by="Quotation.id"
    )
    purchase_orders: Mapped[list["PurchaseOrder"]] = relationship(
        "PurchaseOrder", back_populates="order", cascade="all, delete-orphan", lazy="selectin", order_by="PurchaseOrder.id"
    )
    payments: Mapped[list["Payment"]] = relationship(
        "Payment", back_populates="order", cascade="all, delete-orphan", lazy="selectin", order_by="Payment.id"
    )
    delivery_notes: Mapped[list["DeliveryNote"]] = relationship(
        "DeliveryNote", back_populates="order", cascade="all, delete-orphan", lazy="selectin", order_by="DeliveryNote.id"
    )
    history: Mapped[list["OrderHistory"]] = relationship(
        "OrderHistory", back_populates="order", cascade="all, delete-orphan", lazy="selectin", order_by="OrderHistory.id"
    )

    __mapper_args__ = {"version_id_col": version}
