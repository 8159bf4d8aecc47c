"""ATA CRM — PurchaseOrder model (one per order)."""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from crm.db.base import Base, utcnow


class PurchaseOrder(Base):
    """The client's Purchase Order against the accepted quotation."""

    __tablename__ = "purchase_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # unique: a second PO for the same order loses at commit even if both passed the guard
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True)
    po_number: Mapped[str] = mapped_column(String(100), nullable=False)
    files: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    deposit_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deposit_percent: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    deposit_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    uploaded_by_client: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    order: Mapped["Order"] = relationship("Order", back_populates="purchase_orders")
