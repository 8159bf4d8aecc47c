"""ATA CRM — Quotation model."""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from crm.db.base import Base, utcnow
from crm.lifecycle.snapshot import QuotationDecision


class Quotation(Base):
    """A priced offer sent to the client; decided exactly once."""

    __tablename__ = "quotations"
    __table_args__ = (
        # at most one accepted quotation per order
        Index(
            "uq_quotations_order_accepted",
            "order_id",
            unique=True,
            postgresql_where=text("decision = 'ACCEPTED'"),
            sqlite_where=text("decision = 'ACCEPTED'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="AED")
    file_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    decision: Mapped[str] = mapped_column(String(10), nullable=False, default=QuotationDecision.PENDING.value)
    client_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    deposit_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deposit_percent: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    deposit_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    order: Mapped["Order"] = relationship("Order", back_populates="quotations")
