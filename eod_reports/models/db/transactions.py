from __future__ import annotations
"""SQLAlchemy model for ledger transactions (raw facts owned by the external ledger)."""
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Integer, String, Numeric, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from eod_reports.database import Base

class Transaction(Base):
    __tablename__ = "transactions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    payer_name: Mapped[str | None] = mapped_column(String, nullable=True)
    payer_email: Mapped[str | None] = mapped_column(String, nullable=True)
    merchant_email: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    # Ledger-local naive timestamp
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_transactions_merchant_occurred", "merchant_email", "occurred_at"),
    )
