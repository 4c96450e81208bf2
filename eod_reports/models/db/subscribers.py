from __future__ import annotations
"""SQLAlchemy model for report subscribers (read-only for the reporting core)."""
from datetime import date
from sqlalchemy import Integer, String, Date, Enum, Index
from sqlalchemy.orm import Mapped, mapped_column

from eod_reports.database import Base
from .enums import ReportKind, SubscriberStatus

class Subscriber(Base):
    __tablename__ = "subscribers"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    report_kind: Mapped[ReportKind] = mapped_column(Enum(ReportKind), nullable=False)
    active_from: Mapped[date] = mapped_column(Date, nullable=False)
    active_to: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[SubscriberStatus] = mapped_column(Enum(SubscriberStatus), default=SubscriberStatus.ACTIVE)

    __table_args__ = (
        Index("ix_subscribers_kind_window", "report_kind", "status", "active_from", "active_to"),
    )
