from __future__ import annotations
"""SQLAlchemy model for per-subscriber tasks tracked through the queue and pipeline."""
from datetime import datetime
from typing import TYPE_CHECKING
from sqlalchemy import Integer, String, Text, DateTime, ForeignKey, Enum, Index
from sqlalchemy.orm import relationship, Mapped, mapped_column

if TYPE_CHECKING:  # pragma: no cover
    from .main_tasks import MainTask
from sqlalchemy.sql import func
from eod_reports.database import Base
from .enums import ReportKind, TaskStatus

class Task(Base):
    __tablename__ = "tasks"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    # Idempotency token; the only key a queue message carries
    reference: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    main_task_id: Mapped[int] = mapped_column(Integer, ForeignKey("main_tasks.id"), nullable=False, index=True)

    kind: Mapped[ReportKind] = mapped_column(Enum(ReportKind), nullable=False)
    status: Mapped[TaskStatus] = mapped_column(Enum(TaskStatus), default=TaskStatus.QUEUED, index=True)
    subscriber_email: Mapped[str] = mapped_column(String, nullable=False)

    queued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Dispatch bookkeeping (claim lease + attempt counter)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Chunk checkpoint so a restarted run resumes at the last committed batch
    report_filename: Mapped[str | None] = mapped_column(String, nullable=True)
    checkpoint_transaction_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    checkpoint_offset: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    main_task: Mapped["MainTask"] = relationship("MainTask", back_populates="tasks")

    __table_args__ = (
        Index("ix_tasks_reference_kind_email", "reference", "kind", "subscriber_email"),
    )
