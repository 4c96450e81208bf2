from __future__ import annotations
"""SQLAlchemy model for main tasks (one scheduling obligation per cycle)."""
from datetime import datetime
from typing import TYPE_CHECKING
from sqlalchemy import Integer, DateTime, Enum
from sqlalchemy.orm import relationship, Mapped, mapped_column

if TYPE_CHECKING:  # pragma: no cover
    from .tasks import Task
from sqlalchemy.sql import func
from eod_reports.database import Base
from .enums import MainTaskKind, MainTaskStatus

class MainTask(Base):
    __tablename__ = "main_tasks"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    kind: Mapped[MainTaskKind] = mapped_column(Enum(MainTaskKind), nullable=False, index=True)
    status: Mapped[MainTaskStatus] = mapped_column(Enum(MainTaskStatus), default=MainTaskStatus.PENDING, index=True)

    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    tasks: Mapped[list["Task"]] = relationship("Task", back_populates="main_task")
