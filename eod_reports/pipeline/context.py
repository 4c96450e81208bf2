"""Job parameters and execution-scoped state for one pipeline run."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional

from eod_reports.utils.time import format_elapsed, utc_now


@dataclass(slots=True, frozen=True)
class ReportJobParameters:
    task_id: int
    merchant_email: str
    run_nonce: int
    report_date: Optional[date] = None

    @classmethod
    def for_task(cls, task_id: int, merchant_email: str, *, report_date: Optional[date] = None) -> "ReportJobParameters":
        # Nonce keeps two runs for the same task distinguishable
        return cls(task_id=task_id, merchant_email=merchant_email, run_nonce=time.time_ns(), report_date=report_date)

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "taskId": self.task_id,
            "merchantEmail": self.merchant_email,
            "runNonce": self.run_nonce,
        }
        if self.report_date is not None:
            data["reportDate"] = self.report_date.isoformat()
        return data


@dataclass(slots=True)
class ExecutionContext:
    """State owned by a single execution; never shared between runs."""
    parameters: ReportJobParameters
    report_date: date
    filename: Optional[str] = None
    checkpoint_transaction_id: Optional[int] = None
    checkpoint_offset: Optional[int] = None
    read_count: int = 0
    filter_count: int = 0
    write_count: int = 0
    chunk_count: int = 0
    started_at: datetime = field(default_factory=utc_now)

    def summary(self) -> dict[str, Any]:
        return {
            "task_id": self.parameters.task_id,
            "filename": self.filename,
            "read": self.read_count,
            "filtered": self.filter_count,
            "written": self.write_count,
            "chunks": self.chunk_count,
            "elapsed": format_elapsed(self.started_at),
        }


__all__ = ["ReportJobParameters", "ExecutionContext"]
