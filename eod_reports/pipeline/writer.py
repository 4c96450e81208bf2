"""Chunk writer for the per-record report."""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Sequence

from sqlalchemy.orm import Session

from eod_reports.models.db.tasks import Task
from eod_reports.pipeline.context import ExecutionContext
from eod_reports.reports.csv_sink import CsvReportSink
from eod_reports.reports.records import DailyTransactionRecord
from eod_reports.services.task_state import mark_completed
from eod_reports.utils import get_logger
from eod_reports.utils.time import utc_now

logger = get_logger(__name__)


def report_filename(merchant_email: str, *, now: Optional[datetime] = None, timestamp_format: str = "%Y%m%d_%H%M%S") -> str:
    """``<local-part>_<timestamp>.csv`` for the merchant's report."""
    local_part = merchant_email.split("@", 1)[0]
    return f"{local_part}_{(now or utc_now()).strftime(timestamp_format)}.csv"


class DailyTransactionWriter:
    def __init__(
        self,
        sink: CsvReportSink,
        session_factory: Callable[[], Session],
        context: ExecutionContext,
        *,
        timestamp_format: str = "%Y%m%d_%H%M%S",
    ):
        self._sink = sink
        self._session_factory = session_factory
        self._context = context
        self._timestamp_format = timestamp_format

    def write(self, items: Sequence[DailyTransactionRecord]) -> int:
        if not items:
            return 0
        if self._context.filename is None:
            self._context.filename = report_filename(items[0].merchant_email, timestamp_format=self._timestamp_format)
            logger.info("Report file chosen", task_id=self._context.parameters.task_id, filename=self._context.filename)
        return self._sink.write(self._context.filename, items)

    def after_step(self) -> Task:
        session = self._session_factory()
        try:
            return mark_completed(session, self._context.parameters.task_id)
        finally:
            session.close()


__all__ = ["DailyTransactionWriter", "report_filename"]
