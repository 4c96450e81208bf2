"""Single-shot daily summary report (one row per merchant and currency)."""
from __future__ import annotations

import time
from typing import Callable

from sqlalchemy.orm import Session

from eod_reports.config import DispatchSettings
from eod_reports.models.db.enums import TaskStatus
from eod_reports.pipeline.context import ExecutionContext, ReportJobParameters
from eod_reports.pipeline.processor import format_amount
from eod_reports.reports.csv_sink import CsvReportSink
from eod_reports.reports.records import DailyTransactionSummaryRecord
from eod_reports.services.task_state import get_task, mark_completed, mark_processing
from eod_reports.services.transactions import DailySummaryRow, daily_summary
from eod_reports.utils import get_logger, log_performance
from eod_reports.utils.time import utc_today

logger = get_logger(__name__)


class DailySummaryJob:
    def __init__(
        self,
        params: ReportJobParameters,
        *,
        session_factory: Callable[[], Session],
        sink: CsvReportSink,
        settings: DispatchSettings,
    ):
        self.context = ExecutionContext(parameters=params, report_date=params.report_date or utc_today())
        self._session_factory = session_factory
        self._sink = sink
        self._settings = settings
        self._rows: list[DailySummaryRow] = []

    def before_step(self) -> None:
        """Resolve the task, stamp PROCESSING and fetch the grouped totals."""
        params = self.context.parameters
        session = self._session_factory()
        try:
            task = get_task(session, params.task_id)
            if task.status == TaskStatus.QUEUED:
                mark_processing(session, task.id)
            merchant_email = (params.merchant_email or "").strip()
            if not merchant_email:
                logger.warning("Merchant email is blank; summary will be empty", task_id=params.task_id)
                self._rows = []
                return
            self._rows = daily_summary(session, merchant_email, self.context.report_date)
        finally:
            session.close()
        self.context.read_count = len(self._rows)

    def execute(self) -> int:
        records = [
            DailyTransactionSummaryRecord(
                merchant_email=row.merchant_email,
                amount=format_amount(row.total_amount),
                currency=row.currency,
                transaction_date=row.date.strftime(self._settings.summary_date_format),
            )
            for row in self._rows
        ]
        self.context.filename = self._settings.summary_filename
        written = self._sink.write(self.context.filename, records)
        self.context.write_count = written
        if written:
            self.context.chunk_count = 1
        logger.info("Summary rows written", task_id=self.context.parameters.task_id, filename=self.context.filename, rows=written)
        return written

    def after_step(self) -> None:
        session = self._session_factory()
        try:
            mark_completed(session, self.context.parameters.task_id)
        finally:
            session.close()


def run_summary_job(
    params: ReportJobParameters,
    *,
    session_factory: Callable[[], Session],
    sink: CsvReportSink,
    settings: DispatchSettings,
) -> ExecutionContext:
    started = time.perf_counter()
    job = DailySummaryJob(params, session_factory=session_factory, sink=sink, settings=settings)
    logger.info("Summary job started", **params.as_dict())
    job.before_step()
    job.execute()
    job.after_step()
    log_performance("summary_job", (time.perf_counter() - started) * 1000, job.context.summary())
    return job.context


__all__ = ["DailySummaryJob", "run_summary_job"]
