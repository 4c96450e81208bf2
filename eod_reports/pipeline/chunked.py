"""Chunk-oriented execution of the per-record daily transaction report.

Each chunk reads up to ``chunk_size`` rows, processes them and hands the
surviving records to the writer in one call. After a successful write the
checkpoint (last transaction id read, report filename, file size) is committed
to the task, so a restarted run continues after the last completed chunk and
appends to the same file. Bytes past the committed size never survive: a
failed write attempt, a failed checkpoint commit and the start of a resumed run
all truncate the file back to it. A failing write is retried with the same
buffered records up to ``chunk_retry_limit`` extra times before the step fails.
"""
from __future__ import annotations

import time
from typing import Callable, Optional, Sequence

from sqlalchemy.orm import Session

from eod_reports.config import DispatchSettings
from eod_reports.pipeline.context import ExecutionContext, ReportJobParameters
from eod_reports.pipeline.processor import DailyTransactionProcessor
from eod_reports.pipeline.reader import DailyTransactionReader
from eod_reports.pipeline.writer import DailyTransactionWriter
from eod_reports.reports.csv_sink import CsvReportSink
from eod_reports.reports.records import DailyTransactionRecord
from eod_reports.services.task_state import save_checkpoint
from eod_reports.utils import get_logger, log_performance
from eod_reports.utils.time import utc_today

logger = get_logger(__name__)


def _rollback_to_checkpoint(sink: CsvReportSink, context: ExecutionContext) -> None:
    """Discard bytes appended after the last committed checkpoint."""
    if context.filename is None:
        return
    if sink.truncate(context.filename, context.checkpoint_offset or 0):
        logger.warning(
            "Uncommitted report rows discarded",
            task_id=context.parameters.task_id,
            filename=context.filename,
            offset=context.checkpoint_offset or 0,
        )
    if context.checkpoint_offset is None:
        # nothing committed yet: the next write picks a fresh file
        context.filename = None


def _write_with_retry(
    writer: DailyTransactionWriter,
    sink: CsvReportSink,
    items: Sequence[DailyTransactionRecord],
    context: ExecutionContext,
    retry_limit: int,
) -> int:
    attempt = 0
    while True:
        try:
            return writer.write(items)
        except Exception as e:
            # a partial append must not be repeated by the retry
            _rollback_to_checkpoint(sink, context)
            attempt += 1
            if attempt > retry_limit:
                logger.error(
                    "Chunk write failed, giving up",
                    task_id=context.parameters.task_id,
                    chunk=context.chunk_count + 1,
                    attempts=attempt,
                    error=str(e),
                )
                raise
            logger.warning(
                "Chunk write failed, retrying",
                task_id=context.parameters.task_id,
                chunk=context.chunk_count + 1,
                attempt=attempt,
                error=str(e),
            )


def _commit_checkpoint(
    session_factory: Callable[[], Session],
    sink: CsvReportSink,
    context: ExecutionContext,
    last_id: int,
) -> None:
    offset = sink.size(context.filename) if context.filename else None
    session = session_factory()
    try:
        save_checkpoint(
            session,
            context.parameters.task_id,
            report_filename=context.filename,
            last_transaction_id=last_id,
            offset=offset,
        )
    finally:
        session.close()
    context.checkpoint_transaction_id = last_id
    context.checkpoint_offset = offset


def run_report_job(
    params: ReportJobParameters,
    *,
    session_factory: Callable[[], Session],
    sink: CsvReportSink,
    settings: DispatchSettings,
    processor: Optional[DailyTransactionProcessor] = None,
) -> ExecutionContext:
    """Run the per-record report for one task to completion."""
    context = ExecutionContext(parameters=params, report_date=params.report_date or utc_today())
    reader = DailyTransactionReader(session_factory, context, page_size=settings.read_page_size)
    processor = processor or DailyTransactionProcessor(datetime_format=settings.display_datetime_format)
    writer = DailyTransactionWriter(sink, session_factory, context, timestamp_format=settings.filename_timestamp_format)
    chunk_size = max(1, settings.chunk_size)
    started = time.perf_counter()

    logger.info("Report job started", **params.as_dict())
    reader.open()
    _rollback_to_checkpoint(sink, context)
    try:
        exhausted = False
        while not exhausted:
            items: list[DailyTransactionRecord] = []
            read_in_chunk = 0
            last_id: Optional[int] = None
            while read_in_chunk < chunk_size:
                raw = reader.read()
                if raw is None:
                    exhausted = True
                    break
                read_in_chunk += 1
                last_id = raw.id
                item = processor.process(raw)
                if item is None:
                    context.filter_count += 1
                    continue
                items.append(item)
            if read_in_chunk == 0:
                break
            written = _write_with_retry(writer, sink, items, context, settings.chunk_retry_limit)
            try:
                _commit_checkpoint(session_factory, sink, context, last_id)  # type: ignore[arg-type]
            except Exception:
                # rows only count once their checkpoint is committed
                _rollback_to_checkpoint(sink, context)
                raise
            context.write_count += written
            context.chunk_count += 1
    finally:
        reader.close()

    writer.after_step()

    duration_ms = (time.perf_counter() - started) * 1000
    if duration_ms / 1000 > settings.timeout_warning_seconds:
        logger.warning(
            "Report job exceeded expected duration",
            task_id=params.task_id,
            duration_ms=round(duration_ms, 2),
            threshold_seconds=settings.timeout_warning_seconds,
        )
    log_performance("report_job", duration_ms, context.summary())
    logger.info("Report job completed", **context.summary())
    return context


__all__ = ["run_report_job"]
