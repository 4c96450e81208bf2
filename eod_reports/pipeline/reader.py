"""Lazy reader over a merchant's transactions for the report day."""
from __future__ import annotations

from typing import Callable, Iterator, Optional

from sqlalchemy.orm import Session

from eod_reports.models.db.enums import TaskStatus
from eod_reports.models.db.transactions import Transaction
from eod_reports.pipeline.context import ExecutionContext
from eod_reports.services.task_state import get_task, mark_processing
from eod_reports.services.transactions import iter_daily_transactions
from eod_reports.utils import get_logger

logger = get_logger(__name__)


class DailyTransactionReader:
    def __init__(self, session_factory: Callable[[], Session], context: ExecutionContext, *, page_size: int = 500):
        self._session_factory = session_factory
        self._context = context
        self._page_size = page_size
        self._merchant_email: Optional[str] = None
        self._iterator: Optional[Iterator[Transaction]] = None

    def open(self) -> None:
        """Resolve the task, stamp PROCESSING if needed and pick up any checkpoint."""
        session = self._session_factory()
        try:
            task = get_task(session, self._context.parameters.task_id)
            if task.status == TaskStatus.QUEUED:
                mark_processing(session, task.id)
            if task.report_filename and self._context.filename is None:
                self._context.filename = task.report_filename
            if task.checkpoint_transaction_id is not None:
                self._context.checkpoint_transaction_id = task.checkpoint_transaction_id
                self._context.checkpoint_offset = task.checkpoint_offset
                logger.info(
                    "Resuming report from checkpoint",
                    task_id=task.id,
                    after_transaction_id=task.checkpoint_transaction_id,
                    filename=self._context.filename,
                )
        finally:
            session.close()
        self._merchant_email = (self._context.parameters.merchant_email or "").strip() or None

    def read(self) -> Optional[Transaction]:
        if not self._merchant_email:
            return None
        if self._iterator is None:
            self._iterator = iter_daily_transactions(
                self._session_factory,
                self._merchant_email,
                self._context.report_date,
                page_size=self._page_size,
                after_id=self._context.checkpoint_transaction_id,
            )
        txn = next(self._iterator, None)
        if txn is not None:
            self._context.read_count += 1
        return txn

    def close(self) -> None:
        if self._iterator is not None:
            self._iterator.close()  # type: ignore[attr-defined]
            self._iterator = None


__all__ = ["DailyTransactionReader"]
