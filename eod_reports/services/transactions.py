"""Ledger queries used by the report pipelines.

The per-record scan pages through a merchant's transactions for one day by
primary key (keyset pagination). Each page runs in its own short session, so
no cursor stays open while the pipeline writes checkpoints to the same store.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Callable, Iterator

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from eod_reports.models.db.transactions import Transaction
from eod_reports.utils import get_logger
from eod_reports.utils.time import day_bounds

logger = get_logger(__name__)


@dataclass(slots=True, frozen=True)
class DailySummaryRow:
    """Store-side aggregate: one row per (merchant, currency) for the day."""
    merchant_email: str
    total_amount: Decimal
    currency: str
    date: date


def iter_daily_transactions(
    session_factory: Callable[[], Session],
    merchant_email: str,
    day: date,
    *,
    page_size: int = 500,
    after_id: int | None = None,
) -> Iterator[Transaction]:
    """Yield the merchant's transactions in [start of day, start of next day) by id.

    ``after_id`` resumes a scan after a committed checkpoint. Yielded objects
    are detached from their session; only column attributes are read later.
    """
    start, next_start = day_bounds(day)
    last_id = after_id or 0
    while True:
        session = session_factory()
        try:
            stmt = (
                select(Transaction)
                .where(
                    Transaction.merchant_email == merchant_email,
                    Transaction.occurred_at >= start,
                    Transaction.occurred_at < next_start,
                    Transaction.id > last_id,
                )
                .order_by(Transaction.id)
                .limit(page_size)
            )
            page = list(session.scalars(stmt))
            session.expunge_all()
        finally:
            session.close()
        if not page:
            return
        logger.debug("Fetched transaction page", merchant_email=merchant_email, size=len(page), after_id=last_id)
        for txn in page:
            yield txn
        last_id = page[-1].id
        if len(page) < page_size:
            return


def daily_summary(session: Session, merchant_email: str, day: date) -> list[DailySummaryRow]:
    """Amounts summed per (merchant, currency) for one day, in one grouped query."""
    start, next_start = day_bounds(day)
    stmt = (
        select(
            Transaction.merchant_email,
            func.sum(Transaction.amount).label("total_amount"),
            Transaction.currency,
        )
        .where(
            Transaction.merchant_email == merchant_email,
            Transaction.occurred_at >= start,
            Transaction.occurred_at < next_start,
        )
        .group_by(Transaction.merchant_email, Transaction.currency)
        .order_by(Transaction.currency)
    )
    rows = [
        DailySummaryRow(
            merchant_email=row.merchant_email,
            total_amount=Decimal(str(row.total_amount)),
            currency=row.currency,
            date=day,
        )
        for row in session.execute(stmt)
    ]
    logger.info("Fetched daily summary", merchant_email=merchant_email, day=day.isoformat(), groups=len(rows))
    return rows


__all__ = ["DailySummaryRow", "iter_daily_transactions", "daily_summary"]
