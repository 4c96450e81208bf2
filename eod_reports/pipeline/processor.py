"""Transform ledger rows into report records."""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from eod_reports.models.db.transactions import Transaction
from eod_reports.reports.records import DailyTransactionRecord

_CENTS = Decimal("0.00")


def format_amount(value: Any) -> str:
    """Canonical two-place decimal string (``25.5`` -> ``"25.50"``)."""
    return str(Decimal(str(value)) + _CENTS)


class DailyTransactionProcessor:
    def __init__(self, *, datetime_format: str = "%d/%m/%Y %H:%M:%S"):
        self._datetime_format = datetime_format

    def process(self, raw: Optional[Transaction]) -> Optional[DailyTransactionRecord]:
        if raw is None:
            return None
        return DailyTransactionRecord(
            payer_name=raw.payer_name,
            payer_email=raw.payer_email,
            merchant_email=raw.merchant_email,
            amount=format_amount(raw.amount),
            transaction_date=raw.occurred_at.strftime(self._datetime_format),
        )


__all__ = ["DailyTransactionProcessor", "format_amount"]
