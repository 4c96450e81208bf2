"""Report row types.

Each record declares its CSV layout as ``COLUMNS``: ordered ``(header, attribute)``
pairs. The sink writes headers and cells from that declaration only.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Optional


@dataclass(slots=True, frozen=True)
class DailyTransactionRecord:
    payer_name: Optional[str]
    payer_email: Optional[str]
    merchant_email: str
    amount: str
    transaction_date: str

    COLUMNS: ClassVar[tuple[tuple[str, str], ...]] = (
        ("payerName", "payer_name"),
        ("payerEmail", "payer_email"),
        ("merchantEmail", "merchant_email"),
        ("amount", "amount"),
        ("transactionDate", "transaction_date"),
    )


@dataclass(slots=True, frozen=True)
class DailyTransactionSummaryRecord:
    merchant_email: str
    amount: str
    currency: str
    transaction_date: str

    COLUMNS: ClassVar[tuple[tuple[str, str], ...]] = (
        ("merchantEmail", "merchant_email"),
        ("amount", "amount"),
        ("currency", "currency"),
        ("transactionDate", "transaction_date"),
    )


def header(record_type: type) -> list[str]:
    return [name for name, _ in record_type.COLUMNS]


def row(record: object) -> list[str]:
    """Cells in declared column order; ``None`` becomes an empty cell."""
    cells = []
    for _, attr in type(record).COLUMNS:  # type: ignore[attr-defined]
        value = getattr(record, attr)
        cells.append("" if value is None else str(value))
    return cells


__all__ = ["DailyTransactionRecord", "DailyTransactionSummaryRecord", "header", "row"]
