"""Time utilities (UTC now, day windows, elapsed formatting)."""
from __future__ import annotations
from datetime import date, datetime, time, timezone, timedelta

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def utc_today() -> date:
    return utc_now().date()

def day_bounds(day: date) -> tuple[datetime, datetime]:
    """Return ``(start_of_day, start_of_next_day)`` as naive datetimes.

    Ledger timestamps are stored naive; the window is start-inclusive and
    end-exclusive.
    """
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)

def format_elapsed(start: datetime, end: datetime | None = None) -> str:
    end_ts = end or utc_now()
    delta: timedelta = end_ts - start
    ms = int(delta.total_seconds() * 1000)
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60_000:
        return f"{ms/1000:.2f}s"
    return f"{delta.total_seconds()/60:.2f}m"

__all__ = ["utc_now", "utc_today", "day_bounds", "format_elapsed"]
