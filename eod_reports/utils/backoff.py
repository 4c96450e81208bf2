"""Exponential backoff helpers with jitter (requeue delays for failed deliveries)."""
from __future__ import annotations

import random
from typing import Mapping, Optional

from eod_reports.config import BACKOFF_POLICY


def compute_backoff_seconds(
    attempt: int,
    *,
    policy: Optional[Mapping[str, int | float]] = None,
    base: Optional[float] = None,
    factor: Optional[float] = None,
    max_seconds: Optional[float] = None,
    jitter_pct: Optional[float] = None,
) -> float:
    """Compute exponential backoff delay with jitter.

    ``policy`` is the settings snapshot a component was built with; explicit
    keyword values win over it, and the module defaults fill the rest.
    """
    if attempt < 1:
        attempt = 1
    source = dict(BACKOFF_POLICY)
    if policy:
        source.update(policy)
    base = float(base if base is not None else source["base_seconds"])
    factor = float(factor if factor is not None else source["factor"])
    max_seconds = float(max_seconds if max_seconds is not None else source["max_seconds"])
    jitter_pct = float(jitter_pct if jitter_pct is not None else source["jitter_pct"])

    delay = base * (factor ** (attempt - 1))
    delay = min(delay, max_seconds)
    if jitter_pct > 0:
        jitter_amount = delay * jitter_pct
        delay = random.uniform(delay - jitter_amount, delay + jitter_amount)
    return max(delay, 0.0)


__all__ = ["compute_backoff_seconds"]
