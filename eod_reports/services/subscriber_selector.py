"""Subscriber selection for one report kind on one day."""
from __future__ import annotations

from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from eod_reports.models.db.enums import ReportKind, SubscriberStatus
from eod_reports.models.db.subscribers import Subscriber
from eod_reports.utils import get_logger

logger = get_logger(__name__)


def find_active_subscribers(session: Session, report_kind: ReportKind, on_date: date) -> list[Subscriber]:
    """Subscribers whose active window contains ``on_date`` (both ends inclusive).

    Only ACTIVE subscribers of the given kind are returned, ordered by id so
    fan-out order is stable. An empty list is a valid answer.
    """
    stmt = (
        select(Subscriber)
        .where(
            Subscriber.report_kind == report_kind,
            Subscriber.status == SubscriberStatus.ACTIVE,
            Subscriber.active_from <= on_date,
            Subscriber.active_to >= on_date,
        )
        .order_by(Subscriber.id)
    )
    subscribers = list(session.scalars(stmt))
    logger.debug("Selected active subscribers", report_kind=report_kind.value, on_date=on_date.isoformat(), count=len(subscribers))
    return subscribers


__all__ = ["find_active_subscribers"]
