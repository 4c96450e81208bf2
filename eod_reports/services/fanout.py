"""Fan-out of a scheduled reporting obligation into per-subscriber tasks.

One MainTask per scheduling cycle; for each report kind of the cycle every
eligible subscriber gets a QUEUED Task and one queue message carrying the
task reference. The task row is committed before its message is published,
so a consumer can always resolve the reference it receives.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Iterable, Optional

from sqlalchemy.orm import Session

from eod_reports.config import DispatchSettings
from eod_reports.jobs.routing import QueueRouter, parse_report_kind
from eod_reports.models.db.enums import MainTaskKind, MainTaskStatus, ReportKind, TaskStatus
from eod_reports.models.db.main_tasks import MainTask
from eod_reports.models.db.tasks import Task
from eod_reports.models.schemas.messages import QueueMessage
from eod_reports.services.subscriber_selector import find_active_subscribers
from eod_reports.services.task_state import finish_main_task, get_main_task
from eod_reports.utils import get_logger, log_business_event, log_performance
from eod_reports.utils.time import utc_now, utc_today

logger = get_logger(__name__)


@dataclass(slots=True, frozen=True)
class FanOutParameters:
    main_task_id: int
    report_type: str
    run_nonce: int = field(default_factory=time.time_ns)

    def as_dict(self) -> dict[str, Any]:
        return {"mainTaskId": self.main_task_id, "reportType": self.report_type, "runNonce": self.run_nonce}


@dataclass(slots=True)
class FanOutResult:
    main_task_id: int
    report_kind: ReportKind
    queue_name: str
    references: list[str] = field(default_factory=list)

    @property
    def task_count(self) -> int:
        return len(self.references)


@dataclass(slots=True)
class SchedulingCycleResult:
    main_task_id: int
    status: MainTaskStatus
    fan_outs: list[FanOutResult] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "main_task_id": self.main_task_id,
            "status": self.status.value,
            "fan_outs": [
                {"report_kind": r.report_kind.value, "queue": r.queue_name, "tasks": r.task_count}
                for r in self.fan_outs
            ],
            "errors": dict(self.errors),
        }


def run_fan_out(
    session: Session,
    router: QueueRouter,
    params: FanOutParameters,
    *,
    today: Optional[date] = None,
    timestamp_format: str = "%Y-%m-%d %H:%M:%S",
) -> FanOutResult:
    """Create and enqueue one task per eligible subscriber for ``params.report_type``."""
    # Kind and route are checked before any row is written
    report_kind = parse_report_kind(params.report_type)
    channel = router.route(report_kind)

    main_task = get_main_task(session, params.main_task_id)
    on_date = today or utc_today()
    subscribers = find_active_subscribers(session, report_kind, on_date)
    result = FanOutResult(main_task_id=main_task.id, report_kind=report_kind, queue_name=channel.name)
    if not subscribers:
        logger.info("No active subscribers; nothing to fan out", report_kind=report_kind.value, day=on_date.isoformat(), **params.as_dict())
        return result

    started = time.perf_counter()
    for subscriber in subscribers:
        queued_at = utc_now()
        reference = str(uuid.uuid4())
        task = Task(
            reference=reference,
            main_task_id=main_task.id,
            kind=report_kind,
            status=TaskStatus.QUEUED,
            subscriber_email=subscriber.email,
            queued_at=queued_at,
        )
        session.add(task)
        session.commit()

        message = QueueMessage.for_task(
            reference=reference,
            task_type=report_kind.value,
            subscriber_email=subscriber.email,
            queued_at=queued_at,
            timestamp_format=timestamp_format,
        )
        channel.publish(message.to_wire(), message_id=message.message_id)
        result.references.append(message.message_id)
        logger.debug("Task queued", reference=message.message_id, subscriber_email=subscriber.email, queue=channel.name)

    log_business_event(
        "fan_out_completed",
        {
            "main_task_id": main_task.id,
            "report_kind": report_kind.value,
            "queue": channel.name,
            "tasks": result.task_count,
            "run_nonce": params.run_nonce,
        },
    )
    log_performance("fan_out", (time.perf_counter() - started) * 1000, {"tasks": result.task_count})
    return result


def create_main_task(session: Session, kind: MainTaskKind | str = MainTaskKind.EOD) -> MainTask:
    main_task = MainTask(kind=MainTaskKind(kind), status=MainTaskStatus.PENDING, scheduled_at=utc_now())
    session.add(main_task)
    session.commit()
    session.refresh(main_task)
    logger.info("MainTask created", main_task_id=main_task.id, kind=main_task.kind.value)
    return main_task


def run_scheduling_cycle(
    session_factory: Callable[[], Session],
    router: QueueRouter,
    settings: DispatchSettings,
    *,
    kind: MainTaskKind | str | None = None,
    report_kinds: Optional[Iterable[str]] = None,
    today: Optional[date] = None,
) -> SchedulingCycleResult:
    """Create a MainTask and fan out every report kind of the cycle.

    A failing kind does not stop the others; the MainTask ends COMPLETED only
    when every fan-out succeeded.
    """
    session = session_factory()
    try:
        main_task = create_main_task(session, kind or settings.main_task_kind)
        cycle = SchedulingCycleResult(main_task_id=main_task.id, status=MainTaskStatus.PENDING)
        for report_type in report_kinds or settings.scheduled_report_kinds:
            params = FanOutParameters(main_task_id=main_task.id, report_type=str(report_type))
            try:
                cycle.fan_outs.append(
                    run_fan_out(session, router, params, today=today, timestamp_format=settings.message_timestamp_format)
                )
            except Exception as e:
                session.rollback()
                cycle.errors[str(report_type)] = str(e)
                logger.error("Fan-out failed", main_task_id=main_task.id, report_type=str(report_type), error=str(e), exc_info=True)
        finished = finish_main_task(session, main_task.id, succeeded=not cycle.errors)
        cycle.status = MainTaskStatus(finished.status)
        log_business_event("scheduling_cycle_finished", cycle.as_dict())
        return cycle
    finally:
        session.close()


__all__ = [
    "FanOutParameters",
    "FanOutResult",
    "SchedulingCycleResult",
    "run_fan_out",
    "create_main_task",
    "run_scheduling_cycle",
]
