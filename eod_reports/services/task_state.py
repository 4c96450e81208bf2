"""Task and MainTask lifecycle.

Task status only moves forward:

    QUEUED -> PROCESSING -> COMPLETED
                        \\-> FAILED

PROCESSING may be re-stamped (a redelivered message re-claims the task after
the previous attempt released its lease) but never goes back to QUEUED.
Claiming uses a conditional UPDATE so two workers holding the same message
cannot both run the pipeline for one task.

Every mutating helper commits the session it is given.
"""
from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from eod_reports.exceptions import InvalidTransition, NotFoundError
from eod_reports.models.db.enums import MainTaskStatus, ReportKind, TaskStatus, TERMINAL_TASK_STATUSES
from eod_reports.models.db.main_tasks import MainTask
from eod_reports.models.db.tasks import Task
from eod_reports.utils import get_logger, log_business_event
from eod_reports.utils.time import utc_now

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.PROCESSING}),
    TaskStatus.PROCESSING: frozenset({TaskStatus.PROCESSING, TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}

MAIN_TASK_TRANSITIONS: dict[MainTaskStatus, frozenset[MainTaskStatus]] = {
    MainTaskStatus.PENDING: frozenset({MainTaskStatus.COMPLETED, MainTaskStatus.FAILED}),
    MainTaskStatus.COMPLETED: frozenset(),
    MainTaskStatus.FAILED: frozenset(),
}

_MAX_ERROR_LENGTH = 2000


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def apply_transition(task: Task, target: TaskStatus, *, now: datetime | None = None) -> Task:
    """Move ``task`` to ``target`` in memory, stamping the matching timestamp."""
    current = TaskStatus(task.status)
    if not can_transition(current, target):
        raise InvalidTransition("Task", current.value, target.value)
    now = now or utc_now()
    task.status = target
    if target == TaskStatus.PROCESSING:
        task.executed_at = now
    elif target == TaskStatus.COMPLETED:
        task.completed_at = now
        task.lease_expires_at = None
    elif target == TaskStatus.FAILED:
        task.failed_at = now
        task.lease_expires_at = None
    return task


# ------------------------------- lookups ------------------------------- #
def get_task(session: Session, task_id: int) -> Task:
    task = session.get(Task, task_id)
    if task is None:
        raise NotFoundError("Task", task_id)
    return task


def find_task_for_message(session: Session, reference: str, kind: ReportKind, subscriber_email: str) -> Task:
    """Exact (reference, kind, subscriber_email) match; never guesses."""
    stmt = select(Task).where(
        Task.reference == reference,
        Task.kind == kind,
        Task.subscriber_email == subscriber_email,
    )
    task = session.scalars(stmt).one_or_none()
    if task is None:
        raise NotFoundError("Task", reference)
    return task


def get_main_task(session: Session, main_task_id: int) -> MainTask:
    main_task = session.get(MainTask, main_task_id)
    if main_task is None:
        raise NotFoundError("MainTask", main_task_id)
    return main_task


# ------------------------------- dispatch ------------------------------- #
def claim_task(session: Session, task: Task, *, lease_seconds: float, now: datetime | None = None) -> bool:
    """Atomically take the task for one dispatch attempt.

    Succeeds when the task is QUEUED, or PROCESSING with no live lease (the
    previous attempt released it or its lease ran out). Stamps executed_at,
    bumps attempt_count and sets a fresh lease. Returns False if another
    worker won the race or the task is already terminal.
    """
    now = now or utc_now()
    stmt = (
        update(Task)
        .where(
            Task.id == task.id,
            or_(
                Task.status == TaskStatus.QUEUED,
                and_(
                    Task.status == TaskStatus.PROCESSING,
                    or_(Task.lease_expires_at.is_(None), Task.lease_expires_at < now),
                ),
            ),
        )
        .values(
            status=TaskStatus.PROCESSING,
            executed_at=now,
            attempt_count=Task.attempt_count + 1,
            lease_expires_at=now + timedelta(seconds=lease_seconds),
        )
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    session.commit()
    claimed = result.rowcount == 1
    session.refresh(task)
    if claimed:
        logger.info("Task claimed", task_id=task.id, reference=task.reference, attempt=task.attempt_count)
    else:
        logger.warning("Task claim lost", task_id=task.id, reference=task.reference, status=task.status.value)
    return claimed


def release_claim(session: Session, task_id: int, *, error: str | None = None) -> None:
    """Drop the lease after a failed attempt so a redelivery can re-claim.

    Status stays PROCESSING.
    """
    values: dict[str, object] = {"lease_expires_at": None}
    if error is not None:
        values["last_error"] = error[:_MAX_ERROR_LENGTH]
    session.execute(
        update(Task)
        .where(Task.id == task_id, Task.status == TaskStatus.PROCESSING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    session.commit()


def mark_processing(session: Session, task_id: int, *, now: datetime | None = None) -> Task:
    """Ensure the task is PROCESSING and stamp executed_at (pipeline entry hook)."""
    task = get_task(session, task_id)
    apply_transition(task, TaskStatus.PROCESSING, now=now)
    session.commit()
    logger.info("Task updated to PROCESSING", task_id=task.id, executed_at=task.executed_at)
    return task


def mark_completed(session: Session, task_id: int, *, now: datetime | None = None) -> Task:
    task = get_task(session, task_id)
    apply_transition(task, TaskStatus.COMPLETED, now=now)
    session.commit()
    logger.info("Task updated to COMPLETED", task_id=task.id, completed_at=task.completed_at)
    log_business_event("task_completed", {"task_id": task.id, "kind": task.kind.value}, task_reference=task.reference)
    return task


def mark_failed(session: Session, task_id: int, *, error: str, now: datetime | None = None) -> Task | None:
    """Terminal failure after the retry budget is spent.

    Only PROCESSING tasks move to FAILED; a task that never got claimed keeps
    its status and only records the error. Returns None when the task is gone.
    """
    task = session.get(Task, task_id)
    if task is None:
        return None
    task.last_error = error[:_MAX_ERROR_LENGTH]
    if task.status == TaskStatus.PROCESSING:
        apply_transition(task, TaskStatus.FAILED, now=now)
        log_business_event(
            "task_failed",
            {"task_id": task.id, "kind": task.kind.value, "attempts": task.attempt_count, "error": task.last_error},
            task_reference=task.reference,
        )
    session.commit()
    return task


def save_checkpoint(
    session: Session,
    task_id: int,
    *,
    report_filename: str | None,
    last_transaction_id: int | None,
    offset: int | None = None,
) -> None:
    session.execute(
        update(Task)
        .where(Task.id == task_id)
        .values(report_filename=report_filename, checkpoint_transaction_id=last_transaction_id, checkpoint_offset=offset)
        .execution_options(synchronize_session=False)
    )
    session.commit()


def is_terminal(task: Task) -> bool:
    return TaskStatus(task.status) in TERMINAL_TASK_STATUSES


# ------------------------------- main task ------------------------------- #
def finish_main_task(session: Session, main_task_id: int, *, succeeded: bool) -> MainTask:
    main_task = get_main_task(session, main_task_id)
    target = MainTaskStatus.COMPLETED if succeeded else MainTaskStatus.FAILED
    current = MainTaskStatus(main_task.status)
    if target not in MAIN_TASK_TRANSITIONS[current]:
        raise InvalidTransition("MainTask", current.value, target.value)
    main_task.status = target
    session.commit()
    logger.info("MainTask finished", main_task_id=main_task.id, status=target.value)
    return main_task


__all__ = [
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "apply_transition",
    "get_task",
    "find_task_for_message",
    "get_main_task",
    "claim_task",
    "release_claim",
    "mark_processing",
    "mark_completed",
    "mark_failed",
    "save_checkpoint",
    "is_terminal",
    "finish_main_task",
]
