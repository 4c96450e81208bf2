"""
Task inspection endpoints.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from eod_reports.api.deps import get_db
from eod_reports.exceptions import NotFoundError
from eod_reports.jobs.routing import parse_report_kind
from eod_reports.models.db import Task
from eod_reports.models.db.enums import TaskStatus
from eod_reports.models.schemas.tasks import TaskRead

router = APIRouter()


@router.get(
    "",
    response_model=List[TaskRead],
    summary="List tasks"
)
async def list_tasks(
    status_filter: Optional[TaskStatus] = Query(None, alias="status"),
    kind: Optional[str] = Query(None),
    main_task_id: Optional[int] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db)
) -> List[TaskRead]:
    stmt = select(Task)
    if status_filter is not None:
        stmt = stmt.where(Task.status == status_filter)
    if kind:
        stmt = stmt.where(Task.kind == parse_report_kind(kind))
    if main_task_id is not None:
        stmt = stmt.where(Task.main_task_id == main_task_id)
    tasks = db.scalars(stmt.order_by(Task.id).offset(offset).limit(limit)).all()
    return [TaskRead.model_validate(t) for t in tasks]


@router.get(
    "/{reference}",
    response_model=TaskRead,
    summary="Get a task by reference"
)
async def read_task(reference: str, db: Session = Depends(get_db)) -> TaskRead:
    task = db.scalars(select(Task).where(Task.reference == reference)).one_or_none()
    if task is None:
        raise NotFoundError("Task", reference)
    return TaskRead.model_validate(task)
