"""
Scheduling cycle endpoints: trigger a cycle now and inspect its MainTask.
"""
import time
from typing import Callable

from fastapi import APIRouter, Depends, Request
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from eod_reports.api.deps import get_db, get_queue_router, get_session_factory, get_settings
from eod_reports.config import DispatchSettings
from eod_reports.jobs.routing import QueueRouter, parse_report_kind
from eod_reports.models.db import Task
from eod_reports.models.schemas.base import ResponseBase
from eod_reports.models.schemas.tasks import MainTaskRead, SchedulingTrigger
from eod_reports.services.fanout import run_scheduling_cycle
from eod_reports.services.task_state import get_main_task
from eod_reports.utils import get_logger, log_performance

router = APIRouter()
logger = get_logger(__name__)


@router.post(
    "/run",
    response_model=ResponseBase,
    summary="Run one scheduling cycle now"
)
def run_cycle(
    trigger: SchedulingTrigger,
    request: Request,
    queue_router: QueueRouter = Depends(get_queue_router),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    settings: DispatchSettings = Depends(get_settings),
) -> ResponseBase:
    """Create a MainTask and fan out each requested report kind.

    Unknown report kinds are rejected before the MainTask is created.
    """
    start_time = time.time()
    request_id = getattr(request.state, "request_id", "unknown")
    report_kinds = [parse_report_kind(k).value for k in (trigger.report_types or settings.scheduled_report_kinds)]
    for kind in report_kinds:
        queue_router.route(kind)

    logger.info("Manual scheduling cycle requested", kind=trigger.kind.value, report_kinds=report_kinds, request_id=request_id)
    cycle = run_scheduling_cycle(session_factory, queue_router, settings, kind=trigger.kind, report_kinds=report_kinds)
    log_performance(
        operation="manual_scheduling_cycle",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"main_task_id": cycle.main_task_id}
    )
    return ResponseBase(
        success=not cycle.errors,
        message=f"Scheduling cycle finished with status {cycle.status.value}",
        data={**cycle.as_dict(), "request_id": request_id},
    )


@router.get(
    "/{main_task_id}",
    response_model=MainTaskRead,
    summary="Get a MainTask with task counts per status"
)
async def read_main_task(main_task_id: int, db: Session = Depends(get_db)) -> MainTaskRead:
    main_task = get_main_task(db, main_task_id)
    counts = db.execute(
        select(Task.status, func.count(Task.id))
        .where(Task.main_task_id == main_task_id)
        .group_by(Task.status)
    ).all()
    result = MainTaskRead.model_validate(main_task)
    result.task_counts = {status.value: count for status, count in counts}
    return result
