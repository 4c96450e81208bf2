"""
Queue and consumer visibility.
"""
from fastapi import APIRouter, Depends, Request

from eod_reports.api.deps import get_queue_router
from eod_reports.jobs.routing import QueueRouter
from eod_reports.models.schemas.base import ResponseBase

router = APIRouter()


@router.get(
    "",
    response_model=ResponseBase,
    summary="Get queue, consumer and dead-letter snapshots"
)
async def queue_snapshot(request: Request, queue_router: QueueRouter = Depends(get_queue_router)) -> ResponseBase:
    request_id = getattr(request.state, "request_id", "unknown")
    pools = getattr(request.app.state, "consumer_pools", {}) or {}
    data = {
        "queues": queue_router.snapshot(),
        "consumers": {kind.value: pool.snapshot() for kind, pool in pools.items()},
        "dead_letters": {kind.value: channel.dead_letters() for kind, channel in queue_router.items()},
        "request_id": request_id,
    }
    return ResponseBase(success=True, message="Queue snapshot", data=data)
