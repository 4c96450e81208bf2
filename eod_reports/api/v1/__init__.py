"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import main_tasks, tasks, queues

api_router = APIRouter()

api_router.include_router(
    main_tasks.router,
    prefix="/main-tasks",
    tags=["main-tasks"]
)

api_router.include_router(
    tasks.router,
    prefix="/tasks",
    tags=["tasks"]
)

api_router.include_router(
    queues.router,
    prefix="/queues",
    tags=["queues"]
)
