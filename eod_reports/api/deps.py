"""
Dependencies for database sessions and the runtime components kept on app.state.
"""
from typing import Callable, Generator

from fastapi import HTTPException, Request
from sqlalchemy.orm import Session

from eod_reports.config import DispatchSettings
from eod_reports.database import SessionLocal
from eod_reports.jobs.routing import QueueRouter
from eod_reports.utils import get_logger

logger = get_logger(__name__)


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.
    Ensures proper session lifecycle management with automatic cleanup.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error", error=str(e), exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()


def get_session_factory(request: Request) -> Callable[[], Session]:
    """Session factory used by work that opens its own sessions (scheduling cycles)."""
    return getattr(request.app.state, "session_factory", SessionLocal)


def get_queue_router(request: Request) -> QueueRouter:
    router = getattr(request.app.state, "queue_router", None)
    if router is None:
        raise HTTPException(status_code=503, detail="Report queues not available")
    return router


def get_settings(request: Request) -> DispatchSettings:
    settings = getattr(request.app.state, "settings", None)
    return settings if settings is not None else DispatchSettings.from_config()
