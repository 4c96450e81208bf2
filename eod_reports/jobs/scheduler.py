"""Periodic trigger for the end-of-day scheduling cycle."""
from __future__ import annotations

import threading
from typing import Callable, Optional

from sqlalchemy.orm import Session

from eod_reports.config import DispatchSettings
from eod_reports.jobs.routing import QueueRouter
from eod_reports.services.fanout import SchedulingCycleResult, run_scheduling_cycle
from eod_reports.utils import get_logger

logger = get_logger(__name__)


class EndOfDayScheduler:
    def __init__(self, session_factory: Callable[[], Session], router: QueueRouter, settings: DispatchSettings):
        self._session_factory = session_factory
        self._router = router
        self._settings = settings
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self.last_result: Optional[SchedulingCycleResult] = None

    def run_once(self) -> SchedulingCycleResult:
        logger.info("Scheduling cycle triggered", kind=self._settings.main_task_kind)
        self.last_result = run_scheduling_cycle(self._session_factory, self._router, self._settings)
        return self.last_result

    def start(self) -> None:
        if self._thread and self._thread.is_alive():  # pragma: no cover
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="eod-scheduler", daemon=True)
        self._thread.start()
        logger.info("Scheduler started", interval_seconds=self._settings.scheduler_interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        logger.info("Scheduler stopped")

    def _loop(self) -> None:
        # First cycle fires one interval after start
        while not self._stop_event.wait(self._settings.scheduler_interval_seconds):
            try:
                self.run_once()
            except Exception as e:  # pragma: no cover
                logger.error("Scheduling cycle error", error=str(e), exc_info=True)


__all__ = ["EndOfDayScheduler"]
