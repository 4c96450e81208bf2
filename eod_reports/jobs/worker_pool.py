"""Background consumer pools, one per report queue."""
from __future__ import annotations

import threading
import time
from typing import Union

from eod_reports.config import DispatchSettings
from eod_reports.jobs.dispatcher import ACKED, DEAD_LETTERED, DUPLICATE, ReportDispatcher
from eod_reports.jobs.queue import AckDelayQueue, MessageChannel
from eod_reports.jobs.redis_queue import RedisQueue
from eod_reports.jobs.routing import QueueRouter
from eod_reports.utils import get_logger

logger = get_logger(__name__)


class ConsumerPool:
    """Runs ``min_workers`` core threads and grows up to ``max_workers`` under load.

    Each worker handles one delivery at a time. When every live worker is busy
    and the queue still has ready messages, another worker is started; workers
    above the core size exit after ``idle_worker_timeout`` without work.
    """

    def __init__(
        self,
        channel: MessageChannel,
        dispatcher: ReportDispatcher,
        *,
        min_workers: int = 2,
        max_workers: int = 5,
        poll_timeout: float = 1.0,
        idle_worker_timeout: float = 30.0,
    ):
        self.channel = channel
        self.dispatcher = dispatcher
        self.min_workers = max(1, min_workers)
        self.max_workers = max(self.min_workers, max_workers)
        self.poll_timeout = poll_timeout
        self.idle_worker_timeout = idle_worker_timeout
        self._lock = threading.Lock()
        self._threads: dict[str, threading.Thread] = {}
        self._busy = 0
        self._seq = 0
        self._stats = {"processed": 0, "acked": 0, "duplicates": 0, "requeued": 0, "dead_lettered": 0}
        self._stop_event = threading.Event()

    @classmethod
    def from_settings(cls, channel: MessageChannel, dispatcher: ReportDispatcher, settings: DispatchSettings) -> "ConsumerPool":
        return cls(
            channel,
            dispatcher,
            min_workers=settings.min_workers,
            max_workers=settings.max_workers,
            poll_timeout=settings.poll_timeout,
            idle_worker_timeout=settings.idle_worker_timeout,
        )

    def start(self) -> None:
        with self._lock:
            if self._threads:  # pragma: no cover
                return
            self._stop_event.clear()
            for _ in range(self.min_workers):
                self._spawn(core=True)
        logger.info("Consumer pool started", queue=self.channel.name, workers=self.min_workers, max_workers=self.max_workers)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        logger.info("Consumer pool stop requested", queue=self.channel.name)
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout=timeout)

    def _spawn(self, *, core: bool) -> None:
        # Caller holds self._lock
        self._seq += 1
        name = f"consumer-{self.channel.name}-{self._seq}"
        thread = threading.Thread(target=self._loop, args=(name, core), name=name, daemon=True)
        self._threads[name] = thread
        thread.start()

    def _maybe_scale_up(self) -> None:
        with self._lock:
            live = len(self._threads)
            if self._stop_event.is_set() or live >= self.max_workers or self._busy < live:
                return
            if self.channel.depth() <= 0:
                return
            self._spawn(core=False)
            logger.info("Consumer pool scaled up", queue=self.channel.name, workers=live + 1)

    def _loop(self, name: str, core: bool) -> None:
        idle_since = time.monotonic()
        try:
            while not self._stop_event.is_set():
                try:
                    delivery = self.channel.deliver(timeout=self.poll_timeout)
                    if delivery is None:
                        if not core and time.monotonic() - idle_since >= self.idle_worker_timeout:
                            logger.info("Idle consumer exiting", queue=self.channel.name, worker=name)
                            return
                        continue
                    with self._lock:
                        self._busy += 1
                    try:
                        self._maybe_scale_up()
                        outcome = self.dispatcher.handle(delivery)
                        self._record(outcome.action)
                    finally:
                        with self._lock:
                            self._busy -= 1
                    idle_since = time.monotonic()
                except Exception as e:  # pragma: no cover
                    logger.error("Consumer loop error", queue=self.channel.name, worker=name, error=str(e), exc_info=True)
                    time.sleep(1)
        finally:
            with self._lock:
                self._threads.pop(name, None)

    def _record(self, action: str) -> None:
        key = {ACKED: "acked", DUPLICATE: "duplicates", DEAD_LETTERED: "dead_lettered"}.get(action, "requeued")
        with self._lock:
            self._stats["processed"] += 1
            self._stats[key] += 1

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "queue": self.channel.name,
                "workers": len(self._threads),
                "busy": self._busy,
                "min_workers": self.min_workers,
                "max_workers": self.max_workers,
                **self._stats,
            }


def create_queue(name: str, settings: DispatchSettings) -> Union[AckDelayQueue, RedisQueue]:
    """Create the channel for one queue name based on configuration."""
    if settings.use_redis:
        try:
            redis_queue = RedisQueue(
                name,
                redis_url=settings.redis_url,
                key_prefix=settings.redis_key_prefix,
                warn_depth=settings.warn_depth,
                max_in_memory=settings.max_in_memory,
            )
            if redis_queue.health_check():
                logger.info("Using Redis-backed queue", queue=name)
                return redis_queue
            logger.warning("Redis server is not reachable; using in-memory queue", queue=name)
        except Exception as e:
            logger.warning("Error initializing Redis queue, falling back to in-memory queue", queue=name, error=str(e))
    logger.info("Using in-memory queue", queue=name)
    return AckDelayQueue(name, warn_depth=settings.warn_depth, max_in_memory=settings.max_in_memory)


def build_router(settings: DispatchSettings) -> QueueRouter:
    return QueueRouter({kind: create_queue(name, settings) for kind, name in settings.queue_names.items()})


__all__ = ["ConsumerPool", "create_queue", "build_router"]
