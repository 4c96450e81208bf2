"""In-memory at-least-once message channel (single-process backend).

Features:
- FIFO delivery with manual acknowledgement.
- Reject with requeue, optionally delayed (retry backoff).
- Per-message delivery counter and redelivered flag.
- Dead-letter list for messages whose retry budget is spent.
- Capacity limits / backpressure via settings.
- Thread-safe with condition variable.

Two-heaps strategy:
 1. ready_heap: (seq, envelope)
 2. scheduled_heap: (ready_at_ts, seq, envelope)

Delivered messages move to an unacked table keyed by delivery tag until the
consumer calls ack(), reject() or dead_letter(). A delivered message is never
visible to another consumer unless it is rejected with requeue or recovered.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol
import itertools
import threading
import time
import heapq

from eod_reports.utils import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class Envelope:
    message_id: str
    payload: Any
    delivery_count: int = 0
    enqueued_at: float = field(default_factory=time.time)
    ready_at: float = 0.0


@dataclass(slots=True, frozen=True)
class Delivery:
    """What a consumer receives; pass it back to ack/reject/dead_letter."""
    tag: str
    queue: str
    message_id: str
    payload: Any
    delivery_count: int
    enqueued_at: float

    @property
    def redelivered(self) -> bool:
        return self.delivery_count > 1


class MessageChannel(Protocol):
    name: str

    def publish(self, payload: Any, *, message_id: str, delay_seconds: float = 0.0) -> None: ...
    def deliver(self, *, block: bool = True, timeout: Optional[float] = None) -> Optional[Delivery]: ...
    def ack(self, delivery: Delivery) -> None: ...
    def reject(self, delivery: Delivery, *, requeue: bool = True, delay_seconds: float = 0.0) -> None: ...
    def dead_letter(self, delivery: Delivery, *, reason: str) -> None: ...
    def dead_letters(self) -> list[dict]: ...
    def recover(self) -> int: ...
    def depth(self) -> int: ...
    def snapshot(self) -> dict: ...
    def shutdown(self) -> None: ...
    def purge(self) -> None: ...


class AckDelayQueue:
    def __init__(self, name: str, *, warn_depth: int = 1000, max_in_memory: int = 50000) -> None:
        self.name = name
        self._warn_depth = warn_depth
        self._max_in_memory = max_in_memory
        self._lock = threading.RLock()
        self._cv = threading.Condition(self._lock)
        self._ready_heap: list[tuple[int, Envelope]] = []  # (seq, envelope)
        self._scheduled_heap: list[tuple[float, int, Envelope]] = []  # (ready_at_ts, seq, envelope)
        self._unacked: dict[str, Envelope] = {}
        self._dead: list[dict] = []
        self._seq_counter = itertools.count(1)
        self._tag_counter = itertools.count(1)
        self._shutdown = False

    # ----------------------------- internal helpers ----------------------------- #
    def _push(self, envelope: Envelope, delay_seconds: float) -> None:
        now_ts = time.time()
        envelope.ready_at = now_ts + max(0.0, delay_seconds)
        seq = next(self._seq_counter)
        if envelope.ready_at <= now_ts:
            heapq.heappush(self._ready_heap, (seq, envelope))
        else:
            heapq.heappush(self._scheduled_heap, (envelope.ready_at, seq, envelope))
        self._cv.notify()

    def _promote_scheduled(self) -> None:
        now_ts = time.time()
        while self._scheduled_heap and self._scheduled_heap[0][0] <= now_ts:
            _, seq, envelope = heapq.heappop(self._scheduled_heap)
            heapq.heappush(self._ready_heap, (seq, envelope))

    def _await_next_ready(self, timeout: Optional[float]) -> None:
        if self._ready_heap:
            return
        if not self._scheduled_heap:
            self._cv.wait(timeout=timeout)
            return
        wait_time = max(0.0, self._scheduled_heap[0][0] - time.time())
        if timeout is not None:
            wait_time = min(wait_time, timeout)
        if wait_time > 0:
            self._cv.wait(timeout=wait_time)

    def _take_unacked(self, delivery: Delivery) -> Envelope | None:
        envelope = self._unacked.pop(delivery.tag, None)
        if envelope is None:
            logger.warning("Unknown or already settled delivery tag", queue=self.name, tag=delivery.tag)
        return envelope

    # ----------------------------- public API ----------------------------- #
    def publish(self, payload: Any, *, message_id: str, delay_seconds: float = 0.0) -> None:
        with self._lock:
            if self._shutdown:
                raise RuntimeError("Queue shutdown")
            if self.depth() >= self._max_in_memory:
                raise OverflowError("Queue capacity exceeded")
            self._push(Envelope(message_id=message_id, payload=payload), delay_seconds)
            if self.depth() >= self._warn_depth:
                logger.warning("Queue depth warning", queue=self.name, depth=self.depth())

    def deliver(self, *, block: bool = True, timeout: Optional[float] = None) -> Optional[Delivery]:
        """Hand the next ready message to a consumer. Returns None on timeout / empty."""
        end_time = None if timeout is None else time.time() + timeout
        with self._lock:
            while True:
                if self._shutdown:
                    return None
                self._promote_scheduled()
                if self._ready_heap:
                    _, envelope = heapq.heappop(self._ready_heap)
                    envelope.delivery_count += 1
                    tag = f"{self.name}:{next(self._tag_counter)}"
                    self._unacked[tag] = envelope
                    return Delivery(
                        tag=tag,
                        queue=self.name,
                        message_id=envelope.message_id,
                        payload=envelope.payload,
                        delivery_count=envelope.delivery_count,
                        enqueued_at=envelope.enqueued_at,
                    )
                if not block:
                    return None
                remaining = None if end_time is None else max(0.0, end_time - time.time())
                if end_time is not None and remaining == 0:
                    return None
                self._await_next_ready(remaining)

    def ack(self, delivery: Delivery) -> None:
        with self._lock:
            self._take_unacked(delivery)

    def reject(self, delivery: Delivery, *, requeue: bool = True, delay_seconds: float = 0.0) -> None:
        with self._lock:
            envelope = self._take_unacked(delivery)
            if envelope is None:
                return
            if requeue and not self._shutdown:
                self._push(envelope, delay_seconds)
            elif not requeue:
                logger.warning("Message rejected without requeue; dropped", queue=self.name, message_id=envelope.message_id)

    def dead_letter(self, delivery: Delivery, *, reason: str) -> None:
        with self._lock:
            envelope = self._take_unacked(delivery)
            if envelope is None:
                return
            self._dead.append({
                "message_id": envelope.message_id,
                "payload": envelope.payload,
                "delivery_count": envelope.delivery_count,
                "reason": reason,
                "dead_at": time.time(),
            })
            logger.warning("Message dead-lettered", queue=self.name, message_id=envelope.message_id, reason=reason)

    def dead_letters(self) -> list[dict]:
        with self._lock:
            return list(self._dead)

    def recover(self) -> int:
        """Requeue every unacked message (consumer crash / restart)."""
        with self._lock:
            envelopes = list(self._unacked.values())
            self._unacked.clear()
            for envelope in envelopes:
                self._push(envelope, 0.0)
            return len(envelopes)

    def shutdown(self) -> None:
        with self._lock:
            self._shutdown = True
            self._cv.notify_all()

    # ----------------------------- test utilities ----------------------------- #
    def purge(self) -> None:
        """Remove all ready, scheduled, unacked and dead messages (test isolation)."""
        with self._lock:
            self._ready_heap.clear()
            self._scheduled_heap.clear()
            self._unacked.clear()
            self._dead.clear()
            self._cv.notify_all()

    # ----------------------------- inspection ----------------------------- #
    def depth(self) -> int:
        return len(self._ready_heap) + len(self._scheduled_heap)

    def __len__(self) -> int:  # pragma: no cover
        return self.depth()

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "queue": self.name,
                "backend": "memory",
                "depth": self.depth(),
                "ready": len(self._ready_heap),
                "scheduled": len(self._scheduled_heap),
                "unacked": len(self._unacked),
                "dead_letters": len(self._dead),
                "shutdown": self._shutdown,
            }


__all__ = ["AckDelayQueue", "Delivery", "Envelope", "MessageChannel"]
