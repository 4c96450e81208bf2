"""Redis-backed at-least-once message channel.

Features:
- Survives application restarts (messages, retries and dead letters persist).
- Manual ack / reject with optional delayed requeue.
- Delivery counter carried in the envelope (retry budget).
- Thread-safe: consumers block on Redis without holding the channel lock.
- Fallback to the in-memory channel if Redis is unavailable.

Data structures in Redis (``<prefix>:<queue>:...``):
 1. List ``ready`` - serialized envelopes ready for delivery (LPUSH / RIGHT pop = FIFO)
 2. Sorted Set ``scheduled`` - score=ready_at_ts, members=serialized envelopes
 3. List ``pending`` - envelopes popped from ``ready`` but not yet registered in flight
 4. Hash ``inflight`` - delivery tag -> envelope, until ack / reject
 5. List ``dead`` - dead-lettered envelopes with reason

On publish:
  - No delay -> push to ready list, else scheduled sorted set.
On deliver:
  - Promote any scheduled items whose ready_at <= now to the ready list.
  - BLMOVE ready -> pending, then one MULTI drops the pending entry and
    registers the envelope in flight. An envelope is always in exactly one
    of ready / scheduled / pending / inflight / dead, so ``recover()`` can
    requeue whatever a crashed consumer left behind.
On ack / reject / dead-letter:
  - The in-flight entry is removed and the envelope requeued or dead-lettered
    in the same MULTI.
"""
from __future__ import annotations

import json
import threading
import time
import uuid
from typing import Any, Optional

import redis

from eod_reports.jobs.queue import AckDelayQueue, Delivery
from eod_reports.utils import get_logger

logger = get_logger(__name__)

_POLL_SLICE_SECONDS = 1.0


class RedisQueue:
    def __init__(
        self,
        name: str,
        *,
        redis_url: str = "redis://localhost:6379/0",
        key_prefix: str = "eod",
        warn_depth: int = 1000,
        max_in_memory: int = 50000,
    ) -> None:
        self.name = name
        self._redis_url = redis_url
        self._ready_key = f"{key_prefix}:{name}:ready"
        self._scheduled_key = f"{key_prefix}:{name}:scheduled"
        self._pending_key = f"{key_prefix}:{name}:pending"
        self._inflight_key = f"{key_prefix}:{name}:inflight"
        self._dead_key = f"{key_prefix}:{name}:dead"
        self._warn_depth = warn_depth

        # In-memory fallback channel
        self._fallback_queue = AckDelayQueue(name, warn_depth=warn_depth, max_in_memory=max_in_memory)

        self._redis_client: Optional[redis.Redis] = None
        # guards the connection state only; Redis commands run outside it
        self._lock = threading.Lock()
        self._is_redis_active = False
        self._shutdown = False
        self._init_redis_client()

    def _init_redis_client(self) -> None:
        """Initialize Redis client and test connection."""
        try:
            self._redis_client = redis.from_url(self._redis_url)
            self._redis_client.ping()
            self._is_redis_active = True
            logger.info("Connected to Redis successfully", queue=self.name, url=self._redis_url)
        except (redis.RedisError, ConnectionError) as e:
            self._is_redis_active = False
            self._redis_client = None
            logger.warning("Failed to connect to Redis, using in-memory fallback queue", queue=self.name, error=str(e))

    def health_check(self) -> bool:
        """Check if Redis is available and update status accordingly."""
        with self._lock:
            if self._redis_client is None:
                self._init_redis_client()
                return self._is_redis_active
            try:
                self._redis_client.ping()
                if not self._is_redis_active:
                    logger.info("Redis connection restored", queue=self.name)
                self._is_redis_active = True
                return True
            except (redis.RedisError, ConnectionError) as e:
                if self._is_redis_active:
                    logger.warning("Redis connection lost, using in-memory fallback queue", queue=self.name, error=str(e))
                self._is_redis_active = False
                return False

    def _mark_inactive(self) -> None:
        with self._lock:
            self._is_redis_active = False

    def _client(self) -> Optional[redis.Redis]:
        """The live client, or None when the fallback channel must be used."""
        if not self.health_check():
            return None
        return self._redis_client

    # ----------------------------- serialization ----------------------------- #
    @staticmethod
    def _serialize(envelope: dict[str, Any]) -> str:
        return json.dumps(envelope, sort_keys=True)

    @staticmethod
    def _deserialize(raw: Any) -> dict[str, Any]:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
        return json.loads(text)

    def _is_fallback_delivery(self, delivery: Delivery) -> bool:
        return not delivery.tag.startswith("redis:")

    def _promote_scheduled(self, client: redis.Redis) -> None:
        """Move scheduled envelopes that are due to the ready list."""
        due = client.zrangebyscore(self._scheduled_key, 0, time.time())
        promoted = 0
        for raw in due or []:
            # zrem first so two consumers never promote the same member
            if client.zrem(self._scheduled_key, raw):
                client.lpush(self._ready_key, raw)
                promoted += 1
        if promoted:
            logger.debug("Promoted scheduled messages to ready list", queue=self.name, count=promoted)

    def _push(self, target: Any, envelope: dict[str, Any], delay_seconds: float) -> None:
        """Queue ``envelope`` on ``target`` (a client or a MULTI pipeline)."""
        envelope["ready_at"] = time.time() + max(0.0, delay_seconds)
        serialized = self._serialize(envelope)
        if delay_seconds > 0:
            target.zadd(self._scheduled_key, {serialized: envelope["ready_at"]})
        else:
            target.lpush(self._ready_key, serialized)

    def _register_inflight(self, client: redis.Redis, raw: Any) -> Delivery:
        envelope = self._deserialize(raw)
        envelope["delivery_count"] = int(envelope.get("delivery_count", 0)) + 1
        tag = f"redis:{uuid.uuid4().hex}"
        pipe = client.pipeline(transaction=True)
        pipe.lrem(self._pending_key, 1, raw)
        pipe.hset(self._inflight_key, tag, self._serialize(envelope))
        pipe.execute()
        return Delivery(
            tag=tag,
            queue=self.name,
            message_id=envelope["message_id"],
            payload=envelope["payload"],
            delivery_count=envelope["delivery_count"],
            enqueued_at=float(envelope.get("enqueued_at", time.time())),
        )

    def _inflight_envelope(self, client: redis.Redis, delivery: Delivery) -> dict[str, Any] | None:
        raw = client.hget(self._inflight_key, delivery.tag)
        if raw is None:
            logger.warning("Unknown or already settled delivery tag", queue=self.name, tag=delivery.tag)
            return None
        return self._deserialize(raw)

    def _settled_client(self) -> redis.Redis:
        # Redis deliveries can only be settled on Redis
        assert self._redis_client is not None
        return self._redis_client

    # ----------------------------- public API ----------------------------- #
    def publish(self, payload: Any, *, message_id: str, delay_seconds: float = 0.0) -> None:
        if self._shutdown:
            raise RuntimeError("Queue shutdown")
        client = self._client()
        if client is None:
            logger.warning("Redis unavailable, publishing to in-memory queue", queue=self.name)
            self._fallback_queue.publish(payload, message_id=message_id, delay_seconds=delay_seconds)
            return
        envelope = {
            "message_id": message_id,
            "payload": payload,
            "delivery_count": 0,
            "enqueued_at": time.time(),
        }
        try:
            self._push(client, envelope, delay_seconds)
        except redis.RedisError as e:
            logger.error("Redis error during publish", queue=self.name, error=str(e))
            self._mark_inactive()
            self._fallback_queue.publish(payload, message_id=message_id, delay_seconds=delay_seconds)
            return
        depth = self.depth()
        if depth >= self._warn_depth:
            logger.warning("Queue depth warning", queue=self.name, depth=depth)

    def deliver(self, *, block: bool = True, timeout: Optional[float] = None) -> Optional[Delivery]:
        end_time = None if timeout is None else time.time() + timeout
        while not self._shutdown:
            remaining = None if end_time is None else max(0.0, end_time - time.time())
            client = self._client()
            if client is None:
                return self._fallback_queue.deliver(block=block, timeout=remaining)
            try:
                self._promote_scheduled(client)
                if block:
                    if remaining == 0:
                        return None
                    wait = _POLL_SLICE_SECONDS if remaining is None else min(_POLL_SLICE_SECONDS, remaining)
                    raw = client.blmove(self._ready_key, self._pending_key, wait, src="RIGHT", dest="LEFT")
                else:
                    raw = client.lmove(self._ready_key, self._pending_key, src="RIGHT", dest="LEFT")
                if raw is None:
                    if not block:
                        return None
                    continue
                return self._register_inflight(client, raw)
            except redis.RedisError as e:
                logger.error("Redis error during deliver", queue=self.name, error=str(e))
                self._mark_inactive()
                return self._fallback_queue.deliver(block=False)
        return None

    def ack(self, delivery: Delivery) -> None:
        if self._is_fallback_delivery(delivery):
            self._fallback_queue.ack(delivery)
            return
        if not self._settled_client().hdel(self._inflight_key, delivery.tag):
            logger.warning("Unknown or already settled delivery tag", queue=self.name, tag=delivery.tag)

    def reject(self, delivery: Delivery, *, requeue: bool = True, delay_seconds: float = 0.0) -> None:
        if self._is_fallback_delivery(delivery):
            self._fallback_queue.reject(delivery, requeue=requeue, delay_seconds=delay_seconds)
            return
        client = self._settled_client()
        envelope = self._inflight_envelope(client, delivery)
        if envelope is None:
            return
        pipe = client.pipeline(transaction=True)
        pipe.hdel(self._inflight_key, delivery.tag)
        if requeue:
            self._push(pipe, envelope, delay_seconds)
        pipe.execute()
        if not requeue:
            logger.warning("Message rejected without requeue; dropped", queue=self.name, message_id=envelope["message_id"])

    def dead_letter(self, delivery: Delivery, *, reason: str) -> None:
        if self._is_fallback_delivery(delivery):
            self._fallback_queue.dead_letter(delivery, reason=reason)
            return
        client = self._settled_client()
        envelope = self._inflight_envelope(client, delivery)
        if envelope is None:
            return
        envelope["reason"] = reason
        envelope["dead_at"] = time.time()
        pipe = client.pipeline(transaction=True)
        pipe.hdel(self._inflight_key, delivery.tag)
        pipe.lpush(self._dead_key, self._serialize(envelope))
        pipe.execute()
        logger.warning("Message dead-lettered", queue=self.name, message_id=envelope["message_id"], reason=reason)

    def dead_letters(self) -> list[dict]:
        client = self._client()
        if client is None:
            return self._fallback_queue.dead_letters()
        return [self._deserialize(raw) for raw in client.lrange(self._dead_key, 0, -1) or []]

    def recover(self) -> int:
        """Requeue envelopes a consumer popped or held in flight before dying.

        Assumes no other process is consuming the same queue while it runs.
        """
        recovered = self._fallback_queue.recover()
        client = self._client()
        if client is None:
            return recovered
        for raw in client.lrange(self._pending_key, 0, -1) or []:
            pipe = client.pipeline(transaction=True)
            pipe.lrem(self._pending_key, 1, raw)
            # back on the consuming end so it is delivered next
            pipe.rpush(self._ready_key, raw)
            pipe.execute()
            recovered += 1
        inflight = client.hgetall(self._inflight_key) or {}
        for tag, raw in inflight.items():
            pipe = client.pipeline(transaction=True)
            pipe.hdel(self._inflight_key, tag)
            self._push(pipe, self._deserialize(raw), 0.0)
            pipe.execute()
            recovered += 1
        if recovered:
            logger.info("Recovered in-flight messages", queue=self.name, count=recovered)
        return recovered

    def shutdown(self) -> None:
        with self._lock:
            self._shutdown = True
        self._fallback_queue.shutdown()

    def purge(self) -> None:
        """Remove all queued, in-flight and dead messages (for testing)."""
        self._fallback_queue.purge()
        client = self._client()
        if client is None:
            return
        try:
            client.delete(self._ready_key, self._scheduled_key, self._pending_key, self._inflight_key, self._dead_key)
            logger.info("Redis queue purged", queue=self.name)
        except redis.RedisError as e:
            logger.error("Error purging Redis queue", queue=self.name, error=str(e))
            self._mark_inactive()

    @staticmethod
    def _safe_int(value: Any) -> int:
        if value is None:
            return 0
        try:
            if isinstance(value, bytes):
                value = value.decode("utf-8")
            return int(value)
        except (ValueError, TypeError) as e:
            logger.warning("Failed to convert Redis response to int", value_type=type(value).__name__, error=str(e))
            return 0

    def depth(self) -> int:
        client = self._client()
        if client is None:
            return self._fallback_queue.depth()
        try:
            ready = self._safe_int(client.llen(self._ready_key))
            scheduled = self._safe_int(client.zcard(self._scheduled_key))
            return ready + scheduled
        except redis.RedisError as e:
            logger.error("Error getting queue depth", queue=self.name, error=str(e))
            self._mark_inactive()
            return self._fallback_queue.depth()

    def __len__(self) -> int:
        return self.depth()

    def _fallback_snapshot(self) -> dict:
        snapshot = self._fallback_queue.snapshot()
        snapshot["redis_active"] = False
        return snapshot

    def snapshot(self) -> dict:
        client = self._client()
        if client is None:
            return self._fallback_snapshot()
        try:
            ready = self._safe_int(client.llen(self._ready_key))
            scheduled = self._safe_int(client.zcard(self._scheduled_key))
            pending = self._safe_int(client.llen(self._pending_key))
            return {
                "queue": self.name,
                "backend": "redis",
                "depth": ready + scheduled,
                "ready": ready,
                "scheduled": scheduled,
                "unacked": self._safe_int(client.hlen(self._inflight_key)) + pending,
                "dead_letters": self._safe_int(client.llen(self._dead_key)),
                "shutdown": self._shutdown,
                "redis_active": True,
            }
        except redis.RedisError as e:
            logger.error("Error getting queue snapshot", queue=self.name, error=str(e))
            self._mark_inactive()
            return self._fallback_snapshot()


__all__ = ["RedisQueue"]
