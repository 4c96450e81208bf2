"""Tests for the Redis-backed channel using a mocked Redis client."""
import json
import threading
import time
from unittest.mock import MagicMock, patch

import pytest
import redis

from eod_reports.config import DispatchSettings
from eod_reports.jobs.queue import Delivery
from eod_reports.jobs.redis_queue import RedisQueue
from eod_reports.jobs.worker_pool import create_queue


@pytest.fixture
def mock_redis():
    client = MagicMock()
    client.ping.return_value = True
    client.llen.return_value = 0
    client.zcard.return_value = 0
    client.hlen.return_value = 0
    client.zrangebyscore.return_value = []
    client.lrange.return_value = []
    client.hgetall.return_value = {}
    client.blmove.return_value = None
    client.lmove.return_value = None
    # MULTI pipelines record their commands on the same mock
    client.pipeline.return_value = client
    with patch("eod_reports.jobs.redis_queue.redis.from_url", return_value=client):
        yield client


def _envelope(message_id="m1", delivery_count=0):
    return json.dumps({
        "message_id": message_id,
        "payload": {"messageId": message_id},
        "delivery_count": delivery_count,
        "enqueued_at": 1.0,
        "ready_at": 1.0,
    }).encode()


def test_publish_pushes_to_ready_list(mock_redis):
    q = RedisQueue("daily-transaction-report", key_prefix="eod")
    q.publish({"messageId": "m1"}, message_id="m1")
    key, raw = mock_redis.lpush.call_args[0]
    assert key == "eod:daily-transaction-report:ready"
    body = json.loads(raw)
    assert body["message_id"] == "m1"
    assert body["delivery_count"] == 0


def test_publish_with_delay_uses_scheduled_set(mock_redis):
    q = RedisQueue("reports", key_prefix="eod")
    q.publish({"messageId": "m1"}, message_id="m1", delay_seconds=30)
    mock_redis.zadd.assert_called_once()
    assert mock_redis.zadd.call_args[0][0] == "eod:reports:scheduled"
    mock_redis.lpush.assert_not_called()


def test_deliver_moves_through_pending_into_inflight(mock_redis):
    raw = _envelope("m1", delivery_count=1)
    mock_redis.blmove.return_value = raw
    q = RedisQueue("reports", key_prefix="eod")

    delivery = q.deliver(timeout=1.0)

    assert delivery is not None
    assert delivery.message_id == "m1"
    assert delivery.delivery_count == 2
    assert delivery.redelivered
    assert delivery.tag.startswith("redis:")
    args, kwargs = mock_redis.blmove.call_args
    assert args[:2] == ("eod:reports:ready", "eod:reports:pending")
    assert kwargs == {"src": "RIGHT", "dest": "LEFT"}
    mock_redis.pipeline.assert_called_with(transaction=True)
    mock_redis.lrem.assert_called_with("eod:reports:pending", 1, raw)
    key, tag, _ = mock_redis.hset.call_args[0]
    assert key == "eod:reports:inflight"
    assert tag == delivery.tag
    mock_redis.execute.assert_called_once()


def test_due_scheduled_messages_are_promoted(mock_redis):
    raw = _envelope("m2")
    mock_redis.zrangebyscore.return_value = [raw]
    mock_redis.zrem.return_value = 1
    q = RedisQueue("reports", key_prefix="eod")
    assert q.deliver(block=False) is None
    mock_redis.zrem.assert_called_with("eod:reports:scheduled", raw)
    mock_redis.lpush.assert_called_with("eod:reports:ready", raw)


def test_ack_and_reject_settle_inflight(mock_redis):
    mock_redis.blmove.return_value = _envelope("m1")
    q = RedisQueue("reports", key_prefix="eod")
    delivery = q.deliver(timeout=1.0)
    mock_redis.hget.return_value = json.dumps({"message_id": "m1", "payload": {}, "delivery_count": 1, "enqueued_at": 1.0})

    q.ack(delivery)
    mock_redis.hdel.assert_called_with("eod:reports:inflight", delivery.tag)

    q.reject(delivery, requeue=True)
    key, raw = mock_redis.lpush.call_args[0]
    assert key == "eod:reports:ready"
    assert json.loads(raw)["delivery_count"] == 1


def test_dead_letter_pushes_reason(mock_redis):
    mock_redis.blmove.return_value = _envelope("m1")
    q = RedisQueue("reports", key_prefix="eod")
    delivery = q.deliver(timeout=1.0)
    mock_redis.hget.return_value = json.dumps({"message_id": "m1", "payload": {}, "delivery_count": 5, "enqueued_at": 1.0})
    q.dead_letter(delivery, reason="boom")
    mock_redis.hdel.assert_called_with("eod:reports:inflight", delivery.tag)
    key, raw = mock_redis.lpush.call_args[0]
    assert key == "eod:reports:dead"
    assert json.loads(raw)["reason"] == "boom"


def test_delayed_reject_is_promoted_and_redelivered(mock_redis):
    mock_redis.blmove.return_value = _envelope("m1", delivery_count=0)
    q = RedisQueue("reports", key_prefix="eod")
    first = q.deliver(timeout=1.0)
    assert first.delivery_count == 1
    _, _, inflight_raw = mock_redis.hset.call_args[0]
    mock_redis.hget.return_value = inflight_raw

    q.reject(first, requeue=True, delay_seconds=30)

    mock_redis.hdel.assert_called_with("eod:reports:inflight", first.tag)
    key, mapping = mock_redis.zadd.call_args[0]
    assert key == "eod:reports:scheduled"
    ((member, ready_at),) = mapping.items()
    assert ready_at >= time.time() + 29

    # once due, the member is promoted to ready and handed out again
    mock_redis.zrangebyscore.return_value = [member]
    mock_redis.zrem.return_value = 1
    mock_redis.lmove.return_value = member
    second = q.deliver(block=False)

    mock_redis.lpush.assert_called_with("eod:reports:ready", member)
    assert second.message_id == "m1"
    assert second.delivery_count == 2
    assert second.redelivered
    assert second.tag != first.tag


def test_recover_requeues_inflight_and_pending_envelopes(mock_redis):
    pending_raw = _envelope("m-pending", delivery_count=0)
    mock_redis.lrange.return_value = [pending_raw]
    mock_redis.hgetall.return_value = {b"redis:abc": _envelope("m-inflight", delivery_count=1)}
    q = RedisQueue("reports", key_prefix="eod")

    assert q.recover() == 2

    mock_redis.lrange.assert_called_with("eod:reports:pending", 0, -1)
    mock_redis.lrem.assert_called_with("eod:reports:pending", 1, pending_raw)
    mock_redis.rpush.assert_called_with("eod:reports:ready", pending_raw)
    mock_redis.hdel.assert_called_with("eod:reports:inflight", b"redis:abc")
    key, raw = mock_redis.lpush.call_args[0]
    assert key == "eod:reports:ready"
    body = json.loads(raw)
    assert body["message_id"] == "m-inflight"
    # the count is bumped again only when the envelope is delivered
    assert body["delivery_count"] == 1


def test_envelope_stays_pending_when_inflight_registration_fails(mock_redis):
    raw = _envelope("m1")
    mock_redis.blmove.return_value = raw
    mock_redis.execute.side_effect = redis.ConnectionError("connection reset")
    q = RedisQueue("reports", key_prefix="eod")

    assert q.deliver(timeout=1.0) is None
    mock_redis.rpush.assert_not_called()

    mock_redis.execute.side_effect = None
    mock_redis.lrange.return_value = [raw]
    assert q.recover() == 1
    mock_redis.rpush.assert_called_with("eod:reports:ready", raw)


def test_blocked_consumer_does_not_stall_other_operations(mock_redis):
    entered = threading.Event()
    release = threading.Event()

    def slow_blmove(*args, **kwargs):
        if not entered.is_set():
            entered.set()
            release.wait(timeout=5)
        return None

    mock_redis.blmove.side_effect = slow_blmove
    q = RedisQueue("reports", key_prefix="eod")
    consumer = threading.Thread(target=q.deliver, kwargs={"timeout": 0.5}, daemon=True)
    consumer.start()
    try:
        assert entered.wait(timeout=2)
        started = time.perf_counter()
        q.ack(Delivery(tag="redis:other", queue="reports", message_id="m9", payload={}, delivery_count=1, enqueued_at=1.0))
        q.publish({"messageId": "m10"}, message_id="m10")
        assert q.snapshot()["backend"] == "redis"
        assert time.perf_counter() - started < 1.0
    finally:
        release.set()
        consumer.join(timeout=5)


def test_snapshot_reports_redis_backend(mock_redis):
    mock_redis.llen.return_value = 3
    mock_redis.zcard.return_value = 2
    q = RedisQueue("reports")
    snap = q.snapshot()
    assert snap["backend"] == "redis"
    assert snap["redis_active"] is True
    assert snap["ready"] == 3
    assert snap["scheduled"] == 2


def test_fallback_to_memory_when_redis_unreachable():
    with patch("eod_reports.jobs.redis_queue.redis.from_url", side_effect=redis.ConnectionError("down")):
        q = RedisQueue("reports")
        assert q.health_check() is False
        q.publish({"messageId": "m1"}, message_id="m1")
        snap = q.snapshot()
        assert snap["backend"] == "memory"
        assert snap["redis_active"] is False
        delivery = q.deliver(block=False)
        assert delivery is not None and delivery.message_id == "m1"
        q.ack(delivery)
        assert q.snapshot()["unacked"] == 0


def test_create_queue_uses_memory_when_redis_disabled():
    settings = DispatchSettings.from_config(use_redis=False)
    q = create_queue("reports", settings)
    assert q.snapshot()["backend"] == "memory"


def test_create_queue_prefers_redis_when_reachable(mock_redis):
    settings = DispatchSettings.from_config(use_redis=True)
    q = create_queue("reports", settings)
    assert isinstance(q, RedisQueue)
