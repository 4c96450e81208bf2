import time

import pytest

from eod_reports.jobs.queue import AckDelayQueue


def test_fifo_delivery_and_ack():
    q = AckDelayQueue("reports")
    q.publish({"n": 1}, message_id="a")
    q.publish({"n": 2}, message_id="b")
    first = q.deliver(block=False)
    second = q.deliver(block=False)
    assert (first.message_id, second.message_id) == ("a", "b")
    assert first.delivery_count == 1 and not first.redelivered
    assert q.snapshot()["unacked"] == 2
    q.ack(first)
    q.ack(second)
    snap = q.snapshot()
    assert snap["unacked"] == 0
    assert snap["depth"] == 0
    assert q.deliver(block=False) is None


def test_reject_with_requeue_redelivers():
    q = AckDelayQueue("reports")
    q.publish("payload", message_id="m1")
    d1 = q.deliver(block=False)
    q.reject(d1, requeue=True)
    d2 = q.deliver(block=False)
    assert d2.message_id == "m1"
    assert d2.delivery_count == 2
    assert d2.redelivered


def test_reject_with_delay_schedules_message():
    q = AckDelayQueue("reports")
    q.publish("payload", message_id="m1")
    d1 = q.deliver(block=False)
    q.reject(d1, requeue=True, delay_seconds=0.1)
    assert q.deliver(block=False) is None
    assert q.snapshot()["scheduled"] == 1
    d2 = q.deliver(timeout=2.0)
    assert d2 is not None and d2.delivery_count == 2


def test_reject_without_requeue_drops():
    q = AckDelayQueue("reports")
    q.publish("payload", message_id="m1")
    q.reject(q.deliver(block=False), requeue=False)
    assert q.depth() == 0
    assert q.snapshot()["unacked"] == 0


def test_dead_letter_records_reason():
    q = AckDelayQueue("reports")
    q.publish({"messageId": "m1"}, message_id="m1")
    delivery = q.deliver(block=False)
    q.dead_letter(delivery, reason="RuntimeError: boom")
    dead = q.dead_letters()
    assert len(dead) == 1
    assert dead[0]["message_id"] == "m1"
    assert dead[0]["reason"] == "RuntimeError: boom"
    assert dead[0]["delivery_count"] == 1
    assert q.snapshot()["unacked"] == 0
    # settling the same delivery twice is ignored
    q.ack(delivery)


def test_recover_requeues_unacked():
    q = AckDelayQueue("reports")
    q.publish("a", message_id="a")
    q.publish("b", message_id="b")
    q.deliver(block=False)
    q.deliver(block=False)
    assert q.recover() == 2
    assert q.depth() == 2
    again = q.deliver(block=False)
    assert again.delivery_count == 2


def test_blocking_deliver_times_out():
    q = AckDelayQueue("reports")
    start = time.time()
    assert q.deliver(timeout=0.05) is None
    assert time.time() - start < 1.0


def test_shutdown_and_capacity():
    q = AckDelayQueue("reports", max_in_memory=1)
    q.publish("a", message_id="a")
    with pytest.raises(OverflowError):
        q.publish("b", message_id="b")
    q.shutdown()
    with pytest.raises(RuntimeError):
        q.publish("c", message_id="c")
    assert q.deliver(block=False) is None
    assert q.snapshot()["shutdown"] is True


def test_purge_clears_everything():
    q = AckDelayQueue("reports")
    q.publish("a", message_id="a")
    q.publish("b", message_id="b", delay_seconds=60)
    q.dead_letter(q.deliver(block=False), reason="x")
    q.purge()
    snap = q.snapshot()
    assert (snap["depth"], snap["unacked"], snap["dead_letters"]) == (0, 0, 0)
