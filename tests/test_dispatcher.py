import uuid
from unittest.mock import patch

import pytest

from eod_reports.exceptions import MessageFormatError, NotFoundError, TaskAlreadyClaimed, UnsupportedReportKind
from eod_reports.jobs.dispatcher import ACKED, DEAD_LETTERED, DUPLICATE, REQUEUED, ReportDispatcher
from eod_reports.models.db import Task
from eod_reports.models.db.enums import ReportKind, TaskStatus
from eod_reports.models.schemas.messages import QueueMessage
from eod_reports.services.fanout import FanOutParameters, run_fan_out
from eod_reports.services.task_state import claim_task
from eod_reports.utils.time import utc_now


class ExplodingRunner:
    def __init__(self):
        self.calls = 0

    def run(self, kind, params):
        self.calls += 1
        raise RuntimeError("boom")


@pytest.fixture()
def report_channel(queue_router):
    return queue_router.route(ReportKind.REPORT)


@pytest.fixture()
def dispatcher(report_channel, runner, session_factory, settings):
    return ReportDispatcher(ReportKind.REPORT, report_channel, runner, session_factory=session_factory, settings=settings)


@pytest.fixture()
def queued_task(db_session, queue_router, subscriber_factory, main_task_factory, transaction_factory):
    subscriber = subscriber_factory("alice@shop.com")
    transaction_factory(subscriber.email, "12.00")
    transaction_factory(subscriber.email, "8.25")
    main_task = main_task_factory()
    result = run_fan_out(db_session, queue_router, FanOutParameters(main_task.id, "REPORT"))
    return db_session.query(Task).filter_by(reference=result.references[0]).one()


def test_successful_delivery_runs_pipeline_and_acks(db_session, dispatcher, report_channel, queued_task, sink):
    outcome = dispatcher.handle(report_channel.deliver(block=False))

    assert outcome.action == ACKED
    assert outcome.reference == queued_task.reference
    assert report_channel.snapshot()["unacked"] == 0
    assert report_channel.depth() == 0
    db_session.refresh(queued_task)
    assert queued_task.status == TaskStatus.COMPLETED
    assert queued_task.attempt_count == 1
    assert queued_task.lease_expires_at is None
    assert sink.path_for(queued_task.report_filename).exists()


def test_unknown_reference_is_not_found_and_requeued(dispatcher, report_channel):
    message = QueueMessage.for_task(
        reference=str(uuid.uuid4()), task_type="REPORT", subscriber_email="ghost@shop.com", queued_at=utc_now()
    )
    report_channel.publish(message.to_wire(), message_id=message.message_id)

    outcome = dispatcher.handle(report_channel.deliver(block=False))

    assert outcome.action == REQUEUED
    assert isinstance(outcome.error, NotFoundError)
    assert outcome.task_id is None
    assert report_channel.depth() == 1
    redelivered = report_channel.deliver(block=False)
    assert redelivered.message_id == message.message_id
    assert redelivered.redelivered


def test_duplicate_delivery_for_finished_task_is_dropped(db_session, dispatcher, report_channel, queued_task):
    delivery = report_channel.deliver(block=False)
    # simulate the broker handing out the same message twice
    report_channel.publish(delivery.payload, message_id=delivery.message_id)
    assert dispatcher.handle(delivery).action == ACKED

    outcome = dispatcher.handle(report_channel.deliver(block=False))
    assert outcome.action == DUPLICATE
    assert report_channel.depth() == 0
    assert report_channel.snapshot()["unacked"] == 0
    db_session.refresh(queued_task)
    assert queued_task.attempt_count == 1


def test_task_leased_by_another_worker_is_requeued(db_session, dispatcher, report_channel, queued_task):
    assert claim_task(db_session, queued_task, lease_seconds=600) is True

    outcome = dispatcher.handle(report_channel.deliver(block=False))

    assert outcome.action == REQUEUED
    assert isinstance(outcome.error, TaskAlreadyClaimed)
    assert report_channel.depth() == 1
    db_session.refresh(queued_task)
    assert queued_task.status == TaskStatus.PROCESSING
    assert queued_task.attempt_count == 1


def test_failures_requeue_then_dead_letter(db_session, report_channel, session_factory, settings, queued_task):
    runner = ExplodingRunner()
    dispatcher = ReportDispatcher(ReportKind.REPORT, report_channel, runner, session_factory=session_factory, settings=settings)

    for attempt in range(1, settings.max_deliveries):
        outcome = dispatcher.handle(report_channel.deliver(block=False))
        assert outcome.action == REQUEUED
        db_session.refresh(queued_task)
        # the failed attempt releases its lease but never moves the task backwards
        assert queued_task.status == TaskStatus.PROCESSING
        assert queued_task.lease_expires_at is None
        assert queued_task.attempt_count == attempt
        assert "RuntimeError: boom" in queued_task.last_error

    outcome = dispatcher.handle(report_channel.deliver(block=False))
    assert outcome.action == DEAD_LETTERED
    assert runner.calls == settings.max_deliveries
    assert report_channel.depth() == 0
    assert report_channel.snapshot()["unacked"] == 0
    dead = report_channel.dead_letters()
    assert len(dead) == 1 and dead[0]["message_id"] == queued_task.reference
    db_session.refresh(queued_task)
    assert queued_task.status == TaskStatus.FAILED
    assert queued_task.failed_at is not None


def test_message_for_other_kind_is_dead_lettered_on_first_delivery(dispatcher, report_channel):
    message = QueueMessage.for_task(
        reference=str(uuid.uuid4()), task_type="REPORT_SUMMARY", subscriber_email="a@shop.com", queued_at=utc_now()
    )
    report_channel.publish(message.to_wire(), message_id=message.message_id)

    delivery = report_channel.deliver(block=False)
    assert delivery.delivery_count == 1
    outcome = dispatcher.handle(delivery)

    assert outcome.action == DEAD_LETTERED
    assert isinstance(outcome.error, UnsupportedReportKind)
    assert report_channel.depth() == 0
    assert report_channel.snapshot()["unacked"] == 0
    assert [d["message_id"] for d in report_channel.dead_letters()] == [message.message_id]


def test_unknown_task_type_is_dead_lettered_on_first_delivery(dispatcher, report_channel):
    message = QueueMessage.for_task(
        reference=str(uuid.uuid4()), task_type="BOGUS", subscriber_email="a@shop.com", queued_at=utc_now()
    )
    report_channel.publish(message.to_wire(), message_id=message.message_id)

    outcome = dispatcher.handle(report_channel.deliver(block=False))

    assert outcome.action == DEAD_LETTERED
    assert isinstance(outcome.error, UnsupportedReportKind)
    assert report_channel.depth() == 0
    assert len(report_channel.dead_letters()) == 1


def test_malformed_payload_is_dead_lettered_on_first_delivery(dispatcher, report_channel):
    report_channel.publish("not json", message_id="junk")

    outcome = dispatcher.handle(report_channel.deliver(block=False))

    assert outcome.action == DEAD_LETTERED
    assert isinstance(outcome.error, MessageFormatError)
    assert report_channel.depth() == 0
    assert report_channel.snapshot()["unacked"] == 0
    dead = report_channel.dead_letters()
    assert dead[0]["message_id"] == "junk"
    assert "MessageFormatError" in dead[0]["reason"]


def test_delivery_is_requeued_when_failure_bookkeeping_fails(db_session, report_channel, session_factory, settings, queued_task):
    dispatcher = ReportDispatcher(ReportKind.REPORT, report_channel, ExplodingRunner(), session_factory=session_factory, settings=settings)

    with patch("eod_reports.jobs.dispatcher.release_claim", side_effect=RuntimeError("db down")):
        outcome = dispatcher.handle(report_channel.deliver(block=False))

    assert outcome.action == REQUEUED
    assert report_channel.snapshot()["unacked"] == 0
    assert report_channel.depth() == 1
    assert report_channel.deliver(block=False).message_id == queued_task.reference


def test_delivery_is_dead_lettered_when_final_bookkeeping_fails(db_session, report_channel, session_factory, settings, queued_task):
    dispatcher = ReportDispatcher(ReportKind.REPORT, report_channel, ExplodingRunner(), session_factory=session_factory, settings=settings)
    for _ in range(1, settings.max_deliveries):
        assert dispatcher.handle(report_channel.deliver(block=False)).action == REQUEUED

    with patch("eod_reports.jobs.dispatcher.mark_failed", side_effect=RuntimeError("db down")):
        outcome = dispatcher.handle(report_channel.deliver(block=False))

    assert outcome.action == DEAD_LETTERED
    assert report_channel.snapshot()["unacked"] == 0
    assert report_channel.depth() == 0
    assert len(report_channel.dead_letters()) == 1
