from datetime import datetime

import pytest
from sqlalchemy import select

from eod_reports.exceptions import NotFoundError, UnsupportedReportKind
from eod_reports.jobs.queue import AckDelayQueue
from eod_reports.jobs.routing import QueueRouter
from eod_reports.models.db import MainTask, Task
from eod_reports.models.db.enums import MainTaskStatus, ReportKind, TaskStatus
from eod_reports.models.schemas.messages import QueueMessage
from eod_reports.services.fanout import FanOutParameters, run_fan_out, run_scheduling_cycle


def _drain(channel):
    messages = []
    while True:
        delivery = channel.deliver(block=False)
        if delivery is None:
            return messages
        messages.append(QueueMessage.from_wire(delivery.payload))
        channel.ack(delivery)


def test_one_task_and_message_per_subscriber(db_session, queue_router, subscriber_factory, main_task_factory):
    subs = [subscriber_factory(f"m{i}@example.com") for i in range(3)]
    subscriber_factory("summary@example.com", kind=ReportKind.REPORT_SUMMARY)
    main_task = main_task_factory()

    result = run_fan_out(db_session, queue_router, FanOutParameters(main_task.id, "REPORT"))

    assert result.task_count == 3
    assert result.queue_name == "daily-transaction-report"
    tasks = db_session.scalars(select(Task).order_by(Task.id)).all()
    assert [t.subscriber_email for t in tasks] == [s.email for s in subs]
    assert all(t.status == TaskStatus.QUEUED and t.queued_at is not None for t in tasks)
    assert all(t.main_task_id == main_task.id and t.kind == ReportKind.REPORT for t in tasks)
    assert len({t.reference for t in tasks}) == 3

    messages = _drain(queue_router.route(ReportKind.REPORT))
    assert [m.message_id for m in messages] == [t.reference for t in tasks] == result.references
    assert [m.subscriber_email for m in messages] == [s.email for s in subs]
    assert all(m.task_type == "REPORT" for m in messages)
    # timestamp is queued_at rendered as %Y-%m-%d %H:%M:%S
    datetime.strptime(messages[0].timestamp, "%Y-%m-%d %H:%M:%S")
    assert queue_router.route(ReportKind.REPORT_SUMMARY).depth() == 0


def test_wire_payload_uses_external_field_names(db_session, queue_router, subscriber_factory, main_task_factory):
    subscriber_factory("m@example.com")
    main_task = main_task_factory()
    run_fan_out(db_session, queue_router, FanOutParameters(main_task.id, "REPORT"))
    delivery = queue_router.route(ReportKind.REPORT).deliver(block=False)
    assert set(delivery.payload) == {"messageId", "taskType", "subscriberEmail", "timestamp"}


def test_empty_summary_subscriber_list_is_noop(db_session, queue_router, subscriber_factory, main_task_factory):
    subscriber_factory("only-report@example.com", kind=ReportKind.REPORT)
    main_task = main_task_factory()
    result = run_fan_out(db_session, queue_router, FanOutParameters(main_task.id, "REPORT_SUMMARY"))
    assert result.task_count == 0
    assert db_session.scalars(select(Task)).all() == []
    assert queue_router.route(ReportKind.REPORT_SUMMARY).depth() == 0


def test_unknown_kind_fails_before_any_side_effect(db_session, queue_router, subscriber_factory):
    subscriber_factory("m@example.com")
    # the main task does not exist either; the kind check comes first
    with pytest.raises(UnsupportedReportKind) as exc:
        run_fan_out(db_session, queue_router, FanOutParameters(999999, "WEEKLY"))
    assert "Unsupported report type: WEEKLY" in str(exc.value)
    assert isinstance(exc.value, ValueError)
    assert db_session.scalars(select(Task)).all() == []


def test_kind_without_route_is_unsupported(db_session, subscriber_factory, main_task_factory):
    subscriber_factory("m@example.com")
    main_task = main_task_factory()
    router = QueueRouter({ReportKind.REPORT_SUMMARY: AckDelayQueue("summary-only")})
    with pytest.raises(UnsupportedReportKind):
        run_fan_out(db_session, router, FanOutParameters(main_task.id, "REPORT"))
    assert db_session.scalars(select(Task)).all() == []


def test_missing_main_task_is_not_found(db_session, queue_router, subscriber_factory):
    subscriber_factory("m@example.com")
    with pytest.raises(NotFoundError):
        run_fan_out(db_session, queue_router, FanOutParameters(424242, "REPORT"))
    assert queue_router.route(ReportKind.REPORT).depth() == 0


def test_scheduling_cycle_completes_main_task(db_session, session_factory, queue_router, settings, subscriber_factory):
    subscriber_factory("r@example.com", kind=ReportKind.REPORT)
    subscriber_factory("s@example.com", kind=ReportKind.REPORT_SUMMARY)

    cycle = run_scheduling_cycle(session_factory, queue_router, settings)

    assert cycle.status == MainTaskStatus.COMPLETED
    assert [r.report_kind for r in cycle.fan_outs] == [ReportKind.REPORT, ReportKind.REPORT_SUMMARY]
    main_task = db_session.get(MainTask, cycle.main_task_id)
    assert main_task.status == MainTaskStatus.COMPLETED
    assert main_task.scheduled_at is not None
    assert queue_router.route(ReportKind.REPORT).depth() == 1
    assert queue_router.route(ReportKind.REPORT_SUMMARY).depth() == 1


def test_scheduling_cycle_with_failing_kind_marks_main_task_failed(db_session, session_factory, queue_router, settings, subscriber_factory):
    subscriber_factory("r@example.com", kind=ReportKind.REPORT)

    cycle = run_scheduling_cycle(session_factory, queue_router, settings, report_kinds=["REPORT", "BOGUS"])

    assert cycle.status == MainTaskStatus.FAILED
    assert "BOGUS" in cycle.errors
    assert cycle.fan_outs[0].task_count == 1
    assert db_session.get(MainTask, cycle.main_task_id).status == MainTaskStatus.FAILED
