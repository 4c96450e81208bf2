"""Report kind -> queue channel routing shared by fan-out and the consumer pools."""
from __future__ import annotations

from typing import Iterator, Mapping

from eod_reports.exceptions import UnsupportedReportKind
from eod_reports.jobs.queue import MessageChannel
from eod_reports.models.db.enums import ReportKind


def parse_report_kind(value: object) -> ReportKind:
    """Strict conversion of a job parameter / message field to a ReportKind."""
    if isinstance(value, ReportKind):
        return value
    try:
        return ReportKind(str(value))
    except ValueError:
        raise UnsupportedReportKind(value) from None


class QueueRouter:
    """Holds one channel per report kind; unknown kinds fail fast."""

    def __init__(self, channels: Mapping[ReportKind | str, MessageChannel]):
        self._channels: dict[ReportKind, MessageChannel] = {
            parse_report_kind(kind): channel for kind, channel in channels.items()
        }

    def route(self, kind: ReportKind | str) -> MessageChannel:
        report_kind = parse_report_kind(kind)
        channel = self._channels.get(report_kind)
        if channel is None:
            raise UnsupportedReportKind(report_kind.value)
        return channel

    def items(self) -> Iterator[tuple[ReportKind, MessageChannel]]:
        return iter(self._channels.items())

    def snapshot(self) -> dict[str, dict]:
        return {kind.value: channel.snapshot() for kind, channel in self._channels.items()}

    def shutdown(self) -> None:
        for channel in self._channels.values():
            channel.shutdown()


__all__ = ["QueueRouter", "parse_report_kind"]
