"""Error taxonomy shared by the fan-out engine, dispatcher and pipelines."""
from __future__ import annotations


class ReportingError(Exception):
    """Base class for domain errors raised by the reporting core."""


class NotFoundError(ReportingError, LookupError):
    """A referenced MainTask or Task does not exist."""

    def __init__(self, entity: str, key: object):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} {key!r} not found")


class UnsupportedReportKind(ReportingError, ValueError):
    """Fan-out or a consumer received a report kind it cannot route."""

    def __init__(self, kind: object):
        self.kind = kind
        super().__init__(f"Unsupported report type: {kind}")


class InvalidTransition(ReportingError, ValueError):
    """A status change would skip or reverse the task lifecycle."""

    def __init__(self, entity: str, current: object, target: object):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"{entity} cannot move from {current} to {target}")


class TaskAlreadyClaimed(ReportingError):
    """Another worker holds the processing lease for this task."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Task {reference} is already being processed")


class MessageFormatError(ReportingError, ValueError):
    """A queue payload could not be decoded into a QueueMessage."""


__all__ = [
    "ReportingError",
    "NotFoundError",
    "UnsupportedReportKind",
    "InvalidTransition",
    "TaskAlreadyClaimed",
    "MessageFormatError",
]
