"""Central Enum definitions for task lifecycle and subscription states.

These replace scattered string literals to keep DB models, queue payloads
and pipeline logic consistent.
"""
from __future__ import annotations
import enum


class MainTaskKind(str, enum.Enum):
    EOD = "EOD"
    EOM = "EOM"


class MainTaskStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ReportKind(str, enum.Enum):
    """Report a subscriber receives; also the kind of the Task that produces it."""
    REPORT = "REPORT"
    REPORT_SUMMARY = "REPORT_SUMMARY"


class TaskStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SubscriberStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})

__all__ = [
    "MainTaskKind",
    "MainTaskStatus",
    "ReportKind",
    "TaskStatus",
    "SubscriberStatus",
    "TERMINAL_TASK_STATUSES",
]
