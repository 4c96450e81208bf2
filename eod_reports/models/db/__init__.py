from .enums import MainTaskKind, MainTaskStatus, ReportKind, TaskStatus, SubscriberStatus
from .main_tasks import MainTask
from .tasks import Task
from .subscribers import Subscriber
from .transactions import Transaction

__all__ = [
    "MainTask",
    "Task",
    "Subscriber",
    "Transaction",
    "MainTaskKind",
    "MainTaskStatus",
    "ReportKind",
    "TaskStatus",
    "SubscriberStatus",
]
