from .base import ResponseBase
from .messages import QueueMessage
from .tasks import TaskRead, MainTaskRead, SchedulingTrigger

__all__ = [
    "ResponseBase",
    "QueueMessage",
    "TaskRead",
    "MainTaskRead",
    "SchedulingTrigger",
]
