"""
Wire payload exchanged between the fan-out engine and the dispatcher.

The JSON field names (``messageId``, ``taskType``, ``subscriberEmail``,
``timestamp``) are the external contract; Python code uses snake_case.
"""
from __future__ import annotations

import json
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from eod_reports.exceptions import MessageFormatError


class QueueMessage(BaseModel):
    """One per Task; ``message_id`` is the Task reference."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    message_id: str = Field(alias="messageId", min_length=1)
    task_type: str = Field(alias="taskType")
    subscriber_email: str = Field(alias="subscriberEmail")
    timestamp: str = Field(description="Task.queued_at formatted as %Y-%m-%d %H:%M:%S")

    @classmethod
    def for_task(cls, *, reference: str, task_type: str, subscriber_email: str, queued_at: datetime,
                 timestamp_format: str = "%Y-%m-%d %H:%M:%S") -> "QueueMessage":
        return cls(
            message_id=reference,
            task_type=task_type,
            subscriber_email=subscriber_email,
            timestamp=queued_at.strftime(timestamp_format),
        )

    def to_wire(self) -> dict[str, str]:
        return self.model_dump(by_alias=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_wire(cls, payload: "QueueMessage | dict | str | bytes") -> "QueueMessage":
        """Decode a payload as delivered by either queue backend."""
        if isinstance(payload, QueueMessage):
            return payload
        try:
            if isinstance(payload, (str, bytes)):
                payload = json.loads(payload)
            return cls.model_validate(payload)
        except (ValidationError, ValueError, TypeError) as e:
            raise MessageFormatError(f"Invalid queue message: {e}") from e


__all__ = ["QueueMessage"]
