"""
Pydantic schemas for task inspection and manual scheduling triggers.
"""
from datetime import datetime
from typing import Optional, List, Dict
from pydantic import BaseModel, Field, ConfigDict

from eod_reports.models.db.enums import MainTaskKind, MainTaskStatus, ReportKind, TaskStatus

class TaskRead(BaseModel):
    """Operator view of one subscriber task."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    reference: str
    main_task_id: int
    kind: ReportKind
    status: TaskStatus
    subscriber_email: str
    queued_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    attempt_count: int = 0
    last_error: Optional[str] = None
    report_filename: Optional[str] = None

class MainTaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: MainTaskKind
    status: MainTaskStatus
    scheduled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    task_counts: Dict[str, int] = Field(default_factory=dict, description="Tasks per status")

class SchedulingTrigger(BaseModel):
    """Manual trigger for one scheduling cycle."""
    kind: MainTaskKind = Field(MainTaskKind.EOD, description="Main task kind to create")
    report_types: Optional[List[str]] = Field(
        None, description="Report kinds to fan out; defaults to the configured scheduled kinds"
    )
