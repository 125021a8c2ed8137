"""Data models for persisted execution state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import Evidence


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ExecutionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class StepStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class WorkflowExecution(BaseModel):
    """One run of a template against a work item."""

    id: str = Field(default_factory=new_id)
    organization_id: str
    work_item_id: str
    template_id: str
    status: ExecutionStatus = ExecutionStatus.IN_PROGRESS
    # Legacy per-step blob: {stepId: {data, geolocation, notes, photos}}.
    execution_data: dict[str, Any] = Field(default_factory=dict)
    current_step_id: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_completed(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED


class ExecutionStep(BaseModel):
    """Live state of one template step within an execution."""

    id: str = Field(default_factory=new_id)
    execution_id: str
    organization_id: str
    work_item_id: str
    step_index: int
    title: str
    description: Optional[str] = None
    status: StepStatus = StepStatus.NOT_STARTED
    notes: Optional[str] = None
    evidence: Evidence = Field(default_factory=Evidence)
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def template_step_id(self) -> Optional[str]:
        return self.evidence.step_id

    @property
    def is_required(self) -> bool:
        return self.evidence.required
