"""Row conversion shared by the SQL repository backends."""

from __future__ import annotations

import json
from typing import Any, Mapping

from ..contracts import Evidence
from .models import ExecutionStep, WorkflowExecution

EXECUTION_COLUMNS = (
    "id, organization_id, work_item_id, template_id, status, execution_data, "
    "current_step_id, started_at, completed_at, updated_at"
)
STEP_COLUMNS = (
    "id, execution_id, organization_id, work_item_id, step_index, title, description, "
    "status, notes, evidence, completed_at, completed_by, updated_at"
)


def _json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def dump_json(value: Any) -> str:
    return json.dumps(value, default=str)


def execution_from_row(row: Mapping[str, Any]) -> WorkflowExecution:
    return WorkflowExecution(
        id=row["id"],
        organization_id=row["organization_id"],
        work_item_id=row["work_item_id"],
        template_id=row["template_id"],
        status=row["status"],
        execution_data=_json(row["execution_data"]) or {},
        current_step_id=row["current_step_id"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        updated_at=row["updated_at"],
    )


def step_from_row(row: Mapping[str, Any]) -> ExecutionStep:
    return ExecutionStep(
        id=row["id"],
        execution_id=row["execution_id"],
        organization_id=row["organization_id"],
        work_item_id=row["work_item_id"],
        step_index=row["step_index"],
        title=row["title"],
        description=row["description"],
        status=row["status"],
        notes=row["notes"],
        evidence=Evidence.model_validate(_json(row["evidence"]) or {}),
        completed_at=row["completed_at"],
        completed_by=row["completed_by"],
        updated_at=row["updated_at"],
    )
