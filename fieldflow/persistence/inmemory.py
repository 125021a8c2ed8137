"""In-memory implementation of the execution repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

from .models import ExecutionStatus, ExecutionStep, WorkflowExecution, utcnow
from .repository import ExecutionRepository, StepMutator


class InMemoryExecutionRepository(ExecutionRepository):
    """Store execution state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, WorkflowExecution] = {}
        self._steps: Dict[str, ExecutionStep] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    def _in_progress(
        self, work_item_id: str, organization_id: str
    ) -> WorkflowExecution | None:
        for execution in self._executions.values():
            if (
                execution.work_item_id == work_item_id
                and execution.organization_id == organization_id
                and execution.status == ExecutionStatus.IN_PROGRESS
            ):
                return execution
        return None

    def _owned(self, record: Any, organization_id: str) -> bool:
        return record is not None and record.organization_id == organization_id

    # ------------------------------------------------------------------
    async def create_execution(
        self, execution: WorkflowExecution, steps: list[ExecutionStep]
    ) -> tuple[WorkflowExecution, bool]:
        async with self._lock:
            existing = self._in_progress(execution.work_item_id, execution.organization_id)
            if existing is not None:
                return existing.model_copy(deep=True), False
            self._executions[execution.id] = execution.model_copy(deep=True)
            for step in steps:
                self._steps[step.id] = step.model_copy(deep=True)
            return execution.model_copy(deep=True), True

    async def get_execution(
        self, execution_id: str, organization_id: str
    ) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        if not self._owned(execution, organization_id):
            return None
        return execution.model_copy(deep=True)

    async def find_in_progress(
        self, work_item_id: str, organization_id: str
    ) -> WorkflowExecution | None:
        execution = self._in_progress(work_item_id, organization_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(
        self, organization_id: str, work_item_id: Optional[str] = None
    ) -> list[WorkflowExecution]:
        found = [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if e.organization_id == organization_id
            and (work_item_id is None or e.work_item_id == work_item_id)
        ]
        return sorted(found, key=lambda e: e.started_at, reverse=True)

    async def update_execution_data(
        self,
        execution_id: str,
        organization_id: str,
        current_step_id: Optional[str],
        execution_data: Optional[dict[str, Any]],
    ) -> WorkflowExecution | None:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if not self._owned(execution, organization_id):
                return None
            if current_step_id is not None:
                execution.current_step_id = current_step_id
            if execution_data is not None:
                execution.execution_data = dict(execution_data)
            execution.updated_at = utcnow()
            return execution.model_copy(deep=True)

    async def mark_execution_completed(
        self, execution_id: str, organization_id: str, completed_at: datetime
    ) -> WorkflowExecution | None:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if (
                not self._owned(execution, organization_id)
                or execution.status != ExecutionStatus.IN_PROGRESS
            ):
                return None
            execution.status = ExecutionStatus.COMPLETED
            execution.completed_at = completed_at
            execution.updated_at = completed_at
            return execution.model_copy(deep=True)

    async def delete_executions(self, work_item_id: str, organization_id: str) -> int:
        async with self._lock:
            doomed = [
                e.id
                for e in self._executions.values()
                if e.work_item_id == work_item_id and e.organization_id == organization_id
            ]
            for execution_id in doomed:
                del self._executions[execution_id]
            self._steps = {
                k: s for k, s in self._steps.items() if s.execution_id not in doomed
            }
            return len(doomed)

    async def get_step(self, step_id: str, organization_id: str) -> ExecutionStep | None:
        step = self._steps.get(step_id)
        if not self._owned(step, organization_id):
            return None
        return step.model_copy(deep=True)

    async def list_steps(
        self, execution_id: str, organization_id: str
    ) -> list[ExecutionStep]:
        steps = [
            s.model_copy(deep=True)
            for s in self._steps.values()
            if s.execution_id == execution_id and s.organization_id == organization_id
        ]
        return sorted(steps, key=lambda s: s.step_index)

    async def list_work_item_steps(
        self, work_item_id: str, organization_id: str
    ) -> list[ExecutionStep]:
        steps = [
            s.model_copy(deep=True)
            for s in self._steps.values()
            if s.work_item_id == work_item_id and s.organization_id == organization_id
        ]
        return sorted(steps, key=lambda s: s.step_index)

    async def update_step(
        self, step_id: str, organization_id: str, mutate: StepMutator
    ) -> ExecutionStep | None:
        async with self._lock:
            current = self._steps.get(step_id)
            if not self._owned(current, organization_id):
                return None
            working = current.model_copy(deep=True)
            mutate(working)
            self._steps[step_id] = working
            return working.model_copy(deep=True)
