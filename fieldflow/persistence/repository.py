"""Repository abstraction for execution state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from .models import ExecutionStep, WorkflowExecution

StepMutator = Callable[[ExecutionStep], None]


class ExecutionRepository(Protocol):
    """Protocol for execution persistence backends.

    Every method that changes state is atomic with respect to concurrent
    callers of the same backend.
    """

    async def create_execution(
        self, execution: WorkflowExecution, steps: list[ExecutionStep]
    ) -> tuple[WorkflowExecution, bool]:
        """Persist an execution and its steps, or return the in-progress one.

        Returns the stored execution and ``True`` when it was created by this
        call. When another in-progress execution exists for the same work
        item, nothing is written and that execution is returned with
        ``False``.
        """

    async def get_execution(
        self, execution_id: str, organization_id: str
    ) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def find_in_progress(
        self, work_item_id: str, organization_id: str
    ) -> WorkflowExecution | None:
        """Return the in-progress execution of a work item, if any."""

    async def list_executions(
        self, organization_id: str, work_item_id: Optional[str] = None
    ) -> list[WorkflowExecution]:
        """List executions, newest first."""

    async def update_execution_data(
        self,
        execution_id: str,
        organization_id: str,
        current_step_id: Optional[str],
        execution_data: Optional[dict[str, Any]],
    ) -> WorkflowExecution | None:
        """Replace the legacy execution data and current step pointer."""

    async def mark_execution_completed(
        self, execution_id: str, organization_id: str, completed_at: datetime
    ) -> WorkflowExecution | None:
        """Transition in_progress -> completed.

        Returns ``None`` when no row changed, i.e. the execution is missing
        or was already completed by someone else.
        """

    async def delete_executions(self, work_item_id: str, organization_id: str) -> int:
        """Delete all executions of a work item together with their steps."""

    async def get_step(self, step_id: str, organization_id: str) -> ExecutionStep | None:
        """Retrieve a step by id."""

    async def list_steps(
        self, execution_id: str, organization_id: str
    ) -> list[ExecutionStep]:
        """Steps of an execution ordered by step index."""

    async def list_work_item_steps(
        self, work_item_id: str, organization_id: str
    ) -> list[ExecutionStep]:
        """Steps of every execution of a work item ordered by step index."""

    async def update_step(
        self, step_id: str, organization_id: str, mutate: StepMutator
    ) -> ExecutionStep | None:
        """Atomically load a step, apply ``mutate`` and store it.

        Exceptions raised by ``mutate`` abort the update and propagate.
        Returns ``None`` when the step does not exist.
        """
