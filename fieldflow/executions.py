"""Execution lifecycle: start, reinitialize and legacy data updates."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .collaborators import (
    ActivityEntry,
    ActivityLogger,
    LoggingActivityLogger,
    TemplateProvider,
    WorkItem,
    WorkItemStore,
    record_activity,
)
from .errors import InvalidStateError, NotFoundError
from .materializer import StepMaterializer
from .persistence import ExecutionRepository, WorkflowExecution

logger = logging.getLogger(__name__)


class ExecutionManager:
    """Owns the one-in-progress-execution-per-work-item invariant."""

    def __init__(
        self,
        repository: ExecutionRepository,
        templates: TemplateProvider,
        work_items: WorkItemStore,
        materializer: StepMaterializer | None = None,
        activity: ActivityLogger | None = None,
    ) -> None:
        self._repository = repository
        self._templates = templates
        self._work_items = work_items
        self._materializer = materializer or StepMaterializer()
        self._activity = activity or LoggingActivityLogger()

    async def _load_work_item(self, work_item_id: str, organization_id: str) -> WorkItem:
        work_item = await self._work_items.get(work_item_id, organization_id)
        if work_item is None:
            raise NotFoundError(f"Work item {work_item_id} not found")
        return work_item

    async def start(
        self, work_item_id: str, organization_id: str, actor_id: Optional[str] = None
    ) -> WorkflowExecution:
        """Return the in-progress execution of a work item, creating it if needed."""
        work_item = await self._load_work_item(work_item_id, organization_id)
        if not work_item.template_id:
            raise NotFoundError(f"Work item {work_item_id} has no workflow template")

        existing = await self._repository.find_in_progress(work_item_id, organization_id)
        if existing is not None:
            logger.debug(
                f"Reusing execution {existing.id} for work_item_id={work_item_id}"
            )
            return existing

        template = await self._templates.get(work_item.template_id, organization_id)
        if template is None:
            raise NotFoundError(f"Workflow template {work_item.template_id} not found")

        execution = WorkflowExecution(
            organization_id=organization_id,
            work_item_id=work_item_id,
            template_id=template.id,
        )
        steps = self._materializer.materialize(
            template, execution.id, organization_id, work_item_id
        )
        stored, created = await self._repository.create_execution(execution, steps)
        if not created:
            logger.info(
                f"Concurrent start for work_item_id={work_item_id}; using execution {stored.id}"
            )
            return stored

        logger.info(
            f"Started execution {stored.id} for work_item_id={work_item_id} "
            f"with {len(steps)} step(s)"
        )
        await record_activity(
            self._activity,
            ActivityEntry(
                organization_id=organization_id,
                work_item_id=work_item_id,
                action_type="workflow_started",
                entity_type="workflow_execution",
                entity_id=stored.id,
                actor_id=actor_id,
                details={"templateId": template.id, "steps": len(steps)},
            ),
        )
        return stored

    async def reinitialize(
        self, work_item_id: str, organization_id: str, actor_id: Optional[str] = None
    ) -> WorkflowExecution:
        """Discard every execution of the work item and start a fresh one."""
        work_item = await self._load_work_item(work_item_id, organization_id)
        if not work_item.template_id:
            raise InvalidStateError(
                f"Work item {work_item_id} does not have a workflow template attached"
            )

        deleted = await self._repository.delete_executions(work_item_id, organization_id)
        if deleted:
            logger.info(
                f"Deleted {deleted} execution(s) for work_item_id={work_item_id} before reinitializing"
            )
        return await self.start(work_item_id, organization_id, actor_id=actor_id)

    async def get_executions(
        self, work_item_id: str, organization_id: str
    ) -> list[WorkflowExecution]:
        return await self._repository.list_executions(organization_id, work_item_id)

    async def update_execution(
        self,
        execution_id: str,
        organization_id: str,
        current_step_id: Optional[str] = None,
        execution_data: Optional[dict[str, Any]] = None,
    ) -> WorkflowExecution:
        """Update the legacy execution data and current step pointer."""
        execution = await self._repository.get_execution(execution_id, organization_id)
        if execution is None:
            raise NotFoundError(f"Workflow execution {execution_id} not found")
        if execution.is_completed:
            raise InvalidStateError(f"Workflow execution {execution_id} is already completed")

        updated = await self._repository.update_execution_data(
            execution_id, organization_id, current_step_id, execution_data
        )
        if updated is None:
            raise NotFoundError(f"Workflow execution {execution_id} not found")
        return updated
