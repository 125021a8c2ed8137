"""Detection and execution of workflow completion."""

from __future__ import annotations

import logging
from typing import Optional

from .callbacks import CallbackContext, CallbackDispatcher
from .collaborators import (
    ActivityEntry,
    ActivityLogger,
    LoggingActivityLogger,
    TemplateProvider,
    WorkItemStore,
    record_activity,
)
from .errors import NotFoundError
from .persistence import ExecutionRepository, ExecutionStep, StepStatus, WorkflowExecution
from .persistence.models import utcnow
from .resolution import FieldResolver

logger = logging.getLogger(__name__)

WORK_ITEM_COMPLETED = "Completed"


def all_required_completed(steps: list[ExecutionStep]) -> bool:
    """True when every required step is completed.

    Templates that mark no step as required treat every step as required.
    """
    if not steps:
        return False
    required = [s for s in steps if s.is_required] or steps
    return all(s.status == StepStatus.COMPLETED for s in required)


class CompletionResolver:
    """Completes executions exactly once and fires their callbacks."""

    def __init__(
        self,
        repository: ExecutionRepository,
        templates: TemplateProvider,
        work_items: WorkItemStore,
        dispatcher: CallbackDispatcher,
        activity: ActivityLogger | None = None,
    ) -> None:
        self._repository = repository
        self._templates = templates
        self._work_items = work_items
        self._dispatcher = dispatcher
        self._activity = activity or LoggingActivityLogger()

    async def check_and_complete(
        self, execution_id: str, organization_id: str
    ) -> Optional[WorkflowExecution]:
        """Complete the execution when all required steps are done."""
        steps = await self._repository.list_steps(execution_id, organization_id)
        if not all_required_completed(steps):
            logger.debug(f"Execution {execution_id} still has open required steps")
            return None
        logger.info(f"All required steps completed for execution {execution_id}")
        return await self.complete_workflow(execution_id, organization_id)

    async def complete_workflow(
        self, execution_id: str, organization_id: str
    ) -> WorkflowExecution:
        execution = await self._repository.get_execution(execution_id, organization_id)
        if execution is None:
            raise NotFoundError(f"Workflow execution {execution_id} not found")

        completed = await self._repository.mark_execution_completed(
            execution_id, organization_id, utcnow()
        )
        if completed is None:
            logger.info(
                f"Execution {execution_id} already completed; skipping completion callbacks"
            )
            return (
                await self._repository.get_execution(execution_id, organization_id)
                or execution
            )

        try:
            await self._work_items.set_status(completed.work_item_id, WORK_ITEM_COMPLETED)
        except Exception as e:
            logger.error(
                f"Failed to mark work_item_id={completed.work_item_id} completed: {e}"
            )

        await record_activity(
            self._activity,
            ActivityEntry(
                organization_id=organization_id,
                work_item_id=completed.work_item_id,
                action_type="workflow_completed",
                entity_type="workflow_execution",
                entity_id=completed.id,
                details={"templateId": completed.template_id},
            ),
        )
        await self._run_callbacks(completed)
        return completed

    async def _run_callbacks(self, execution: WorkflowExecution) -> None:
        organization_id = execution.organization_id
        try:
            template = await self._templates.get(execution.template_id, organization_id)
        except Exception as e:
            logger.error(f"Could not load template {execution.template_id}: {e}")
            return
        if template is None or not template.completion_callbacks:
            return

        logger.info(
            f"Found {len(template.completion_callbacks)} completion callback(s) "
            f"for execution {execution.id}"
        )
        try:
            steps = await self._repository.list_steps(execution.id, organization_id)
            metadata = await self._work_items.get_metadata(execution.work_item_id) or {}
        except Exception as e:
            logger.error(f"Could not load callback context for execution {execution.id}: {e}")
            return
        resolver = FieldResolver.for_execution(execution.execution_data, steps)

        for callback in template.completion_callbacks:
            try:
                payload = resolver.build_payload(
                    callback.field_mappings,
                    organization_id,
                    execution.work_item_id,
                    metadata=metadata,
                    metadata_fields=callback.metadata_fields,
                )
                context = CallbackContext(
                    execution_id=execution.id,
                    organization_id=organization_id,
                    work_item_id=execution.work_item_id,
                    completed_at=execution.completed_at or utcnow(),
                    payload=payload,
                    metadata=metadata,
                )
                await self._dispatcher.run(callback, context)
            except Exception as e:
                logger.exception(
                    f"Completion callback {callback.integration_name} failed "
                    f"for execution {execution.id}: {e}"
                )
                await record_activity(
                    self._activity,
                    ActivityEntry(
                        organization_id=organization_id,
                        work_item_id=execution.work_item_id,
                        action_type="completion_callback_failed",
                        entity_type="workflow_execution",
                        entity_id=execution.id,
                        details={
                            "integrationName": callback.integration_name,
                            "action": callback.action,
                            "error": str(e),
                        },
                    ),
                )
