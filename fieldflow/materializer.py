"""Creation of execution steps from a template."""

from __future__ import annotations

from .contracts import Evidence, WorkflowTemplate
from .persistence.models import ExecutionStep, StepStatus


class StepMaterializer:
    """Builds the fixed, ordered step set of a new execution."""

    def materialize(
        self,
        template: WorkflowTemplate,
        execution_id: str,
        organization_id: str,
        work_item_id: str,
    ) -> list[ExecutionStep]:
        """Return one ``not_started`` step per template step, in template order.

        Each step's evidence is seeded with the definition's configuration;
        that seed is what later evidence merges must preserve.
        """
        return [
            ExecutionStep(
                execution_id=execution_id,
                organization_id=organization_id,
                work_item_id=work_item_id,
                step_index=index,
                title=definition.display_title(index),
                description=definition.description,
                status=StepStatus.NOT_STARTED,
                evidence=Evidence.from_definition(definition),
            )
            for index, definition in enumerate(template.steps)
        ]
