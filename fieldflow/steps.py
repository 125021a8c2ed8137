"""Step status transitions and evidence merging."""

from __future__ import annotations

import logging
from typing import Any, Dict, FrozenSet, Mapping, Optional, Union

from .completion import CompletionResolver
from .contracts import FileEvidence, Photo
from .errors import InvalidArgumentError, InvalidStateError, NotFoundError
from .persistence import ExecutionRepository, ExecutionStep, StepStatus
from .persistence.models import utcnow
from .photo_analysis import PhotoAnalysisTrigger

logger = logging.getLogger(__name__)

# Completed steps are reopened through in_progress; they cannot go straight
# back to not_started or cancelled. Cancelled steps cannot be completed
# without being restarted first.
ALLOWED_TRANSITIONS: Dict[StepStatus, FrozenSet[StepStatus]] = {
    StepStatus.NOT_STARTED: frozenset(StepStatus),
    StepStatus.IN_PROGRESS: frozenset(StepStatus),
    StepStatus.COMPLETED: frozenset({StepStatus.COMPLETED, StepStatus.IN_PROGRESS}),
    StepStatus.CANCELLED: frozenset(
        {StepStatus.CANCELLED, StepStatus.NOT_STARTED, StepStatus.IN_PROGRESS}
    ),
}


def parse_status(status: Union[str, StepStatus]) -> StepStatus:
    try:
        return StepStatus(status)
    except ValueError:
        raise InvalidArgumentError(
            f"Invalid step status {status!r}; expected one of "
            f"{', '.join(s.value for s in StepStatus)}"
        ) from None


def new_photos(before: list[Photo], after: list[Photo]) -> list[Photo]:
    seen = {p.identity for p in before}
    return [p for p in after if p.identity not in seen]


class StepStateMachine:
    """Applies status changes and evidence patches to execution steps.

    Status changes follow ``ALLOWED_TRANSITIONS``: a completed step is
    reopened by moving it to ``in_progress``. Every change is a single
    atomic read-modify-write in the repository.
    Photo analysis and completion detection run only after the change is
    stored.
    """

    def __init__(
        self,
        repository: ExecutionRepository,
        photo_analysis: PhotoAnalysisTrigger | None = None,
        completion: CompletionResolver | None = None,
    ) -> None:
        self._repository = repository
        self._photo_analysis = photo_analysis
        self._completion = completion

    async def get_step(self, step_id: str, organization_id: str) -> ExecutionStep:
        step = await self._repository.get_step(step_id, organization_id)
        if step is None:
            raise NotFoundError(f"Workflow step {step_id} not found")
        return step

    async def list_steps(self, work_item_id: str, organization_id: str) -> list[ExecutionStep]:
        return await self._repository.list_work_item_steps(work_item_id, organization_id)

    async def update_status(
        self,
        step_id: str,
        organization_id: str,
        status: Union[str, StepStatus],
        actor_id: Optional[str] = None,
        notes: Optional[str] = None,
        evidence_patch: Optional[Mapping[str, Any]] = None,
    ) -> ExecutionStep:
        target = parse_status(status)
        photos_before: list[Photo] = []

        def mutate(step: ExecutionStep) -> None:
            if target not in ALLOWED_TRANSITIONS[step.status]:
                raise InvalidStateError(
                    f"Step {step.id} cannot move from {step.status.value} to {target.value}"
                )
            photos_before.extend(step.evidence.photos)
            now = utcnow()
            step.status = target
            if target == StepStatus.COMPLETED:
                step.completed_at = now
                step.completed_by = actor_id
            if notes is not None:
                step.notes = notes
            if evidence_patch is not None:
                step.evidence = step.evidence.merge(evidence_patch)
            step.updated_at = now

        step = await self._repository.update_step(step_id, organization_id, mutate)
        if step is None:
            raise NotFoundError(f"Workflow step {step_id} not found")
        logger.info(f"Step {step_id} moved to {target.value} (execution_id={step.execution_id})")

        if evidence_patch is not None and "photos" in evidence_patch:
            await self._analyze(step, new_photos(photos_before, step.evidence.photos), actor_id)

        if target == StepStatus.COMPLETED and self._completion is not None:
            await self._completion.check_and_complete(step.execution_id, organization_id)
        return step

    async def add_evidence(
        self,
        step_id: str,
        organization_id: str,
        evidence_patch: Mapping[str, Any],
        actor_id: Optional[str] = None,
    ) -> ExecutionStep:
        photos_before: list[Photo] = []

        def mutate(step: ExecutionStep) -> None:
            photos_before.extend(step.evidence.photos)
            step.evidence = step.evidence.merge(evidence_patch)
            step.updated_at = utcnow()

        step = await self._repository.update_step(step_id, organization_id, mutate)
        if step is None:
            raise NotFoundError(f"Workflow step {step_id} not found")

        if "photos" in evidence_patch:
            await self._analyze(step, new_photos(photos_before, step.evidence.photos), actor_id)
        return step

    async def attach_file(
        self,
        step_id: str,
        organization_id: str,
        file_evidence: FileEvidence,
        actor_id: Optional[str] = None,
    ) -> ExecutionStep:
        """Append a reassembled file; image files also become step photos."""
        photo = file_evidence.as_photo() if file_evidence.is_image else None

        def mutate(step: ExecutionStep) -> None:
            patch: Dict[str, Any] = {
                "files": [f.to_record() for f in step.evidence.files]
                + [file_evidence.to_record()]
            }
            if photo is not None:
                patch["photos"] = [p.to_record() for p in step.evidence.photos] + [
                    photo.to_record()
                ]
            step.evidence = step.evidence.merge(patch)
            step.updated_at = utcnow()

        step = await self._repository.update_step(step_id, organization_id, mutate)
        if step is None:
            raise NotFoundError(f"Workflow step {step_id} not found")
        logger.info(
            f"Attached file {file_evidence.file_name!r} to step {step_id} "
            f"(execution_id={step.execution_id})"
        )

        if photo is not None:
            await self._analyze(step, [photo], actor_id)
        return step

    async def _analyze(
        self, step: ExecutionStep, photos: list[Photo], actor_id: Optional[str]
    ) -> None:
        if self._photo_analysis is None or not photos or not step.evidence.analysis_enabled:
            return
        await self._photo_analysis.on_photos_added(
            step,
            photos,
            step.evidence.photo_analysis_config,
            step.organization_id,
            actor_id=actor_id,
        )
