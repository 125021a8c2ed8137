"""Best-effort OCR analysis of newly added step photos."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence, Set

from .collaborators import (
    ActivityEntry,
    ActivityLogger,
    LoggingActivityLogger,
    OCRCollaborator,
    OCRResult,
    record_activity,
)
from .contracts import Photo, PhotoAnalysisConfig
from .persistence.models import ExecutionStep

logger = logging.getLogger(__name__)


class PhotoAnalysisTrigger:
    """Runs the OCR collaborator over photos and records the outcome.

    Nothing raised by the OCR collaborator or the activity logger ever
    leaves this class, and the step itself is never modified.
    """

    def __init__(
        self,
        ocr: Optional[OCRCollaborator],
        activity: ActivityLogger | None = None,
        timeout: float = 60.0,
        background: bool = False,
    ) -> None:
        self._ocr = ocr
        self._activity = activity or LoggingActivityLogger()
        self._timeout = timeout
        self._background = background
        self._tasks: Set[asyncio.Task] = set()

    async def on_photos_added(
        self,
        step: ExecutionStep,
        photos: Sequence[Photo],
        analysis_config: Optional[PhotoAnalysisConfig],
        organization_id: str,
        actor_id: Optional[str] = None,
    ) -> None:
        if self._ocr is None or not photos or not (analysis_config and analysis_config.enabled):
            return
        if self._background:
            task = asyncio.create_task(
                self._analyze_all(step, photos, analysis_config, organization_id, actor_id)
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return
        await self._analyze_all(step, photos, analysis_config, organization_id, actor_id)

    async def wait_idle(self) -> None:
        """Wait for background analyses to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _analyze_all(
        self,
        step: ExecutionStep,
        photos: Sequence[Photo],
        analysis_config: PhotoAnalysisConfig,
        organization_id: str,
        actor_id: Optional[str],
    ) -> None:
        for photo in photos:
            try:
                await self._analyze(step, photo, analysis_config, organization_id, actor_id)
            except Exception as e:
                logger.exception(f"Photo analysis crashed for step {step.id}: {e}")

    async def _analyze(
        self,
        step: ExecutionStep,
        photo: Photo,
        analysis_config: PhotoAnalysisConfig,
        organization_id: str,
        actor_id: Optional[str],
    ) -> None:
        entry = ActivityEntry(
            organization_id=organization_id,
            work_item_id=step.work_item_id,
            action_type="photo_analysis_completed",
            entity_type="workflow_step",
            entity_id=step.id,
            actor_id=actor_id,
            details={"photoUrl": (photo.source or "")[:200], "photoId": photo.id},
        )
        try:
            raw = await asyncio.wait_for(
                self._ocr.analyze(photo, analysis_config), timeout=self._timeout
            )
            result = raw if isinstance(raw, OCRResult) else OCRResult.model_validate(raw)
        except Exception as e:
            logger.error(f"OCR analysis failed for step {step.id}: {e!r}")
            entry.action_type = "photo_analysis_failed"
            entry.details["errors"] = [repr(e)]
            await record_activity(self._activity, entry)
            return

        if result.success:
            logger.info(
                f"OCR extracted {sorted(result.extracted_data)} from step {step.id} "
                f"(confidence={result.confidence})"
            )
            entry.details.update(
                extractedFields=sorted(result.extracted_data),
                extractedData=result.extracted_data,
                confidence=result.confidence,
            )
        else:
            logger.warning(f"OCR analysis unsuccessful for step {step.id}: {result.errors}")
            entry.action_type = "photo_analysis_failed"
            entry.details["errors"] = result.errors
        await record_activity(self._activity, entry)
