"""Resolution of callback field values from collected execution data.

A value is looked up through an ordered chain of strategies drawn from two
value sources: the legacy per-step ``execution_data`` blob and the step
evidence. The first strategy yielding a non-empty value wins.

The legacy source only exists for executions written before step evidence
was introduced and can be dropped once no writer fills ``execution_data``.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .contracts import FieldMapping
from .persistence.models import ExecutionStep

logger = logging.getLogger(__name__)

Strategy = Callable[[str, str], Any]

RESERVED_KEYS = frozenset({"organizationId", "workItemId", "photos", "notes"})


def is_empty(value: Any) -> bool:
    return value is None or value == ""


class LegacyExecutionDataSource:
    """Values from ``execution_data[stepId]`` = ``{data, geolocation, notes, photos}``."""

    def __init__(self, execution_data: Mapping[str, Any]) -> None:
        self._data = execution_data or {}

    def _step(self, step_id: str) -> Mapping[str, Any]:
        step_data = self._data.get(step_id)
        return step_data if isinstance(step_data, Mapping) else {}

    def geolocation(self, step_id: str, field: str) -> Any:
        return (self._step(step_id).get("geolocation") or {}).get(field)

    def data(self, step_id: str, field: str) -> Any:
        return (self._step(step_id).get("data") or {}).get(field)

    def notes(self, step_id: str, field: str) -> Any:
        return self._step(step_id).get("notes") if field == "notes" else None

    def strategies(self) -> List[Strategy]:
        return [self.geolocation, self.data, self.notes]

    def photos(self) -> List[Any]:
        found: List[Any] = []
        for step_data in self._data.values():
            if isinstance(step_data, Mapping) and isinstance(step_data.get("photos"), list):
                found.extend(step_data["photos"])
        return found

    def notes_text(self) -> List[str]:
        return [
            str(step_data["notes"])
            for step_data in self._data.values()
            if isinstance(step_data, Mapping) and not is_empty(step_data.get("notes"))
        ]


class StepEvidenceSource:
    """Values from the evidence and notes of the step seeded with ``stepId``."""

    def __init__(self, steps: Sequence[ExecutionStep]) -> None:
        self._steps = list(steps)
        self._by_step_id: Dict[str, ExecutionStep] = {
            s.template_step_id: s for s in self._steps if s.template_step_id
        }

    def evidence_field(self, step_id: str, field: str) -> Any:
        step = self._by_step_id.get(step_id)
        return step.evidence.get(field) if step else None

    def checked(self, step_id: str, field: str) -> Any:
        step = self._by_step_id.get(step_id)
        return step.evidence.checked if step and field == "checked" else None

    def step_notes(self, step_id: str, field: str) -> Any:
        step = self._by_step_id.get(step_id)
        return step.notes if step and field == "text" else None

    def strategies(self) -> List[Strategy]:
        return [self.evidence_field, self.checked, self.step_notes]

    def photos(self) -> List[Any]:
        return [p.to_record() for s in self._steps for p in s.evidence.photos]

    def notes_text(self) -> List[str]:
        return [f"{s.title}: {s.notes}" for s in self._steps if not is_empty(s.notes)]


class FieldResolver:
    """Resolves field mappings and builds callback payloads."""

    def __init__(
        self,
        legacy: LegacyExecutionDataSource,
        evidence: StepEvidenceSource,
    ) -> None:
        self._sources = (legacy, evidence)
        self._strategies: List[Strategy] = [
            strategy for source in self._sources for strategy in source.strategies()
        ]

    @classmethod
    def for_execution(
        cls, execution_data: Mapping[str, Any], steps: Sequence[ExecutionStep]
    ) -> "FieldResolver":
        return cls(LegacyExecutionDataSource(execution_data), StepEvidenceSource(steps))

    def resolve(self, mapping: FieldMapping) -> Optional[Any]:
        """Return the first non-empty value for ``mapping`` or ``None``."""
        for strategy in self._strategies:
            value = strategy(mapping.source_step_id, mapping.source_field)
            if not is_empty(value):
                logger.debug(
                    f"Resolved {mapping.source_step_id}.{mapping.source_field} "
                    f"via {strategy.__name__}"
                )
                return value
        logger.debug(
            f"No value found for {mapping.source_step_id}.{mapping.source_field}"
        )
        return None

    def build_payload(
        self,
        mappings: Iterable[FieldMapping],
        organization_id: str,
        work_item_id: str,
        metadata: Optional[Mapping[str, Any]] = None,
        metadata_fields: Iterable[str] = (),
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for mapping in mappings:
            value = self.resolve(mapping)
            if value is not None:
                payload[mapping.target_field] = value

        photos = [photo for source in self._sources for photo in source.photos()]
        if photos:
            payload["photos"] = photos
        notes = [text for source in self._sources for text in source.notes_text()]
        if notes:
            payload["notes"] = "\n".join(notes)

        metadata = metadata or {}
        for key in metadata_fields:
            if key in metadata:
                payload[key] = metadata[key]

        payload["organizationId"] = organization_id
        payload["workItemId"] = work_item_id
        return payload
