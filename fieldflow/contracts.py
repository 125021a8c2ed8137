"""Template, callback and evidence contracts for fieldflow workflows.

Templates are authored elsewhere and arrive as camelCase JSON; the models here
accept both camelCase and snake_case keys and always serialize camelCase.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from .errors import InvalidArgumentError

logger = logging.getLogger(__name__)


class CamelModel(BaseModel):
    """Base model exchanging camelCase keys and keeping unknown keys."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ---------------------------------------------------------------------------
# Step definitions


class ChecklistItem(CamelModel):
    id: str
    name: str
    checked: bool = False


class FormField(CamelModel):
    id: str
    label: str
    type: str = "text"
    required: bool = False
    options: Optional[List[str]] = None


class PhotoConfig(CamelModel):
    min_photos: int = 1
    max_photos: int = 10
    required: bool = False


class PhotoExtraction(CamelModel):
    """One value the OCR engine should pull out of a photo."""

    field_id: Optional[int] = None
    target_table: Optional[str] = None
    target_field: Optional[str] = None
    extraction_prompt: str
    auto_create_field: bool = True
    required: bool = False
    post_process: Literal["none", "uppercase", "lowercase", "trim"] = "none"


class PhotoAnalysisConfig(CamelModel):
    enabled: bool = False
    agent_workflow_id: Optional[int] = None
    extractions: List[PhotoExtraction] = Field(default_factory=list)


class StepDefinition(CamelModel):
    """Declarative definition of one template step."""

    id: str
    title: Optional[str] = None
    label: Optional[str] = None
    description: Optional[str] = None
    type: str = "checklist"
    required: bool = False
    order: Optional[int] = None
    config: Optional[Dict[str, Any]] = None
    checklist_items: Optional[List[ChecklistItem]] = None
    form_fields: Optional[List[FormField]] = None
    photo_config: Optional[PhotoConfig] = None
    photo_analysis_config: Optional[PhotoAnalysisConfig] = None

    def display_title(self, index: int) -> str:
        return self.title or self.label or f"Step {index + 1}"


# ---------------------------------------------------------------------------
# Completion callbacks


class FieldMapping(CamelModel):
    source_step_id: str
    source_field: str
    target_field: str


class WebhookSpec(CamelModel):
    url: str
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)


class DatabaseUpdateSpec(CamelModel):
    target_table: Optional[str] = None
    record_id_source: Optional[str] = None


class TicketSystemSpec(CamelModel):
    action: str = "update_status"
    entity_type: Optional[Literal["ticket", "task"]] = None
    status_id: Optional[Union[int, str]] = None
    message: Optional[str] = None
    ticket_id_key: str = "ticket_id"
    task_id_key: str = "task_id"


class CompletionCallback(CamelModel):
    """Action fired once an execution completes."""

    integration_name: str
    action: str = ""
    field_mappings: List[FieldMapping] = Field(default_factory=list)
    metadata_fields: List[str] = Field(default_factory=list)
    webhook: Optional[WebhookSpec] = None
    database_update: Optional[DatabaseUpdateSpec] = None
    ticket_system: Optional[TicketSystemSpec] = None

    @model_validator(mode="before")
    @classmethod
    def _fold_legacy_webhook(cls, data: Any) -> Any:
        # Older templates carry webhookUrl/webhookMethod/webhookHeaders flat.
        if not isinstance(data, Mapping) or not data.get("webhookUrl"):
            return data
        data = dict(data)
        data.setdefault(
            "webhook",
            {
                "url": data.pop("webhookUrl"),
                "method": data.pop("webhookMethod", None) or "POST",
                "headers": data.pop("webhookHeaders", None) or {},
            },
        )
        return data


class WorkflowTemplate(CamelModel):
    """Ordered steps plus completion callbacks, read-only to the engine."""

    id: str
    organization_id: Optional[str] = None
    name: Optional[str] = None
    steps: List[StepDefinition] = Field(default_factory=list)
    completion_callbacks: List[CompletionCallback] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Evidence


class Photo(CamelModel):
    """A step photo.

    Photos reference a stored image through ``url`` or carry it inline in
    ``data`` (a data URL, as mobile clients send them). Any other keys the
    client adds, such as ``uploadedBy``, are kept as-is.
    """

    id: Optional[str] = None
    url: Optional[str] = None
    data: Optional[str] = None
    file_name: Optional[str] = None
    caption: Optional[str] = None
    timestamp: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def source(self) -> Optional[str]:
        return self.url or self.data

    @property
    def identity(self) -> tuple[Optional[str], Optional[str], Optional[str]]:
        return (self.id, self.source, self.timestamp)


class FileEvidence(CamelModel):
    """A reassembled file attached to a step."""

    file_name: Optional[str] = None
    file_type: Optional[str] = None
    file_size: Optional[int] = None
    file_data: str
    uploaded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_image(self) -> bool:
        return bool(self.file_type and self.file_type.startswith("image/"))

    def as_photo(self) -> Photo:
        return Photo(
            url=f"data:{self.file_type};base64,{self.file_data}",
            file_name=self.file_name,
            caption=self.file_name,
            timestamp=self.uploaded_at.isoformat(),
            metadata={"fileName": self.file_name, "fileSize": self.file_size},
        )


TEMPLATE_FIELDS = frozenset(
    {
        "step_id",
        "step_type",
        "checklist_items",
        "form_fields",
        "photo_config",
        "photo_analysis_config",
        "config",
        "required",
    }
)


class Evidence(CamelModel):
    """Structured evidence of a step.

    Template-carried fields are seeded once by the materializer and survive
    every merge. Collected fields (``photos``, ``checked``, ``files``) and any
    other named values from the client are shallowly overwritten. Unknown keys
    live in ``values`` and are flattened back to the top level when persisted.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    step_id: Optional[str] = None
    step_type: Optional[str] = None
    checklist_items: Optional[List[ChecklistItem]] = None
    form_fields: Optional[List[FormField]] = None
    photo_config: Optional[PhotoConfig] = None
    photo_analysis_config: Optional[PhotoAnalysisConfig] = None
    config: Optional[Dict[str, Any]] = None
    required: bool = False

    photos: List[Photo] = Field(default_factory=list)
    checked: Optional[bool] = None
    files: List[FileEvidence] = Field(default_factory=list)
    values: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_values(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        known: Dict[str, Any] = {}
        values = dict(data.get("values") or {})
        for key, value in data.items():
            if key == "values":
                continue
            name = _EVIDENCE_FIELDS.get(key)
            if name is None:
                values[key] = value
            elif value is not None:
                known[key] = value
        known["values"] = values
        return known

    @classmethod
    def from_definition(cls, step: StepDefinition) -> "Evidence":
        return cls(
            step_id=step.id,
            step_type=step.type,
            checklist_items=step.checklist_items,
            form_fields=step.form_fields,
            photo_config=step.photo_config,
            photo_analysis_config=step.photo_analysis_config,
            config=step.config,
            required=step.required,
        )

    @property
    def analysis_enabled(self) -> bool:
        return bool(self.photo_analysis_config and self.photo_analysis_config.enabled)

    def to_record(self) -> Dict[str, Any]:
        """Flat camelCase record as persisted and returned to clients."""
        record = self.model_dump(
            by_alias=True, exclude_none=True, exclude={"values"}, mode="json"
        )
        record.update(self.values)
        return record

    def get(self, key: str, default: Any = None) -> Any:
        name = _EVIDENCE_FIELDS.get(key)
        if name is not None and name != "values":
            key = Evidence.model_fields[name].alias or name
        return self.to_record().get(key, default)

    def merge(self, patch: Mapping[str, Any]) -> "Evidence":
        """Return a new evidence with ``patch`` applied.

        Template-carried keys in ``patch`` are ignored, so a patch can never
        erase or replace the seeded configuration.
        """
        record = self.to_record()
        for key, value in patch.items():
            name = _EVIDENCE_FIELDS.get(key)
            if name in TEMPLATE_FIELDS:
                if value != record.get(Evidence.model_fields[name].alias):
                    logger.debug(f"Ignoring template-carried evidence key {key}")
                continue
            if name is not None and name != "values":
                key = Evidence.model_fields[name].alias or name
                if value is None:
                    record.pop(key, None)
                    continue
            record[key] = value
        try:
            return Evidence.model_validate(record)
        except ValidationError as e:
            raise InvalidArgumentError(f"Invalid evidence: {e}") from e


_EVIDENCE_FIELDS: Dict[str, str] = {}
for _name, _field in Evidence.model_fields.items():
    _EVIDENCE_FIELDS[_name] = _name
    if _field.alias:
        _EVIDENCE_FIELDS[_field.alias] = _name
