"""Interfaces of the external systems the engine talks to.

The engine never owns templates, work items, OCR or third-party clients; it
only calls these protocols. Implementations live in the host application.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Union

from pydantic import BaseModel, Field

from .contracts import Photo, PhotoAnalysisConfig, WorkflowTemplate
from .persistence.models import utcnow

logger = logging.getLogger(__name__)
activity_logger = logging.getLogger("fieldflow.activity")


class WorkItem(BaseModel):
    """The slice of a work item the engine needs."""

    id: str
    organization_id: str
    template_id: Optional[str] = None
    status: str = "Planning"
    title: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SourceRecord(BaseModel):
    """Record a work item was created from, e.g. an address row."""

    source_table: str
    source_id: Union[int, str]


class OCRResult(BaseModel):
    success: bool
    extracted_data: Dict[str, Any] = Field(default_factory=dict)
    confidence: Optional[float] = None
    errors: List[str] = Field(default_factory=list)


class ActivityEntry(BaseModel):
    """Audit record handed to the activity logger."""

    organization_id: str
    work_item_id: Optional[str] = None
    action_type: str
    entity_type: str = "work_item"
    entity_id: Optional[str] = None
    actor_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class TemplateProvider(Protocol):
    async def get(self, template_id: str, organization_id: str) -> WorkflowTemplate | None:
        """Return the template or ``None`` when it does not exist."""


class WorkItemStore(Protocol):
    async def get(self, work_item_id: str, organization_id: str) -> WorkItem | None:
        """Return the work item or ``None``."""

    async def set_status(self, work_item_id: str, status: str) -> None:
        """Set the work item status."""

    async def get_metadata(self, work_item_id: str) -> dict[str, Any]:
        """Return the workflow metadata of a work item."""


class WorkItemSourceLookup(Protocol):
    async def get(self, work_item_id: str, organization_id: str) -> SourceRecord | None:
        """Return the record the work item is linked to, if any."""


class DatabaseFieldUpdater(Protocol):
    async def allowed_fields(self, table: str, organization_id: str) -> set[str]:
        """Writable fields of ``table``; an empty set means unrestricted."""

    async def update_field(
        self, table: str, record_id: Union[int, str], field: str, value: Any
    ) -> None:
        """Write one field of one record."""


class TicketSystemClient(Protocol):
    async def update_status(
        self, entity_type: str, entity_id: Union[int, str], status_id: Union[int, str]
    ) -> None:
        """Move a ticket or task to another status."""

    async def add_message(self, entity_id: Union[int, str], text: str) -> None:
        """Append a message to a ticket."""


class OCRCollaborator(Protocol):
    async def analyze(
        self, photo: Photo, config: PhotoAnalysisConfig
    ) -> Union[OCRResult, dict[str, Any]]:
        """Extract the configured values from a photo."""


class ActivityLogger(Protocol):
    async def log(self, entry: ActivityEntry) -> None:
        """Store an activity entry."""


class LoggingActivityLogger:
    """Activity logger that writes entries to the ``fieldflow.activity`` log."""

    async def log(self, entry: ActivityEntry) -> None:
        activity_logger.info(
            f"{entry.action_type} {entry.entity_type}={entry.entity_id} "
            f"work_item_id={entry.work_item_id} details={entry.details}"
        )


async def record_activity(activity: ActivityLogger, entry: ActivityEntry) -> None:
    """Best-effort activity logging: failures are logged and swallowed."""
    try:
        await activity.log(entry)
    except Exception as e:
        logger.error(f"Failed to record activity {entry.action_type}: {e}")
