"""Shared fakes for the engine's external collaborators."""

from typing import Any, Optional

import pytest

from fieldflow import WorkflowEngine
from fieldflow.collaborators import ActivityEntry, OCRResult, SourceRecord, WorkItem
from fieldflow.config import FieldflowConfig
from fieldflow.contracts import WorkflowTemplate
from fieldflow.persistence import InMemoryExecutionRepository
from fieldflow.uploads import InMemoryUploadStore

ORG = "org-1"
WORK_ITEM = "wi-1"


def inspection_template(callbacks: Optional[list] = None, **overrides: Any) -> WorkflowTemplate:
    data = {
        "id": "inspection",
        "organizationId": ORG,
        "name": "Site inspection",
        "steps": [
            {
                "id": "photos",
                "title": "Site photos",
                "type": "photo",
                "required": True,
                "photoConfig": {"minPhotos": 1, "maxPhotos": 5},
                "photoAnalysisConfig": {
                    "enabled": True,
                    "extractions": [{"extractionPrompt": "Read the meter serial number"}],
                },
            },
            {
                "id": "checklist",
                "title": "Safety checklist",
                "type": "checklist",
                "required": True,
                "checklistItems": [{"id": "c1", "name": "Power isolated"}],
            },
            {
                "id": "meter",
                "label": "Meter reading",
                "type": "form",
                "required": True,
                "formFields": [{"id": "reading", "label": "Reading", "required": True}],
            },
        ],
        "completionCallbacks": callbacks or [],
    }
    data.update(overrides)
    return WorkflowTemplate.model_validate(data)


class FakeTemplates:
    def __init__(self, *templates: WorkflowTemplate) -> None:
        self.templates = {t.id: t for t in templates}

    def add(self, template: WorkflowTemplate) -> None:
        self.templates[template.id] = template

    async def get(self, template_id, organization_id):
        return self.templates.get(template_id)


class FakeWorkItems:
    def __init__(self) -> None:
        self.items: dict[str, WorkItem] = {}
        self.status_updates: list[tuple[str, str]] = []
        self.fail_status = False

    def add(self, work_item_id=WORK_ITEM, template_id="inspection", metadata=None):
        self.items[work_item_id] = WorkItem(
            id=work_item_id,
            organization_id=ORG,
            template_id=template_id,
            metadata=metadata or {},
        )
        return self.items[work_item_id]

    async def get(self, work_item_id, organization_id):
        item = self.items.get(work_item_id)
        if item is None or item.organization_id != organization_id:
            return None
        return item

    async def set_status(self, work_item_id, status):
        if self.fail_status:
            raise RuntimeError("work item store unavailable")
        self.status_updates.append((work_item_id, status))
        self.items[work_item_id].status = status

    async def get_metadata(self, work_item_id):
        return dict(self.items[work_item_id].metadata)


class FakeSourceLookup:
    def __init__(self, records: Optional[dict[str, SourceRecord]] = None) -> None:
        self.records = records or {}

    async def get(self, work_item_id, organization_id):
        return self.records.get(work_item_id)


class FakeFieldUpdater:
    def __init__(self, allowed=()) -> None:
        self.allowed = set(allowed)
        self.updates: list[tuple] = []

    async def allowed_fields(self, table, organization_id):
        return self.allowed

    async def update_field(self, table, record_id, field, value):
        self.updates.append((table, record_id, field, value))


class FakeTicketClient:
    def __init__(self) -> None:
        self.status_updates: list[tuple] = []
        self.messages: list[tuple] = []

    async def update_status(self, entity_type, entity_id, status_id):
        self.status_updates.append((entity_type, entity_id, status_id))

    async def add_message(self, entity_id, text):
        self.messages.append((entity_id, text))


class FakeOCR:
    def __init__(self, result=None, error: Optional[Exception] = None) -> None:
        self.result = result
        self.error = error
        self.calls: list = []

    async def analyze(self, photo, config):
        self.calls.append(photo)
        if self.error is not None:
            raise self.error
        if self.result is not None:
            return self.result
        return OCRResult(success=True, extracted_data={"serial": "MX-42"}, confidence=0.93)


class RecordingActivity:
    def __init__(self) -> None:
        self.entries: list[ActivityEntry] = []

    async def log(self, entry):
        self.entries.append(entry)

    def actions(self) -> list[str]:
        return [e.action_type for e in self.entries]


@pytest.fixture
def templates():
    return FakeTemplates(inspection_template())


@pytest.fixture
def work_items():
    items = FakeWorkItems()
    items.add()
    return items


@pytest.fixture
def activity():
    return RecordingActivity()


@pytest.fixture
def make_engine(templates, work_items, activity):
    """Build an in-memory engine; keyword arguments override collaborators."""

    def _make(**kwargs) -> WorkflowEngine:
        kwargs.setdefault("repository", InMemoryExecutionRepository())
        kwargs.setdefault("upload_store", InMemoryUploadStore())
        kwargs.setdefault("activity", activity)
        kwargs.setdefault("config", FieldflowConfig())
        return WorkflowEngine(templates, work_items, **kwargs)

    return _make
