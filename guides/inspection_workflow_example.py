"""Example running an inspection workflow end to end in memory."""

import asyncio
import base64

from fieldflow import WorkflowEngine, WorkflowTemplate, WorkItem
from fieldflow.config import FieldflowConfig
from fieldflow.persistence import InMemoryExecutionRepository
from fieldflow.uploads import InMemoryUploadStore

TEMPLATE = WorkflowTemplate.model_validate(
    {
        "id": "inspection",
        "name": "Site inspection",
        "steps": [
            {"id": "photos", "title": "Site photos", "type": "photo", "required": True},
            {"id": "meter", "title": "Meter reading", "type": "form", "required": True},
        ],
        "completionCallbacks": [
            {
                "integrationName": "log-only",
                "fieldMappings": [
                    {"sourceStepId": "meter", "sourceField": "reading", "targetField": "meterReading"}
                ],
            }
        ],
    }
)


class Templates:
    async def get(self, template_id, organization_id):
        return TEMPLATE if template_id == TEMPLATE.id else None


class WorkItems:
    def __init__(self):
        self.items = {"wi-1": WorkItem(id="wi-1", organization_id="org-1", template_id="inspection")}

    async def get(self, work_item_id, organization_id):
        return self.items.get(work_item_id)

    async def set_status(self, work_item_id, status):
        self.items[work_item_id].status = status

    async def get_metadata(self, work_item_id):
        return self.items[work_item_id].metadata


async def main():
    work_items = WorkItems()
    engine = WorkflowEngine(
        Templates(),
        work_items,
        repository=InMemoryExecutionRepository(),
        upload_store=InMemoryUploadStore(),
        config=FieldflowConfig(),
    )

    execution = await engine.start_execution("wi-1", "org-1")
    photos_step, meter_step = await engine.list_steps("wi-1", "org-1")

    data = base64.b64encode(b"not really a jpeg").decode()
    for index, chunk in enumerate([data[:8], data[8:]]):
        await engine.ingest_chunk(
            "org-1", photos_step.id, "wi-1", "upload-1", index, 2, chunk,
            {"fileName": "front.jpg", "fileType": "image/jpeg"},
        )
    await engine.update_step_status(photos_step.id, "org-1", "completed")
    await engine.update_step_status(
        meter_step.id, "org-1", "completed", evidence={"reading": "12345"}
    )

    [execution] = await engine.get_executions("wi-1", "org-1")
    print(f"Execution {execution.id}: {execution.status.value}")
    print(f"Work item status: {work_items.items['wi-1'].status}")


if __name__ == "__main__":
    asyncio.run(main())
