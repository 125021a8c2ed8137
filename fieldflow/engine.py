"""Engine facade wiring the components to their collaborators."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Union

import httpx

from .callbacks import (
    CallbackDispatcher,
    DatabaseUpdateHandler,
    TicketSystemHandler,
    WebhookHandler,
)
from .collaborators import (
    ActivityLogger,
    DatabaseFieldUpdater,
    LoggingActivityLogger,
    OCRCollaborator,
    TemplateProvider,
    TicketSystemClient,
    WorkItemSourceLookup,
    WorkItemStore,
)
from .completion import CompletionResolver
from .config import FieldflowConfig, load_config
from .executions import ExecutionManager
from .persistence import (
    ExecutionRepository,
    ExecutionStep,
    StepStatus,
    WorkflowExecution,
    get_repository,
)
from .photo_analysis import PhotoAnalysisTrigger
from .reassembly import ChunkedUploadReassembler, ChunkResult
from .steps import StepStateMachine
from .uploads import UploadSessionStore, get_upload_store

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Operations exposed to the route or CLI layer."""

    def __init__(
        self,
        templates: TemplateProvider,
        work_items: WorkItemStore,
        repository: ExecutionRepository | None = None,
        upload_store: UploadSessionStore | None = None,
        source_lookup: WorkItemSourceLookup | None = None,
        field_updater: DatabaseFieldUpdater | None = None,
        ticket_client: TicketSystemClient | None = None,
        ocr: OCRCollaborator | None = None,
        activity: ActivityLogger | None = None,
        config: FieldflowConfig | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository or get_repository(config=self.config)
        self.upload_store = upload_store or get_upload_store(config=self.config)
        activity = activity or LoggingActivityLogger()

        dispatcher = CallbackDispatcher(
            [
                DatabaseUpdateHandler(field_updater, source_lookup),
                TicketSystemHandler(ticket_client),
                WebhookHandler(
                    timeout=self.config.callbacks.webhook_timeout,
                    base_url=self.config.callbacks.webhook_base_url,
                    transport=http_transport,
                ),
            ]
        )
        self.executions = ExecutionManager(
            self.repository, templates, work_items, activity=activity
        )
        self.completion = CompletionResolver(
            self.repository, templates, work_items, dispatcher, activity=activity
        )
        self.photo_analysis = PhotoAnalysisTrigger(
            ocr,
            activity=activity,
            timeout=self.config.photo_analysis.timeout,
            background=self.config.photo_analysis.background,
        )
        self.steps = StepStateMachine(
            self.repository,
            photo_analysis=self.photo_analysis,
            completion=self.completion,
        )
        self.reassembler = ChunkedUploadReassembler(
            self.upload_store,
            self.steps,
            max_chunk_size=self.config.uploads.max_chunk_size,
        )

    # ------------------------------------------------------------------
    # Executions
    async def start_execution(
        self, work_item_id: str, organization_id: str, actor_id: Optional[str] = None
    ) -> WorkflowExecution:
        return await self.executions.start(work_item_id, organization_id, actor_id=actor_id)

    async def reinitialize_execution(
        self, work_item_id: str, organization_id: str, actor_id: Optional[str] = None
    ) -> WorkflowExecution:
        return await self.executions.reinitialize(
            work_item_id, organization_id, actor_id=actor_id
        )

    async def get_executions(
        self, work_item_id: str, organization_id: str
    ) -> list[WorkflowExecution]:
        return await self.executions.get_executions(work_item_id, organization_id)

    async def update_execution(
        self,
        execution_id: str,
        organization_id: str,
        current_step_id: Optional[str] = None,
        execution_data: Optional[dict[str, Any]] = None,
    ) -> WorkflowExecution:
        return await self.executions.update_execution(
            execution_id, organization_id, current_step_id, execution_data
        )

    async def complete_execution(
        self, execution_id: str, organization_id: str
    ) -> WorkflowExecution:
        return await self.completion.complete_workflow(execution_id, organization_id)

    # ------------------------------------------------------------------
    # Steps
    async def list_steps(self, work_item_id: str, organization_id: str) -> list[ExecutionStep]:
        return await self.steps.list_steps(work_item_id, organization_id)

    async def get_step(self, step_id: str, organization_id: str) -> ExecutionStep:
        return await self.steps.get_step(step_id, organization_id)

    async def update_step_status(
        self,
        step_id: str,
        organization_id: str,
        status: Union[str, StepStatus],
        actor_id: Optional[str] = None,
        notes: Optional[str] = None,
        evidence: Optional[Mapping[str, Any]] = None,
    ) -> ExecutionStep:
        return await self.steps.update_status(
            step_id,
            organization_id,
            status,
            actor_id=actor_id,
            notes=notes,
            evidence_patch=evidence,
        )

    async def add_step_evidence(
        self,
        step_id: str,
        organization_id: str,
        evidence: Mapping[str, Any],
        actor_id: Optional[str] = None,
    ) -> ExecutionStep:
        return await self.steps.add_evidence(
            step_id, organization_id, evidence, actor_id=actor_id
        )

    # ------------------------------------------------------------------
    # Uploads
    async def ingest_chunk(
        self,
        organization_id: str,
        step_id: str,
        work_item_id: str,
        upload_id: Optional[str],
        chunk_index: Optional[int],
        total_chunks: Optional[int],
        chunk_data: Optional[str],
        file_meta: Optional[Mapping[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> ChunkResult:
        return await self.reassembler.ingest_chunk(
            organization_id,
            step_id,
            work_item_id,
            upload_id,
            chunk_index,
            total_chunks,
            chunk_data,
            file_meta,
            actor_id=actor_id,
        )
