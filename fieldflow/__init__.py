"""fieldflow: workflow execution engine for work items."""

from .collaborators import ActivityEntry, LoggingActivityLogger, OCRResult, SourceRecord, WorkItem
from .contracts import (
    CompletionCallback,
    Evidence,
    FieldMapping,
    FileEvidence,
    Photo,
    StepDefinition,
    WorkflowTemplate,
)
from .engine import WorkflowEngine
from .errors import (
    CallbackError,
    ExternalServiceError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
    PayloadTooLargeError,
    WorkflowError,
)
from .persistence import (
    ExecutionStatus,
    ExecutionStep,
    StepStatus,
    WorkflowExecution,
    get_repository,
)
from .uploads import get_upload_store

__version__ = "0.1.0"
__all__ = [
    "ActivityEntry",
    "CallbackError",
    "CompletionCallback",
    "Evidence",
    "ExecutionStatus",
    "ExecutionStep",
    "ExternalServiceError",
    "FieldMapping",
    "FileEvidence",
    "InvalidArgumentError",
    "InvalidStateError",
    "LoggingActivityLogger",
    "NotFoundError",
    "OCRResult",
    "PayloadTooLargeError",
    "Photo",
    "SourceRecord",
    "StepDefinition",
    "StepStatus",
    "WorkItem",
    "WorkflowEngine",
    "WorkflowError",
    "WorkflowExecution",
    "WorkflowTemplate",
    "get_repository",
    "get_upload_store",
]
