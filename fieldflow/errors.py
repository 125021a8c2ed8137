"""Exception hierarchy for the workflow execution engine."""

from __future__ import annotations


class WorkflowError(Exception):
    """Base class for all engine errors."""

    status_code: int = 500


class NotFoundError(WorkflowError):
    """An execution, step, template or work item does not exist."""

    status_code = 404


class InvalidStateError(WorkflowError):
    """The requested operation is not allowed in the current state."""

    status_code = 409


class InvalidArgumentError(WorkflowError):
    """The caller supplied malformed or out-of-range input."""

    status_code = 400


class PayloadTooLargeError(WorkflowError):
    """An upload chunk exceeds the configured size ceiling."""

    status_code = 413


class ExternalServiceError(WorkflowError):
    """A call to an external collaborator failed or timed out."""

    status_code = 502


class CallbackError(ExternalServiceError):
    """One or more behaviours of a completion callback failed."""

    def __init__(self, integration_name: str, failures: list[str]) -> None:
        self.integration_name = integration_name
        self.failures = failures
        super().__init__(
            f"Completion callback {integration_name!r} failed: {'; '.join(failures)}"
        )
