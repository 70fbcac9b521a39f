from __future__ import annotations


class InkflowError(RuntimeError):
    """Base class for coordination failures."""


class WorkflowTransportError(InkflowError):
    """Raised when a request to the pipeline server fails."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        request_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.request_id = request_id


class WorkflowTimeoutError(WorkflowTransportError):
    """Raised when a poll or submit exceeds the configured timeout."""


class WorkflowNotFoundError(WorkflowTransportError):
    """Raised when the server no longer knows the request id."""


class PipelineError(InkflowError):
    """Raised when the pipeline itself reports `status=error`."""

    def __init__(self, message: str, *, request_id: str | None = None) -> None:
        super().__init__(message)
        self.request_id = request_id


class SessionConflictError(InkflowError):
    """Raised when a workflow is submitted while another one is still active."""


class ProtocolError(InkflowError):
    """Raised when a server payload cannot be parsed."""


class StateError(InkflowError):
    """Raised when local state operations fail."""
