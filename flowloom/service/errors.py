from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each exception class defines both a status_code and a stable error_code so
    a transport layer can map them without inspecting messages:
    - validation_error (400)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. canceling an execution that already finished (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# ---------------------------------------------------------------------------
# Workflow failure taxonomy
# ---------------------------------------------------------------------------


class WorkflowFailure(ServerError):
    """A failure that already knows its (category, code) classification."""

    failure_category: str = "INTERNAL"
    failure_code: str = "EXECUTION_INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        failure_category: Optional[str] = None,
        failure_code: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        if failure_category is not None:
            self.failure_category = failure_category
        if failure_code is not None:
            self.failure_code = failure_code


class NodeTimeoutError(WorkflowFailure):
    """A node attempt exceeded its policy timeout."""
    failure_category = "TIMEOUT"
    failure_code = "NODE_TIMEOUT"


class NodeExecutorError(WorkflowFailure):
    """A node executor raised or returned a FAILED result."""
    failure_category = "EXECUTOR"
    failure_code = "NODE_EXECUTOR_ERROR"


class NodeInputUnresolvedError(WorkflowFailure):
    """A node's input bindings referenced values that do not exist."""
    status_code = 400
    error_code = "validation_error"
    failure_category = "VALIDATION"
    failure_code = "NODE_INPUT_UNRESOLVED"


class ExecutionCanceledError(WorkflowFailure):
    """The execution was canceled while it was running."""
    failure_category = "CANCELED"
    failure_code = "EXECUTION_CANCELED"


class ExecutionTimeoutError(WorkflowFailure):
    """The execution exceeded its run-level timeout."""
    failure_category = "TIMEOUT"
    failure_code = "EXECUTION_TIMEOUT"


class InternalEngineError(WorkflowFailure):
    """Engine-internal defect such as a missing execution record."""
    failure_category = "INTERNAL"
    failure_code = "EXECUTION_INTERNAL_ERROR"


class SubflowGuardError(WorkflowFailure):
    """A subflow call was rejected before its child execution started."""
    status_code = 400
    error_code = "validation_error"
    failure_category = "VALIDATION"
    failure_code = "SUBFLOW_GUARD_REJECTED"


class WorkflowExecutionFailed(WorkflowFailure):
    """Raised to the trigger caller once an execution has been finalized FAILED."""

    def __init__(
        self,
        message: str,
        *,
        execution_id: str,
        failure_category: Optional[str] = None,
        failure_code: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            failure_category=failure_category,
            failure_code=failure_code,
            detail={"execution_id": execution_id},
        )
        self.execution_id = execution_id


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "WorkflowFailure",
    "NodeTimeoutError",
    "NodeExecutorError",
    "NodeInputUnresolvedError",
    "ExecutionCanceledError",
    "ExecutionTimeoutError",
    "InternalEngineError",
    "SubflowGuardError",
    "WorkflowExecutionFailed",
]
