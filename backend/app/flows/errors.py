"""Error taxonomy raised by the flow engine."""
from __future__ import annotations

from typing import Any


class FlowError(Exception):
    """Base class for all errors raised by the flow engine."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = {key: value for key, value in details.items() if value is not None}

    @property
    def type(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON serialisable description of the error."""

        payload: dict[str, Any] = {"type": self.type, "message": self.message}
        payload.update(self.details)
        return payload


class GraphValidationError(FlowError):
    """Raised when a flow graph is malformed, dangling or cyclic."""

    def __init__(
        self,
        message: str,
        *,
        node_id: str | None = None,
        connection_id: str | None = None,
    ) -> None:
        super().__init__(message, node_id=node_id, connection_id=connection_id)
        self.node_id = node_id
        self.connection_id = connection_id


class UnknownOperationError(FlowError):
    """Raised when an operation type is not present in the registry."""

    def __init__(self, operation_type: str) -> None:
        super().__init__(
            f"Unknown operation type: {operation_type}", operation_type=operation_type
        )
        self.operation_type = operation_type


class ValidationError(FlowError):
    """Raised when operation options do not satisfy their schema."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message, errors=errors or None)
        self.errors = errors or []


class OperationError(FlowError):
    """Raised by an operation handler when its work fails."""


class RecordNotFoundError(OperationError):
    """Raised when a data operation addresses a record that does not exist."""

    def __init__(self, collection: str, record_id: Any) -> None:
        super().__init__(
            f"record {record_id!r} not found in {collection!r}",
            collection=collection,
            record_id=record_id,
        )


class SandboxTimeoutError(FlowError):
    """Raised when sandboxed code exceeds its time budget.

    The result is abandoned; callers must not assume the work was undone.
    """

    def __init__(self, timeout_ms: int, logs: list[str] | None = None) -> None:
        super().__init__(f"Execution exceeded {timeout_ms} ms", timeout_ms=timeout_ms)
        self.timeout_ms = timeout_ms
        self.logs = logs or []


class SandboxRuntimeError(FlowError):
    """Raised when sandboxed code fails with an error of its own."""

    def __init__(
        self,
        message: str,
        *,
        error_type: str | None = None,
        stack: str | None = None,
        logs: list[str] | None = None,
    ) -> None:
        super().__init__(message, error_type=error_type, stack=stack)
        self.error_type = error_type
        self.stack = stack
        self.logs = logs or []


class AlreadyFinalizedError(FlowError):
    """Raised when an execution record is modified after being finalized."""


class FlowNotFoundError(FlowError):
    """Raised when a flow or execution cannot be found."""


class FlowStateError(FlowError):
    """Raised when a flow's lifecycle status forbids the requested action."""


def describe_exception(exc: BaseException) -> dict[str, Any]:
    """Return an error payload for any exception raised while running a node."""

    if isinstance(exc, FlowError):
        return exc.to_dict()
    return {"type": type(exc).__name__, "message": str(exc) or type(exc).__name__}


__all__ = [
    "AlreadyFinalizedError",
    "FlowError",
    "FlowNotFoundError",
    "FlowStateError",
    "GraphValidationError",
    "OperationError",
    "RecordNotFoundError",
    "SandboxRuntimeError",
    "SandboxTimeoutError",
    "UnknownOperationError",
    "ValidationError",
    "describe_exception",
]
