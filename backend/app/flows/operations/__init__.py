"""Registry of the operation types a flow node can use."""
from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import Any

from ..errors import UnknownOperationError
from .base import OperationContext, OperationDefinition, StepResult
from .bulk import BulkUpdateDataOperation
from .code import ExecuteCodeOperation
from .control import ConditionOperation, LogOperation, SleepOperation, TransformOperation
from .data import CreateDataOperation, DeleteDataOperation, ReadDataOperation, UpdateDataOperation
from .flow import TriggerFlowOperation
from .http import HttpRequestOperation


class OperationRegistry:
    """Table mapping an operation type key to its definition."""

    def __init__(self, operations: Iterable[OperationDefinition] = ()) -> None:
        self._operations: dict[str, OperationDefinition] = {}
        for operation in operations:
            self.register(operation)

    def register(self, operation: OperationDefinition) -> None:
        if operation.type in self._operations:
            raise ValueError(f"operation type {operation.type!r} is already registered")
        self._operations[operation.type] = operation

    def get(self, operation_type: str) -> OperationDefinition:
        try:
            return self._operations[operation_type]
        except KeyError:
            raise UnknownOperationError(operation_type) from None

    def __contains__(self, operation_type: object) -> bool:
        return operation_type in self._operations

    def __iter__(self) -> Iterator[OperationDefinition]:
        return iter(self._operations.values())

    def types(self) -> list[str]:
        return sorted(self._operations)

    def describe(self) -> list[dict[str, Any]]:
        return [self._operations[key].describe() for key in self.types()]

    def extended(self, *operations: OperationDefinition) -> OperationRegistry:
        """Return a copy of this registry with additional operations."""

        return OperationRegistry([*self._operations.values(), *operations])


_BUILTINS: list[OperationDefinition] = [
    ConditionOperation(),
    TransformOperation(),
    LogOperation(),
    SleepOperation(),
    HttpRequestOperation(),
    ExecuteCodeOperation(),
    CreateDataOperation(),
    ReadDataOperation(),
    UpdateDataOperation(),
    DeleteDataOperation(),
    BulkUpdateDataOperation(),
    TriggerFlowOperation(),
]

registry = OperationRegistry(_BUILTINS)


def get_operation(operation_type: str) -> OperationDefinition:
    """Return a built-in operation by type, raising ``UnknownOperationError``."""

    return registry.get(operation_type)


def iter_operations() -> Iterator[OperationDefinition]:
    """Yield the registered built-in operations."""

    yield from registry


__all__ = [
    "OperationContext",
    "OperationDefinition",
    "OperationRegistry",
    "StepResult",
    "get_operation",
    "iter_operations",
    "registry",
]
