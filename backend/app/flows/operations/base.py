"""Common contract implemented by every operation type."""
from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

import pydantic
from pydantic import BaseModel

from ..errors import OperationError, ValidationError
from ..settings import EngineSettings

if TYPE_CHECKING:
    from ..records import RecordStore


@dataclass
class StepResult:
    """Value returned by :meth:`OperationDefinition.execute`.

    ``error`` marks the step as failed while still carrying partial
    ``output``. ``outcome`` lets branching operations pick ``success`` or
    ``failure`` edges without reporting an error.
    """

    output: Any = None
    error: dict[str, Any] | None = None
    logs: list[str] = field(default_factory=list)
    outcome: str | None = None
    undo: Any = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class OperationContext:
    """Read/append-only view of the running execution handed to handlers."""

    flow_id: Any
    execution_id: Any
    operation_id: str
    operation_key: str
    data: dict[str, Any]
    settings: EngineSettings = field(default_factory=EngineSettings)
    records: RecordStore | None = None
    run_flow: Callable[[Any, Any, int], dict[str, Any]] | None = None
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("flows.operations"))

    @property
    def last(self) -> Any:
        return self.data.get("$last")

    @property
    def depth(self) -> int:
        return int((self.data.get("$context") or {}).get("depth") or 0)

    def require_records(self) -> RecordStore:
        if self.records is None:
            raise OperationError("record storage is not available for this execution")
        return self.records


class OperationDefinition:
    """Base class for registry entries.

    Subclasses declare ``type``, ``name``, an ``options_schema`` pydantic
    model and ``default_options``, and implement :meth:`execute`. Operations
    with side effects may implement :meth:`compensate`, invoked only when a
    caller cancels the execution.
    """

    type: ClassVar[str]
    name: ClassVar[str]
    description: ClassVar[str] = ""
    category: ClassVar[str] = "utility"
    options_schema: ClassVar[type[BaseModel]]
    default_options: ClassVar[dict[str, Any]] = {}

    def validate_options(self, options: dict[str, Any] | None) -> BaseModel:
        """Merge ``options`` over the defaults and validate them."""

        merged = copy.deepcopy(self.default_options)
        merged.update(options or {})
        try:
            return self.options_schema.model_validate(merged)
        except pydantic.ValidationError as exc:
            errors = [
                {
                    "field": ".".join(str(part) for part in error["loc"]) or None,
                    "message": error["msg"],
                }
                for error in exc.errors()
            ]
            raise ValidationError(f"invalid options for {self.type}", errors=errors) from None

    def execute(self, options: Any, context: OperationContext) -> StepResult:
        raise NotImplementedError

    def compensate(self, options: Any, undo: Any, context: OperationContext) -> None:
        """Undo the effect of a successful :meth:`execute` call."""

    @property
    def reversible(self) -> bool:
        return type(self).compensate is not OperationDefinition.compensate

    def describe(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "default_options": copy.deepcopy(self.default_options),
            "options_schema": self.options_schema.model_json_schema(),
            "reversible": self.reversible,
        }
