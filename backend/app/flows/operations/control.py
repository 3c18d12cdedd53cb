"""Control and utility operations: condition, transform, log and sleep."""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Literal

from pydantic import BaseModel, Field

from ..errors import OperationError
from ..graph import FAILURE, SUCCESS
from .base import OperationContext, OperationDefinition, StepResult

Operator = Literal[
    "eq", "neq", "gt", "gte", "lt", "lte", "contains", "not_contains",
    "in", "exists", "not_exists", "truthy", "falsy",
]


class ConditionOptions(BaseModel):
    left: Any = None
    operator: Operator = "truthy"
    right: Any = None


class TransformOptions(BaseModel):
    template: Any = None


class LogOptions(BaseModel):
    message: Any = ""
    level: Literal["debug", "info", "warning", "error"] = "info"


class SleepOptions(BaseModel):
    duration: int = Field(default=1000, ge=0, le=60_000)


def _compare(left: Any, operator: str, right: Any) -> bool:
    if operator == "eq":
        return left == right
    if operator == "neq":
        return left != right
    if operator == "gt":
        return left > right
    if operator == "gte":
        return left >= right
    if operator == "lt":
        return left < right
    if operator == "lte":
        return left <= right
    if operator == "contains":
        return left is not None and right in left
    if operator == "not_contains":
        return left is None or right not in left
    if operator == "in":
        return right is not None and left in right
    if operator == "exists":
        return left is not None
    if operator == "not_exists":
        return left is None
    if operator == "truthy":
        return bool(left)
    return not left


class ConditionOperation(OperationDefinition):
    """Route the branch along ``success`` or ``failure`` edges.

    A false condition is not an error: the branch simply continues on the
    ``failure`` edge when one exists.
    """

    type = "condition"
    name = "Condition"
    description = "Compare two values and branch on the result."
    category = "logic"
    options_schema = ConditionOptions
    default_options = {"operator": "truthy"}

    def execute(self, options: ConditionOptions, context: OperationContext) -> StepResult:
        try:
            passed = _compare(options.left, options.operator, options.right)
        except TypeError as exc:
            raise OperationError(
                f"cannot compare {options.left!r} {options.operator} {options.right!r}"
            ) from exc
        branch = SUCCESS if passed else FAILURE
        return StepResult(output={"result": passed, "branch": branch}, outcome=branch)


class TransformOperation(OperationDefinition):
    type = "transform"
    name = "Transform"
    description = "Build a new value from data chain references."
    category = "data"
    options_schema = TransformOptions

    def execute(self, options: TransformOptions, context: OperationContext) -> StepResult:
        return StepResult(output=options.template)


class LogOperation(OperationDefinition):
    type = "log"
    name = "Log"
    description = "Write a message to the execution log."
    category = "utility"
    options_schema = LogOptions
    default_options = {"level": "info"}

    def execute(self, options: LogOptions, context: OperationContext) -> StepResult:
        message = options.message
        text = message if isinstance(message, str) else json.dumps(message, default=str)
        context.logger.log(
            logging.getLevelName(options.level.upper()),
            "[flow %s] %s: %s",
            context.flow_id,
            context.operation_key,
            text,
        )
        return StepResult(output={"message": message, "level": options.level}, logs=[text])


class SleepOperation(OperationDefinition):
    type = "sleep"
    name = "Sleep"
    description = "Pause the branch for a number of milliseconds."
    category = "utility"
    options_schema = SleepOptions
    default_options = {"duration": 1000}

    def execute(self, options: SleepOptions, context: OperationContext) -> StepResult:
        time.sleep(options.duration / 1000)
        return StepResult(output={"slept_ms": options.duration})
