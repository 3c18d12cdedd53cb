"""Operation that triggers another flow."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from ..errors import OperationError
from .base import OperationContext, OperationDefinition, StepResult


class TriggerFlowOptions(BaseModel):
    flow_id: int = Field(ge=1)
    payload: Any = None


class TriggerFlowOperation(OperationDefinition):
    """Run another active flow synchronously and expose its outcome.

    Nesting is bounded by the configured maximum flow depth so flows that
    trigger each other cannot recurse without end.
    """

    type = "trigger_flow"
    name = "Trigger Flow"
    description = "Run another flow with a payload and wait for it to finish."
    category = "flow"
    options_schema = TriggerFlowOptions

    def execute(self, options: TriggerFlowOptions, context: OperationContext) -> StepResult:
        if context.run_flow is None:
            raise OperationError("triggering other flows is not available here")

        depth = context.depth + 1
        if depth > context.settings.max_flow_depth:
            raise OperationError(
                f"maximum flow depth of {context.settings.max_flow_depth} exceeded",
                depth=depth,
            )

        payload = options.payload if options.payload is not None else context.last
        record = context.run_flow(options.flow_id, payload, depth)
        output = {
            "flow_id": options.flow_id,
            "execution_id": record["id"],
            "status": record["status"],
            "outputs": {
                result["operation_key"]: result["output"]
                for result in record.get("results", [])
                if result.get("operation_key")
            },
        }
        if record["status"] != "completed":
            error = OperationError(
                f"flow {options.flow_id} finished with status {record['status']}",
                execution_id=record["id"],
            )
            return StepResult(output=output, error=error.to_dict())
        return StepResult(output=output)
