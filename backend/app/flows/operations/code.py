"""Custom code operation backed by the subprocess sandbox."""
from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from ..sandbox import DEFAULT_TIMEOUT_MS, run_code
from .base import OperationContext, OperationDefinition, StepResult

EXAMPLE_CODE = '''
def run(message, context):
    """Return an augmented copy of the previous output."""

    data = dict(message or {})
    data["seen_at"] = datetime.datetime.now(datetime.timezone.utc).isoformat()
    console.log("keys", sorted(data))
    return data
'''


class ExecuteCodeOptions(BaseModel):
    code: str = Field(min_length=1)
    timeout: int = Field(default=DEFAULT_TIMEOUT_MS, ge=1, le=300_000)

    @field_validator("code")
    @classmethod
    def _requires_run(cls, value: str) -> str:
        if "def run(" not in value:
            raise ValueError("code must define a run function")
        return value


class ExecuteCodeOperation(OperationDefinition):
    """Run user-authored Python with an allow-listed global surface.

    ``run(message, context)`` receives ``$last`` as ``message`` and the full
    data chain (``$trigger``, ``$last``, ``$input``, ``$context``) as
    ``context``. The return value becomes the node output and console output
    is kept as logs.
    """

    type = "execute_code"
    name = "Execute Code"
    description = "Run custom Python code in a sandbox with a timeout."
    category = "code"
    options_schema = ExecuteCodeOptions
    default_options = {"timeout": DEFAULT_TIMEOUT_MS}

    def execute(self, options: ExecuteCodeOptions, context: OperationContext) -> StepResult:
        result = run_code(
            options.code,
            context.last,
            context.data,
            timeout_ms=options.timeout,
            allowed_hosts=context.settings.sandbox_allowed_hosts,
            memory_limit_mb=context.settings.sandbox_memory_limit_mb,
        )
        if result.debug:
            context.logger.debug("sandbox stderr for %s: %s", context.operation_key, result.debug)
        return StepResult(output=result.output, logs=result.logs)
