"""Batch mutation across many records."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from ..errors import ValidationError, describe_exception
from .base import OperationContext, OperationDefinition, StepResult


class BulkUpdateOptions(BaseModel):
    collection: str = Field(min_length=1)
    items: list[Any]
    continue_on_error: bool = True
    max_items: int = Field(default=100, ge=1)
    merge: bool = True


class BulkUpdateDataOperation(OperationDefinition):
    """Update many records sequentially, reporting a result per item.

    Each item is ``{"id": ..., "data": {...}}``. With ``continue_on_error``
    every item is attempted; otherwise the first failure stops the batch and
    the partial results are returned together with the error. Items that are
    not objects fail individually. The updates applied before an abort stay
    registered for compensation.
    """

    type = "bulk_update_data"
    name = "Bulk Update Data"
    description = "Update many records in one step with per-item results."
    category = "data"
    options_schema = BulkUpdateOptions
    default_options = {"continue_on_error": True, "max_items": 100, "merge": True}

    def execute(self, options: BulkUpdateOptions, context: OperationContext) -> StepResult:
        ceiling = min(options.max_items, context.settings.bulk_max_items_limit)
        if len(options.items) > ceiling:
            raise ValidationError(
                f"{len(options.items)} items exceed the limit of {ceiling}",
                errors=[{"field": "items", "message": f"at most {ceiling} items allowed"}],
            )

        records = context.require_records()
        results: list[dict[str, Any]] = []
        previous: list[dict[str, Any]] = []
        updated = 0
        failed = 0

        for index, item in enumerate(options.items):
            try:
                if not isinstance(item, dict):
                    raise ValidationError("item must be an object")
                if "id" not in item:
                    raise ValidationError("item is missing an id")
                data = item.get("data")
                if not isinstance(data, dict):
                    raise ValidationError("item data must be an object")
                before = records.get(options.collection, item["id"])
                result = records.update(options.collection, item["id"], data, merge=options.merge)
            except Exception as exc:
                failed += 1
                error = describe_exception(exc)
                results.append({"index": index, "ok": False, "error": error})
                context.logger.info(
                    "bulk item %s of %s failed: %s", index, context.operation_key, error["message"]
                )
                if not options.continue_on_error:
                    output = {"updated": updated, "failed": failed, "results": results}
                    return StepResult(
                        output=output,
                        error={**error, "index": index},
                        undo=previous,
                    )
                continue

            updated += 1
            previous.append(before)
            results.append({"index": index, "ok": True, "result": result})

        return StepResult(
            output={"updated": updated, "failed": failed, "results": results},
            undo=previous,
        )

    def compensate(self, options: BulkUpdateOptions, undo: Any, context: OperationContext) -> None:
        records = context.require_records()
        for snapshot in reversed(undo or []):
            records.restore(snapshot)
