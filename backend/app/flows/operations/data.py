"""Create, read, update and delete operations on stored records."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from .base import OperationContext, OperationDefinition, StepResult


class CreateDataOptions(BaseModel):
    collection: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


class ReadDataOptions(BaseModel):
    collection: str = Field(min_length=1)
    id: str | int | None = None
    filters: dict[str, Any] = Field(default_factory=dict)
    limit: int = Field(default=50, ge=1, le=1000)


class UpdateDataOptions(BaseModel):
    collection: str = Field(min_length=1)
    id: str | int
    data: dict[str, Any]
    merge: bool = True


class DeleteDataOptions(BaseModel):
    collection: str = Field(min_length=1)
    id: str | int


class CreateDataOperation(OperationDefinition):
    type = "create_data"
    name = "Create Data"
    description = "Create a record in a collection."
    category = "data"
    options_schema = CreateDataOptions

    def execute(self, options: CreateDataOptions, context: OperationContext) -> StepResult:
        record = context.require_records().create(options.collection, options.data)
        return StepResult(output=record, undo=record)

    def compensate(self, options: CreateDataOptions, undo: Any, context: OperationContext) -> None:
        context.require_records().delete(undo["collection"], undo["id"])


class ReadDataOperation(OperationDefinition):
    """Fetch one record by id, or the records matching ``filters``."""

    type = "read_data"
    name = "Read Data"
    description = "Read one record by id or list records matching filters."
    category = "data"
    options_schema = ReadDataOptions
    default_options = {"limit": 50}

    def execute(self, options: ReadDataOptions, context: OperationContext) -> StepResult:
        records = context.require_records()
        if options.id is not None:
            return StepResult(output=records.get(options.collection, options.id))
        found = records.find(options.collection, options.filters, limit=options.limit)
        return StepResult(output={"records": found, "count": len(found)})


class UpdateDataOperation(OperationDefinition):
    type = "update_data"
    name = "Update Data"
    description = "Update a record, merging into or replacing its data."
    category = "data"
    options_schema = UpdateDataOptions
    default_options = {"merge": True}

    def execute(self, options: UpdateDataOptions, context: OperationContext) -> StepResult:
        records = context.require_records()
        before = records.get(options.collection, options.id)
        after = records.update(options.collection, options.id, options.data, merge=options.merge)
        return StepResult(output=after, undo=before)

    def compensate(self, options: UpdateDataOptions, undo: Any, context: OperationContext) -> None:
        context.require_records().restore(undo)


class DeleteDataOperation(OperationDefinition):
    type = "delete_data"
    name = "Delete Data"
    description = "Delete a record from a collection."
    category = "data"
    options_schema = DeleteDataOptions

    def execute(self, options: DeleteDataOptions, context: OperationContext) -> StepResult:
        deleted = context.require_records().delete(options.collection, options.id)
        return StepResult(output={"deleted": True, "id": deleted["id"]}, undo=deleted)

    def compensate(self, options: DeleteDataOptions, undo: Any, context: OperationContext) -> None:
        context.require_records().restore(undo)
