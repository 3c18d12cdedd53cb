"""Entry points used by the REST layer: lifecycle, validation and runs."""
from __future__ import annotations

import copy
import logging
import threading
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from flask import Flask, current_app

from ..extensions import db
from ..models.flow import TRIGGER_TYPES, Flow, FlowConnection, FlowOperation
from ..utils.timestamps import isoformat
from .compiler import CompiledFlow, ValidationIssue, canvas_to_graph, compile_flow
from .context import has_reference
from .errors import (
    FlowNotFoundError,
    FlowStateError,
    GraphValidationError,
    ValidationError,
    describe_exception,
)
from .executor import FlowExecutor
from .graph import TRIGGER_ID, Connection, FlowGraph, OperationNode
from .operations import OperationRegistry
from .operations import registry as default_registry
from .records import RecordStore
from .recorder import ExecutionRecorder
from .settings import EngineSettings
from .store import ExecutionRecord, SqlFlowStore

logger = logging.getLogger(__name__)

EDITABLE_STATUSES = ("draft", "inactive")
STRUCTURAL_FIELDS = ("trigger_type", "trigger_config", "canvas_state", "operations", "connections")


@dataclass
class ExecutionHandle:
    """A run started with ``wait=False``."""

    record: ExecutionRecord
    thread: threading.Thread
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def execution_id(self) -> int:
        return self.record.id

    def cancel(self) -> None:
        self.cancel_event.set()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the run to finish, returning ``True`` once it has."""

        self.thread.join(timeout)
        return not self.thread.is_alive()


def _store() -> SqlFlowStore:
    return SqlFlowStore(db.session)


def _settings() -> EngineSettings:
    return EngineSettings.from_config(current_app.config)


def get_flow_model(flow_id: int) -> Flow:
    flow = db.session.get(Flow, flow_id)
    if flow is None:
        raise FlowNotFoundError(f"flow {flow_id} not found", flow_id=flow_id)
    return flow


def serialize_flow(flow: Flow, *, include_graph: bool = True) -> dict[str, Any]:
    """Return a JSON serialisable representation of a flow."""

    payload: dict[str, Any] = {
        "id": flow.id,
        "name": flow.name,
        "description": flow.description,
        "status": flow.status,
        "trigger_type": flow.trigger_type,
        "trigger_config": flow.trigger_config or {},
        "created_at": isoformat(flow.created_at),
        "updated_at": isoformat(flow.updated_at),
    }
    if include_graph:
        payload["operations"] = [operation.to_node().to_dict() for operation in flow.operations]
        payload["connections"] = [
            connection.to_connection().to_dict() for connection in flow.connections
        ]
        payload["canvas_state"] = flow.canvas_state
    return payload


def _parse_graph(
    data: Mapping[str, Any],
) -> tuple[list[OperationNode], list[Connection]] | None:
    if "operations" not in data and "connections" not in data:
        return None
    try:
        operations = [OperationNode.from_dict(item) for item in data.get("operations") or []]
        connections = [Connection.from_dict(item) for item in data.get("connections") or []]
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError(
            "operations and connections are malformed",
            errors=[{"field": "operations", "message": f"missing or invalid field: {exc}"}],
        ) from exc
    FlowGraph(operations, connections)
    return operations, connections


def _apply_fields(flow: Flow, data: Mapping[str, Any]) -> None:
    errors: list[dict[str, str]] = []
    if "name" in data:
        name = (data.get("name") or "").strip() if isinstance(data.get("name"), str) else ""
        if not name:
            errors.append({"field": "name", "message": "name is required"})
        else:
            flow.name = name
    if "description" in data:
        flow.description = data.get("description")
    if "trigger_type" in data:
        if data["trigger_type"] not in TRIGGER_TYPES:
            errors.append({"field": "trigger_type", "message": "trigger_type is not supported"})
        else:
            flow.trigger_type = data["trigger_type"]
    if "trigger_config" in data:
        if not isinstance(data["trigger_config"], Mapping):
            errors.append({"field": "trigger_config", "message": "trigger_config must be an object"})
        else:
            flow.trigger_config = dict(data["trigger_config"])
    if "canvas_state" in data:
        if data["canvas_state"] is not None and not isinstance(data["canvas_state"], Mapping):
            errors.append({"field": "canvas_state", "message": "canvas_state must be an object"})
        else:
            flow.canvas_state = copy.deepcopy(data["canvas_state"])
    if errors:
        raise ValidationError("invalid flow", errors=errors)


def _replace_graph(
    flow: Flow, operations: list[OperationNode], connections: list[Connection]
) -> None:
    flow.operations.clear()
    flow.connections.clear()
    db.session.flush()
    flow.operations.extend(FlowOperation.from_node(node) for node in operations)
    flow.connections.extend(FlowConnection.from_connection(edge) for edge in connections)


def _ensure_editable(flow: Flow) -> None:
    if flow.status not in EDITABLE_STATUSES:
        raise FlowStateError(
            f"flow {flow.id} is {flow.status}; deactivate it before editing",
            flow_id=flow.id,
            status=flow.status,
        )


def create_flow(data: Mapping[str, Any]) -> Flow:
    """Create a ``draft`` flow from ``data``."""

    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError(
            "invalid flow", errors=[{"field": "name", "message": "name is required"}]
        )
    graph = _parse_graph(data)

    flow = Flow(status="draft", trigger_config={})
    _apply_fields(flow, data)
    db.session.add(flow)
    try:
        if graph is not None:
            _replace_graph(flow, *graph)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Created flow %s (%s)", flow.id, flow.name)
    return flow


def update_flow(flow_id: int, data: Mapping[str, Any]) -> Flow:
    """Update a flow; structural fields require a draft or inactive flow."""

    flow = get_flow_model(flow_id)
    if any(key in data for key in STRUCTURAL_FIELDS):
        _ensure_editable(flow)
    graph = _parse_graph(data)
    try:
        _apply_fields(flow, data)
        if graph is not None:
            _replace_graph(flow, *graph)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return flow


def update_canvas(flow_id: int, canvas_state: Mapping[str, Any]) -> Flow:
    """Store a new canvas and rebuild the canonical graph from it."""

    flow = get_flow_model(flow_id)
    _ensure_editable(flow)
    if not isinstance(canvas_state, Mapping):
        raise ValidationError(
            "invalid canvas", errors=[{"field": "canvas_state", "message": "must be an object"}]
        )
    operations, connections = canvas_to_graph(canvas_state)
    try:
        flow.canvas_state = copy.deepcopy(dict(canvas_state))
        _replace_graph(flow, operations, connections)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return flow


def validate_flow(
    flow_id: int, *, registry: OperationRegistry | None = None
) -> list[ValidationIssue]:
    """Check a flow without running it."""

    registry = registry if registry is not None else default_registry
    definition = _store().get_flow(flow_id)
    try:
        compiled = compile_flow(definition)
    except GraphValidationError as exc:
        return [
            ValidationIssue(
                "error",
                "invalid_graph",
                exc.message,
                node_id=exc.node_id,
                connection_id=exc.connection_id,
            )
        ]

    issues = list(compiled.issues)
    if not len(compiled.graph):
        issues.append(ValidationIssue("warning", "empty_flow", "flow has no operations"))

    for node in compiled.graph:
        if node.operation_type not in registry:
            issues.append(
                ValidationIssue(
                    "error",
                    "unknown_operation",
                    f"Unknown operation type: {node.operation_type}",
                    node_id=node.id,
                )
            )
            continue
        issues.extend(_option_issues(registry, node))
    return issues


def _option_issues(registry: OperationRegistry, node: OperationNode) -> list[ValidationIssue]:
    try:
        registry.get(node.operation_type).validate_options(node.options)
    except ValidationError as exc:
        issues = []
        for error in exc.errors:
            root = (error.get("field") or "").split(".")[0]
            # Values filled in from the data chain are only known at run time.
            if root and has_reference(node.options.get(root)):
                continue
            issues.append(
                ValidationIssue(
                    "error",
                    "invalid_options",
                    f"{error.get('field') or 'options'}: {error.get('message')}",
                    node_id=node.id,
                )
            )
        return issues
    return []


def activate_flow(flow_id: int) -> Flow:
    """Mark a flow ``active`` once it validates without errors."""

    flow = get_flow_model(flow_id)
    errors = [issue for issue in validate_flow(flow_id) if issue.severity == "error"]
    if errors:
        raise ValidationError(
            f"flow {flow_id} cannot be activated",
            errors=[issue.to_dict() for issue in errors],
        )
    flow.status = "active"
    db.session.commit()
    logger.info("Activated flow %s", flow_id)
    return flow


def deactivate_flow(flow_id: int) -> Flow:
    flow = get_flow_model(flow_id)
    flow.status = "inactive"
    db.session.commit()
    logger.info("Deactivated flow %s", flow_id)
    return flow


def delete_flow(flow_id: int) -> None:
    """Delete a flow and its graph; its executions are kept."""

    flow = get_flow_model(flow_id)
    if flow.status == "active":
        raise FlowStateError(
            f"flow {flow_id} is active; deactivate it before deleting",
            flow_id=flow_id,
            status=flow.status,
        )
    db.session.delete(flow)
    db.session.commit()
    logger.info("Deleted flow %s", flow_id)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def duplicate_flow(flow_id: int, new_name: str | None = None) -> Flow:
    """Copy a flow's graph and canvas under fresh ids as a new ``draft``.

    Operation keys are kept so data chain references keep working. Executions
    are never copied.
    """

    source = get_flow_model(flow_id)
    node_ids: dict[str, str] = {TRIGGER_ID: TRIGGER_ID}
    for operation in source.operations:
        node_ids[operation.node_id] = _new_id("op")

    canvas = copy.deepcopy(source.canvas_state) if source.canvas_state else None
    if isinstance(canvas, dict):
        for node in canvas.get("nodes") or []:
            old_id = str(node.get("id"))
            if old_id not in node_ids:
                node_ids[old_id] = _new_id("op")
            node["id"] = node_ids[old_id]
        for edge in canvas.get("edges") or []:
            edge["id"] = _new_id("edge")
            edge["source"] = node_ids.get(str(edge.get("source")), edge.get("source"))
            edge["target"] = node_ids.get(str(edge.get("target")), edge.get("target"))

    duplicate = Flow(
        name=(new_name or "").strip() or source.name,
        description=source.description,
        status="draft",
        trigger_type=source.trigger_type,
        trigger_config=copy.deepcopy(source.trigger_config or {}),
        canvas_state=canvas,
    )
    for operation in source.operations:
        node = operation.to_node()
        duplicate.operations.append(
            FlowOperation.from_node(
                OperationNode(
                    id=node_ids[node.id],
                    operation_key=node.operation_key,
                    operation_type=node.operation_type,
                    name=node.name,
                    options=copy.deepcopy(node.options),
                    position=node.position,
                    sort_order=node.sort_order,
                )
            )
        )
    for connection in source.connections:
        edge = connection.to_connection()
        duplicate.connections.append(
            FlowConnection.from_connection(
                Connection(
                    id=_new_id("edge"),
                    source_id=node_ids.get(edge.source_id, edge.source_id),
                    target_id=node_ids.get(edge.target_id, edge.target_id),
                    source_handle=edge.source_handle,
                    target_handle=edge.target_handle,
                    connection_type=edge.connection_type,
                    label=edge.label,
                )
            )
        )

    db.session.add(duplicate)
    db.session.commit()
    logger.info("Duplicated flow %s as %s", flow_id, duplicate.id)
    return duplicate


def _executor(recorder: ExecutionRecorder, registry: OperationRegistry | None) -> FlowExecutor:
    return FlowExecutor(
        recorder,
        registry,
        settings=_settings(),
        records=RecordStore(db.session),
        run_flow=lambda child_id, payload, depth: trigger_flow(
            child_id, payload, triggered_by="flow", depth=depth, registry=registry
        ).to_dict(),
    )


def _execute(
    recorder: ExecutionRecorder,
    registry: OperationRegistry | None,
    compiled: CompiledFlow,
    payload: Any,
    record: ExecutionRecord,
    cancel_event: threading.Event | None,
    depth: int,
) -> ExecutionRecord:
    executor = _executor(recorder, registry)
    try:
        return executor.run(compiled, payload, record, cancel_event=cancel_event, depth=depth)
    except Exception as exc:
        db.session.rollback()
        if not recorder.is_finalized(record.id):
            recorder.finish(record.id, "failed", error=describe_exception(exc))
        raise


def _execute_in_background(
    app: Flask,
    registry: OperationRegistry | None,
    compiled: CompiledFlow,
    payload: Any,
    record: ExecutionRecord,
    cancel_event: threading.Event,
    depth: int,
) -> None:
    with app.app_context():
        recorder = ExecutionRecorder(_store())
        try:
            _execute(recorder, registry, compiled, payload, record, cancel_event, depth)
        except Exception:
            logger.exception("Background execution %s of flow %s crashed", record.id, record.flow_id)


def trigger_flow(
    flow_id: int,
    payload: Any = None,
    *,
    triggered_by: str | None = None,
    wait: bool = True,
    cancel_event: threading.Event | None = None,
    depth: int = 0,
    registry: OperationRegistry | None = None,
) -> ExecutionRecord | ExecutionHandle:
    """Run an active flow with ``payload``.

    Inactive and draft flows are rejected with :class:`FlowStateError` before
    any execution record exists; malformed graphs raise
    :class:`GraphValidationError`. With ``wait`` the finalized record is
    returned. Otherwise the run continues on a background thread and an
    :class:`ExecutionHandle` holding the running record is returned.
    """

    store = _store()
    definition = store.get_flow(flow_id)
    if definition.status != "active":
        raise FlowStateError(
            f"flow {flow_id} is {definition.status}; only active flows can be triggered",
            flow_id=flow_id,
            status=definition.status,
        )

    compiled = compile_flow(definition, store)
    recorder = ExecutionRecorder(store)
    record = recorder.begin(flow_id, payload, triggered_by=triggered_by)

    if wait:
        return _execute(recorder, registry, compiled, payload, record, cancel_event, depth)

    event = cancel_event or threading.Event()
    thread = threading.Thread(
        target=_execute_in_background,
        args=(
            current_app._get_current_object(),
            registry,
            compiled,
            payload,
            record,
            event,
            depth,
        ),
        name=f"flow-execution-{record.id}",
        daemon=True,
    )
    thread.start()
    return ExecutionHandle(record=record, thread=thread, cancel_event=event)


def get_execution(execution_id: int) -> ExecutionRecord:
    return _store().get_execution(execution_id)


def list_executions(
    flow_id: int | None = None, status: str | None = None, limit: int = 50
) -> list[ExecutionRecord]:
    return _store().list_executions(flow_id=flow_id, status=status, limit=limit)


__all__ = [
    "ExecutionHandle",
    "activate_flow",
    "create_flow",
    "deactivate_flow",
    "delete_flow",
    "duplicate_flow",
    "get_execution",
    "get_flow_model",
    "list_executions",
    "serialize_flow",
    "trigger_flow",
    "update_canvas",
    "update_flow",
    "validate_flow",
]
