"""Reconcile a flow's canvas layout with its canonical operation graph."""
from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from .errors import GraphValidationError
from .graph import DEFAULT, FAILURE, SUCCESS, TRIGGER_ID, Connection, FlowGraph, OperationNode
from .store import FlowDefinition, FlowStore

logger = logging.getLogger(__name__)

SOURCE_OPERATIONS = "operations"
SOURCE_CANVAS = "canvas"

UNKNOWN_OPERATION_TYPE = "unknown"

_HANDLE_TYPES = {
    "default": DEFAULT,
    "success": SUCCESS,
    "true": SUCCESS,
    "failure": FAILURE,
    "false": FAILURE,
    "error": FAILURE,
}


@dataclass(frozen=True)
class ValidationIssue:
    """A problem found while checking a flow without running it."""

    severity: str
    code: str
    message: str
    node_id: str | None = None
    connection_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity,
            "code": self.code,
            "message": self.message,
            "node_id": self.node_id,
            "connection_id": self.connection_id,
        }


@dataclass
class CompiledFlow:
    """Executable snapshot of a flow resolved at the start of a run."""

    flow_id: Any
    graph: FlowGraph
    source: str
    issues: list[ValidationIssue] = field(default_factory=list)


def _canvas_items(canvas_state: Mapping[str, Any] | None, key: str) -> list[dict[str, Any]]:
    if not isinstance(canvas_state, Mapping):
        return []
    items = canvas_state.get(key) or []
    return [item for item in items if isinstance(item, Mapping)]


def has_canvas_graph(canvas_state: Mapping[str, Any] | None) -> bool:
    """Return whether the canvas holds anything besides the trigger."""

    nodes = _canvas_items(canvas_state, "nodes")
    return any(not _is_trigger_node(node) for node in nodes)


def _is_trigger_node(node: Mapping[str, Any]) -> bool:
    return str(node.get("id")) == TRIGGER_ID or node.get("type") == "trigger"


def _connection_type(edge: Mapping[str, Any]) -> str:
    data = edge.get("data") or {}
    explicit = data.get("connectionType") or edge.get("connection_type")
    if explicit in _HANDLE_TYPES:
        return _HANDLE_TYPES[explicit]
    handle = str(edge.get("sourceHandle") or "").lower()
    return _HANDLE_TYPES.get(handle, DEFAULT)


def canvas_to_graph(
    canvas_state: Mapping[str, Any] | None,
) -> tuple[list[OperationNode], list[Connection]]:
    """Map React Flow style nodes and edges to operations and connections.

    Canvas node ids become operation ids and the trigger node is dropped in
    favour of the implicit trigger. ``sort_order`` follows a stable
    topological walk from the trigger, ties broken by canvas order.
    """

    trigger_aliases = {TRIGGER_ID}
    operations: list[OperationNode] = []
    for node in _canvas_items(canvas_state, "nodes"):
        node_id = str(node.get("id"))
        if _is_trigger_node(node):
            trigger_aliases.add(node_id)
            continue
        data = node.get("data") or {}
        position = node.get("position")
        if not isinstance(position, Mapping):
            position = {}
        operations.append(
            OperationNode(
                id=node_id,
                operation_key=str(data.get("operationKey") or node_id),
                operation_type=str(data.get("operationType") or UNKNOWN_OPERATION_TYPE),
                name=data.get("label") or data.get("operationKey"),
                options=dict(data.get("options") or {}),
                position=(float(position.get("x") or 0), float(position.get("y") or 0)),
            )
        )

    connections: list[Connection] = []
    for index, edge in enumerate(_canvas_items(canvas_state, "edges")):
        source = str(edge.get("source"))
        target = str(edge.get("target"))
        connections.append(
            Connection(
                id=str(edge.get("id") or f"e-{source}-{target}-{index}"),
                source_id=TRIGGER_ID if source in trigger_aliases else source,
                target_id=TRIGGER_ID if target in trigger_aliases else target,
                source_handle=edge.get("sourceHandle") or DEFAULT,
                target_handle=edge.get("targetHandle") or DEFAULT,
                connection_type=_connection_type(edge),
                label=edge.get("label") if isinstance(edge.get("label"), str) else None,
            )
        )

    canvas_index = {operation.id: index for index, operation in enumerate(operations)}
    order = FlowGraph(operations, connections).topological_order(
        priority=lambda node_id: canvas_index[node_id]
    )
    rank = {node_id: position for position, node_id in enumerate(order)}
    ordered = sorted(operations, key=lambda operation: rank[operation.id])
    return [replace(operation, sort_order=rank[operation.id]) for operation in ordered], connections


def _fingerprint(
    operations: list[OperationNode], connections: list[Connection]
) -> tuple[set[tuple[Any, ...]], set[tuple[str, str, str]]]:
    nodes = {
        (
            operation.id,
            operation.operation_key,
            operation.operation_type,
            json.dumps(operation.options, sort_keys=True, default=str),
        )
        for operation in operations
    }
    edges = {
        (connection.source_id, connection.target_id, connection.connection_type)
        for connection in connections
    }
    return nodes, edges


def _drift_issues(definition: FlowDefinition) -> list[ValidationIssue]:
    if not has_canvas_graph(definition.canvas_state):
        return []
    try:
        derived = canvas_to_graph(definition.canvas_state)
    except GraphValidationError as exc:
        return [
            ValidationIssue(
                "warning",
                "canvas_drift",
                f"canvas cannot be compiled and differs from the saved graph: {exc}",
            )
        ]
    if _fingerprint(*derived) != _fingerprint(
        list(definition.operations), list(definition.connections)
    ):
        return [
            ValidationIssue(
                "warning",
                "canvas_drift",
                "canvas differs from the saved operations; the saved operations are used",
            )
        ]
    return []


def unreachable_issues(graph: FlowGraph) -> list[ValidationIssue]:
    return [
        ValidationIssue(
            "warning",
            "unreachable_node",
            f"operation {node_id!r} is not reachable from the trigger",
            node_id=node_id,
        )
        for node_id in graph.unreachable()
    ]


def compile_flow(definition: FlowDefinition, store: FlowStore | None = None) -> CompiledFlow:
    """Resolve the executable graph of ``definition``.

    Saved operations and connections win whenever any exist. Otherwise the
    graph is derived from the canvas and, when ``store`` is given, persisted
    so later runs skip the derivation. Raises ``GraphValidationError`` for
    malformed graphs.
    """

    if definition.operations:
        graph = FlowGraph(definition.operations, definition.connections)
        issues = _drift_issues(definition)
        source = SOURCE_OPERATIONS
    else:
        operations, connections = canvas_to_graph(definition.canvas_state)
        graph = FlowGraph(operations, connections)
        issues = []
        source = SOURCE_CANVAS
        if store is not None and operations:
            store.save_canonical_graph(definition.id, operations, connections)
            logger.info(
                "Derived %s operations for flow %s from its canvas", len(operations), definition.id
            )

    issues.extend(unreachable_issues(graph))
    return CompiledFlow(flow_id=definition.id, graph=graph, source=source, issues=issues)


__all__ = [
    "CompiledFlow",
    "SOURCE_CANVAS",
    "SOURCE_OPERATIONS",
    "ValidationIssue",
    "canvas_to_graph",
    "compile_flow",
    "has_canvas_graph",
    "unreachable_issues",
]
