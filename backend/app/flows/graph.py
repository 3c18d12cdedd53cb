"""Typed graph model of a flow: one implicit trigger plus operation nodes."""
from __future__ import annotations

import heapq
from collections import deque
from collections.abc import Callable, Iterable, Iterator
from dataclasses import asdict, dataclass, field
from typing import Any

from .errors import GraphValidationError

TRIGGER_ID = "trigger"

DEFAULT = "default"
SUCCESS = "success"
FAILURE = "failure"
CONNECTION_TYPES = (DEFAULT, SUCCESS, FAILURE)


@dataclass(frozen=True)
class OperationNode:
    """One executable step of a flow."""

    id: str
    operation_key: str
    operation_type: str
    name: str | None = None
    options: dict[str, Any] = field(default_factory=dict)
    position: tuple[float, float] = (0.0, 0.0)
    sort_order: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OperationNode:
        position = data.get("position")
        if isinstance(position, dict):
            position = (float(position.get("x") or 0), float(position.get("y") or 0))
        elif not isinstance(position, (tuple, list)) or len(position) != 2:
            position = (float(data.get("position_x") or 0), float(data.get("position_y") or 0))
        return cls(
            id=str(data["id"]),
            operation_key=str(data["operation_key"]),
            operation_type=str(data["operation_type"]),
            name=data.get("name"),
            options=dict(data.get("options") or {}),
            position=(float(position[0]), float(position[1])),
            sort_order=int(data.get("sort_order") or 0),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["position"] = {"x": self.position[0], "y": self.position[1]}
        return payload


@dataclass(frozen=True)
class Connection:
    """A directed edge between two nodes of a flow."""

    id: str
    source_id: str
    target_id: str
    source_handle: str = DEFAULT
    target_handle: str = DEFAULT
    connection_type: str = DEFAULT
    label: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Connection:
        return cls(
            id=str(data["id"]),
            source_id=str(data["source_id"]),
            target_id=str(data["target_id"]),
            source_handle=data.get("source_handle") or DEFAULT,
            target_handle=data.get("target_handle") or DEFAULT,
            connection_type=data.get("connection_type") or DEFAULT,
            label=data.get("label"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class FlowGraph:
    """Validated, acyclic graph of operations rooted at the trigger node."""

    def __init__(
        self,
        operations: Iterable[OperationNode],
        connections: Iterable[Connection],
    ) -> None:
        self._nodes: dict[str, OperationNode] = {}
        self._index: dict[str, int] = {}
        self._outgoing: dict[str, list[Connection]] = {TRIGGER_ID: []}
        self._connections: list[Connection] = []
        self._incoming: dict[str, list[str]] = {}

        keys: dict[str, str] = {}
        for index, operation in enumerate(operations):
            if operation.id == TRIGGER_ID:
                raise GraphValidationError(
                    "the trigger id is reserved and cannot name an operation",
                    node_id=operation.id,
                )
            if operation.id in self._nodes:
                raise GraphValidationError(
                    f"duplicate operation id {operation.id!r}", node_id=operation.id
                )
            if operation.operation_key in keys:
                raise GraphValidationError(
                    f"duplicate operation_key {operation.operation_key!r}",
                    node_id=operation.id,
                )
            keys[operation.operation_key] = operation.id
            self._nodes[operation.id] = operation
            self._index[operation.id] = index
            self._outgoing[operation.id] = []

        seen_connections: set[str] = set()
        for connection in connections:
            if connection.id in seen_connections:
                raise GraphValidationError(
                    f"duplicate connection id {connection.id!r}",
                    connection_id=connection.id,
                )
            seen_connections.add(connection.id)
            if connection.connection_type not in CONNECTION_TYPES:
                raise GraphValidationError(
                    f"invalid connection_type {connection.connection_type!r}",
                    connection_id=connection.id,
                )
            if connection.source_id not in self._outgoing:
                raise GraphValidationError(
                    f"connection source {connection.source_id!r} does not exist",
                    connection_id=connection.id,
                    node_id=connection.source_id,
                )
            if connection.target_id == TRIGGER_ID:
                raise GraphValidationError(
                    "the trigger cannot be the target of a connection",
                    connection_id=connection.id,
                    node_id=TRIGGER_ID,
                )
            if connection.target_id not in self._nodes:
                raise GraphValidationError(
                    f"connection target {connection.target_id!r} does not exist",
                    connection_id=connection.id,
                    node_id=connection.target_id,
                )
            self._outgoing[connection.source_id].append(connection)
            sources = self._incoming.setdefault(connection.target_id, [])
            if connection.source_id not in sources:
                sources.append(connection.source_id)
            self._connections.append(connection)

        self._order = self._topological_order(self._default_priority)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[OperationNode]:
        return iter(self._nodes.values())

    @property
    def operations(self) -> list[OperationNode]:
        return list(self._nodes.values())

    @property
    def connections(self) -> list[Connection]:
        return list(self._connections)

    def node(self, node_id: str) -> OperationNode:
        return self._nodes[node_id]

    def outgoing(self, node_id: str) -> list[Connection]:
        return list(self._outgoing.get(node_id, []))

    def predecessors(self, node_id: str) -> list[str]:
        """Return the distinct sources of connections into ``node_id``."""

        return list(self._incoming.get(node_id, []))

    def next_nodes(self, node_id: str, outcome: str) -> list[str]:
        """Return the targets reached from ``node_id`` for the given outcome.

        Success follows ``success`` edges, or ``default`` edges when the node
        has no ``success`` edge. Failure only follows ``failure`` edges.
        """

        edges = self._outgoing.get(node_id, [])
        matching = [edge for edge in edges if edge.connection_type == outcome]
        if not matching and outcome == SUCCESS:
            matching = [edge for edge in edges if edge.connection_type == DEFAULT]

        targets: list[str] = []
        for edge in matching:
            if edge.target_id not in targets:
                targets.append(edge.target_id)
        return sorted(targets, key=self._default_priority)

    def reachable(self) -> set[str]:
        """Return the ids of every node reachable from the trigger."""

        visited: set[str] = set()
        queue = deque([TRIGGER_ID])
        while queue:
            current = queue.popleft()
            for edge in self._outgoing.get(current, []):
                if edge.target_id not in visited:
                    visited.add(edge.target_id)
                    queue.append(edge.target_id)
        return visited

    def unreachable(self) -> list[str]:
        """Return the ids of nodes the trigger can never reach (dead code)."""

        reachable = self.reachable()
        return [node_id for node_id in self._nodes if node_id not in reachable]

    def topological_order(
        self, priority: Callable[[str], Any] | None = None
    ) -> list[str]:
        """Return node ids in a stable topological order starting at the trigger."""

        if priority is None:
            return list(self._order)
        return self._topological_order(priority)

    def _default_priority(self, node_id: str) -> tuple[int, int]:
        return self._nodes[node_id].sort_order, self._index[node_id]

    def _topological_order(self, priority: Callable[[str], Any]) -> list[str]:
        indegree: dict[str, int] = {node_id: 0 for node_id in self._outgoing}
        for edges in self._outgoing.values():
            for target in {edge.target_id for edge in edges}:
                indegree[target] += 1

        reachable = self.reachable()

        def _key(node_id: str) -> tuple[Any, ...]:
            if node_id == TRIGGER_ID:
                return (-1,)
            return (0 if node_id in reachable else 1, priority(node_id), node_id)

        heap: list[tuple[tuple[Any, ...], str]] = []
        for node_id, degree in indegree.items():
            if degree == 0:
                heapq.heappush(heap, (_key(node_id), node_id))

        ordered: list[str] = []
        while heap:
            _, node_id = heapq.heappop(heap)
            ordered.append(node_id)
            for target in {edge.target_id for edge in self._outgoing[node_id]}:
                indegree[target] -= 1
                if indegree[target] == 0:
                    heapq.heappush(heap, (_key(target), target))

        if len(ordered) != len(indegree):
            stuck = sorted(node_id for node_id, degree in indegree.items() if degree > 0)
            raise GraphValidationError(
                f"cycle detected in flow graph involving {', '.join(stuck)}",
                node_id=stuck[0],
            )

        return [node_id for node_id in ordered if node_id != TRIGGER_ID]


__all__ = [
    "CONNECTION_TYPES",
    "Connection",
    "DEFAULT",
    "FAILURE",
    "FlowGraph",
    "OperationNode",
    "SUCCESS",
    "TRIGGER_ID",
]
