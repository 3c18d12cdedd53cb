"""Tests for the flow graph model."""
from __future__ import annotations

import pytest

from backend.app.flows.errors import GraphValidationError
from backend.app.flows.graph import TRIGGER_ID, Connection, FlowGraph, OperationNode


def _op(node_id: str, sort_order: int = 0, operation_type: str = "transform") -> OperationNode:
    return OperationNode(
        id=node_id, operation_key=node_id, operation_type=operation_type, sort_order=sort_order
    )


def _edge(source: str, target: str, kind: str = "default", edge_id: str | None = None) -> Connection:
    return Connection(
        id=edge_id or f"{source}->{target}:{kind}",
        source_id=source,
        target_id=target,
        connection_type=kind,
    )


def test_duplicate_operation_key_is_rejected():
    first = OperationNode(id="a", operation_key="same", operation_type="log")
    second = OperationNode(id="b", operation_key="same", operation_type="log")

    with pytest.raises(GraphValidationError) as excinfo:
        FlowGraph([first, second], [])

    assert excinfo.value.node_id == "b"


def test_dangling_target_names_the_connection():
    with pytest.raises(GraphValidationError) as excinfo:
        FlowGraph([_op("a")], [_edge(TRIGGER_ID, "a"), _edge("a", "ghost", edge_id="e2")])

    assert excinfo.value.connection_id == "e2"
    assert excinfo.value.node_id == "ghost"


def test_dangling_source_is_rejected():
    with pytest.raises(GraphValidationError):
        FlowGraph([_op("a")], [_edge("ghost", "a")])


def test_trigger_cannot_be_a_target_or_an_operation_id():
    with pytest.raises(GraphValidationError):
        FlowGraph([_op("a")], [_edge(TRIGGER_ID, "a"), _edge("a", TRIGGER_ID)])

    with pytest.raises(GraphValidationError):
        FlowGraph([_op(TRIGGER_ID)], [])


def test_unknown_connection_type_is_rejected():
    with pytest.raises(GraphValidationError) as excinfo:
        FlowGraph([_op("a")], [_edge(TRIGGER_ID, "a", kind="sometimes", edge_id="odd")])

    assert excinfo.value.connection_id == "odd"


def test_cycles_are_rejected():
    operations = [_op("a"), _op("b"), _op("c")]
    connections = [
        _edge(TRIGGER_ID, "a"),
        _edge("a", "b"),
        _edge("b", "c"),
        _edge("c", "a"),
    ]

    with pytest.raises(GraphValidationError) as excinfo:
        FlowGraph(operations, connections)

    assert "cycle" in excinfo.value.message
    assert excinfo.value.node_id in {"a", "b", "c"}


def test_next_nodes_follows_outcome_specific_edges():
    graph = FlowGraph(
        [_op("check"), _op("yes"), _op("no")],
        [
            _edge(TRIGGER_ID, "check"),
            _edge("check", "yes", "success"),
            _edge("check", "no", "failure"),
        ],
    )

    assert graph.next_nodes("check", "success") == ["yes"]
    assert graph.next_nodes("check", "failure") == ["no"]


def test_success_falls_back_to_default_edges_but_failure_does_not():
    graph = FlowGraph(
        [_op("a"), _op("b")],
        [_edge(TRIGGER_ID, "a"), _edge("a", "b")],
    )

    assert graph.next_nodes("a", "success") == ["b"]
    assert graph.next_nodes("a", "failure") == []


def test_next_nodes_are_ordered_by_sort_order():
    graph = FlowGraph(
        [_op("late", sort_order=5), _op("early", sort_order=1)],
        [_edge(TRIGGER_ID, "late"), _edge(TRIGGER_ID, "early")],
    )

    assert graph.next_nodes(TRIGGER_ID, "success") == ["early", "late"]


def test_unreachable_nodes_are_reported_not_dropped():
    graph = FlowGraph(
        [_op("a"), _op("orphan"), _op("orphan_child")],
        [_edge(TRIGGER_ID, "a"), _edge("orphan", "orphan_child")],
    )

    assert graph.unreachable() == ["orphan", "orphan_child"]
    assert "orphan" in graph
    assert len(graph) == 3


def test_topological_order_is_stable_and_starts_from_the_trigger():
    graph = FlowGraph(
        [_op("d"), _op("c"), _op("b"), _op("a")],
        [
            _edge(TRIGGER_ID, "a"),
            _edge("a", "b"),
            _edge("a", "c"),
            _edge("b", "d"),
            _edge("c", "d"),
        ],
    )

    order = graph.topological_order()

    assert order[0] == "a"
    assert order[-1] == "d"
    assert order.index("b") < order.index("d")
    assert order.index("c") < order.index("d")
    assert graph.topological_order() == order


def test_operation_node_round_trips_position():
    node = OperationNode.from_dict(
        {
            "id": "n1",
            "operation_key": "n1",
            "operation_type": "log",
            "position": {"x": 10, "y": 20},
            "options": {"message": "hi"},
        }
    )

    assert node.position == (10.0, 20.0)
    assert node.to_dict()["position"] == {"x": 10.0, "y": 20.0}


def test_predecessors_are_distinct_sources():
    graph = FlowGraph(
        [_op("check"), _op("join")],
        [
            _edge(TRIGGER_ID, "check"),
            _edge(TRIGGER_ID, "join"),
            _edge("check", "join", "success"),
            _edge("check", "join", "failure"),
        ],
    )

    assert graph.predecessors("join") == [TRIGGER_ID, "check"]
    assert graph.predecessors("check") == [TRIGGER_ID]
    assert graph.predecessors(TRIGGER_ID) == []
