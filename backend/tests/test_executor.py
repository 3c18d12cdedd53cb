"""Tests for walking compiled flows with the DAG executor."""
from __future__ import annotations

import threading
from typing import Any

import pytest
from pydantic import BaseModel

from backend.app.flows.compiler import CompiledFlow
from backend.app.flows.errors import AlreadyFinalizedError, OperationError
from backend.app.flows.executor import FlowExecutor
from backend.app.flows.graph import TRIGGER_ID, Connection, FlowGraph, OperationNode
from backend.app.flows.operations import OperationDefinition, StepResult, registry
from backend.app.flows.recorder import ExecutionRecorder


class ValueOptions(BaseModel):
    value: Any = None


class EchoOperation(OperationDefinition):
    type = "echo"
    name = "Echo"
    options_schema = ValueOptions

    def execute(self, options, context):
        return StepResult(output=options.value)


class FailOperation(OperationDefinition):
    type = "fail"
    name = "Fail"
    options_schema = ValueOptions

    def execute(self, options, context):
        raise OperationError(options.value or "boom")


class CrashOperation(OperationDefinition):
    type = "crash"
    name = "Crash"
    options_schema = ValueOptions

    def execute(self, options, context):
        raise RuntimeError("unexpected crash")


class TrackOperation(OperationDefinition):
    type = "track"
    name = "Track"
    options_schema = ValueOptions

    def __init__(self) -> None:
        self.undone: list[Any] = []

    def execute(self, options, context):
        return StepResult(output={"tracked": options.value}, undo=options.value)

    def compensate(self, options, undo, context):
        self.undone.append(undo)


class PartialOperation(TrackOperation):
    type = "partial"
    name = "Partial"

    def execute(self, options, context):
        return StepResult(
            output={"tracked": options.value},
            error={"type": "OperationError", "message": "stopped part way"},
            undo=options.value,
        )


class CancelOperation(OperationDefinition):
    type = "cancel_run"
    name = "Cancel"
    options_schema = ValueOptions

    def __init__(self, event: threading.Event) -> None:
        self.event = event

    def execute(self, options, context):
        self.event.set()
        return StepResult(output="stopping")


def _op(node_id: str, operation_type: str = "echo", **options: Any) -> OperationNode:
    return OperationNode(
        id=node_id, operation_key=node_id, operation_type=operation_type, options=options
    )


def _edge(source: str, target: str, kind: str = "default") -> Connection:
    return Connection(
        id=f"{source}->{target}", source_id=source, target_id=target, connection_type=kind
    )


def _compiled(operations, connections) -> CompiledFlow:
    return CompiledFlow(
        flow_id=1, graph=FlowGraph(operations, connections), source="operations"
    )


@pytest.fixture()
def tracker():
    return TrackOperation()


@pytest.fixture()
def partial():
    return PartialOperation()


@pytest.fixture()
def cancel_event():
    return threading.Event()


@pytest.fixture()
def run(memory_store, tracker, partial, cancel_event):
    memory_store.add_flow(1)
    recorder = ExecutionRecorder(memory_store)
    test_registry = registry.extended(
        EchoOperation(),
        FailOperation(),
        CrashOperation(),
        tracker,
        partial,
        CancelOperation(cancel_event),
    )
    executor = FlowExecutor(recorder, test_registry)

    def _run(operations, connections, payload=None, **kwargs):
        record = recorder.begin(1, payload)
        return executor.run(_compiled(operations, connections), payload, record, **kwargs)

    _run.recorder = recorder
    return _run


def _by_node(record) -> dict[str, Any]:
    return {result.node_id: result for result in record.results}


def test_success_visits_success_branch_only(run):
    record = run(
        [_op("a", value="ok"), _op("b", value="$last"), _op("c", value="handled")],
        [_edge(TRIGGER_ID, "a"), _edge("a", "b", "success"), _edge("a", "c", "failure")],
    )

    assert record.status == "completed"
    assert [result.node_id for result in record.results] == ["a", "b"]
    assert _by_node(record)["b"].output == "ok"


def test_failure_routes_along_failure_edge_with_error_in_last(run):
    record = run(
        [
            _op("a", "fail", value="card declined"),
            _op("b", value="never"),
            _op("c", value="$last.error.message"),
        ],
        [_edge(TRIGGER_ID, "a"), _edge("a", "b", "success"), _edge("a", "c", "failure")],
    )

    results = _by_node(record)
    assert record.status == "completed"
    assert "b" not in results
    assert results["a"].status == "failure"
    assert results["a"].error == {"type": "OperationError", "message": "card declined"}
    assert results["c"].output == "card declined"


def test_unhandled_failure_fails_execution_but_siblings_complete(run):
    record = run(
        [_op("x", "does_not_exist"), _op("y", value=1), _op("z", value="$last")],
        [_edge(TRIGGER_ID, "x"), _edge(TRIGGER_ID, "y"), _edge("y", "z")],
    )

    results = _by_node(record)
    assert record.status == "failed"
    assert record.error["node_ids"] == ["x"]
    assert results["x"].error["type"] == "UnknownOperationError"
    assert results["y"].status == "success"
    assert results["z"].output == 1


def test_unexpected_exception_is_contained_in_node_result(run):
    record = run([_op("boom", "crash")], [_edge(TRIGGER_ID, "boom")])

    assert record.status == "failed"
    assert record.results[0].error == {"type": "RuntimeError", "message": "unexpected crash"}


def test_invalid_options_fail_only_that_node(run):
    record = run(
        [_op("check", "condition", operator="sometimes"), _op("other", value=2)],
        [_edge(TRIGGER_ID, "check"), _edge(TRIGGER_ID, "other")],
    )

    results = _by_node(record)
    assert results["check"].error["type"] == "ValidationError"
    assert results["check"].error["errors"][0]["field"] == "operator"
    assert results["other"].output == 2


def test_diamond_nodes_are_visited_once(run):
    record = run(
        [_op("a", value="A"), _op("b", value="B"), _op("c", value="C"), _op("d", value="$last")],
        [
            _edge(TRIGGER_ID, "a"),
            _edge("a", "b"),
            _edge("a", "c"),
            _edge("b", "d"),
            _edge("c", "d"),
        ],
    )

    visited = [result.node_id for result in record.results]
    assert sorted(visited) == ["a", "b", "c", "d"]
    assert visited.count("d") == 1
    assert _by_node(record)["d"].output == "B"


def test_branches_keep_their_own_last(run):
    record = run(
        [
            _op("left", value="L"),
            _op("right", value="R"),
            _op("left_next", value="$last"),
            _op("right_next", value="$last"),
            _op("merge", value={"left": "$input.left", "right": "$input.right"}),
        ],
        [
            _edge(TRIGGER_ID, "left"),
            _edge(TRIGGER_ID, "right"),
            _edge("left", "left_next"),
            _edge("right", "right_next"),
            _edge("right_next", "merge"),
        ],
    )

    results = _by_node(record)
    assert results["left_next"].output == "L"
    assert results["right_next"].output == "R"
    assert results["merge"].output == {"left": "L", "right": "R"}


def test_first_nodes_see_trigger_payload_as_last(run):
    record = run(
        [_op("greet", value="Hello {{ $last.name }} from $context.flow_id")],
        [_edge(TRIGGER_ID, "greet")],
        payload={"name": "Ada"},
    )

    assert record.results[0].output == "Hello Ada from 1"


def test_false_condition_without_failure_edge_completes(run):
    record = run(
        [_op("check", "condition", left="$trigger.total", operator="gt", right=100), _op("big")],
        [_edge(TRIGGER_ID, "check"), _edge("check", "big", "success")],
        payload={"total": 5},
    )

    assert record.status == "completed"
    assert [result.node_id for result in record.results] == ["check"]
    assert record.results[0].output == {"result": False, "branch": "failure"}


def test_empty_flow_completes_immediately(run):
    record = run([], [])

    assert record.status == "completed"
    assert record.results == []


def test_cancellation_runs_compensations_in_reverse(run, tracker, cancel_event):
    record = run(
        [
            _op("first", "track", value="one"),
            _op("second", "track", value="two"),
            _op("stop", "cancel_run"),
            _op("after", "track", value="three"),
        ],
        [
            _edge(TRIGGER_ID, "first"),
            _edge("first", "second"),
            _edge("second", "stop"),
            _edge("stop", "after"),
        ],
        cancel_event=cancel_event,
    )

    assert record.status == "cancelled"
    assert [result.node_id for result in record.results] == ["first", "second", "stop"]
    assert tracker.undone == ["two", "one"]
    assert record.error["compensated"] == 2


def test_cancellation_compensates_work_a_failed_node_already_did(
    run, tracker, partial, cancel_event
):
    record = run(
        [
            _op("first", "track", value="one"),
            _op("half", "partial", value="half"),
            _op("stop", "cancel_run"),
            _op("after", "track", value="never"),
        ],
        [
            _edge(TRIGGER_ID, "first"),
            _edge("first", "half"),
            _edge("half", "stop", "failure"),
            _edge("stop", "after"),
        ],
        cancel_event=cancel_event,
    )

    assert record.status == "cancelled"
    assert record.results[1].error["message"] == "stopped part way"
    assert partial.undone == ["half"]
    assert tracker.undone == ["one"]
    assert record.error["compensated"] == 2


def test_compensations_are_not_run_on_plain_failure(run, tracker):
    record = run(
        [_op("first", "track", value="one"), _op("broken", "fail")],
        [_edge(TRIGGER_ID, "first"), _edge("first", "broken")],
    )

    assert record.status == "failed"
    assert tracker.undone == []


def test_finished_record_cannot_be_finalized_again(run):
    record = run([_op("a", value=1)], [_edge(TRIGGER_ID, "a")])

    with pytest.raises(AlreadyFinalizedError):
        run.recorder.finish(record.id, "failed")


def test_join_waits_for_the_longer_branch(run):
    record = run(
        [
            _op("a", value="A"),
            _op("b", value="B"),
            _op("c", value="C"),
            _op("short", value="S"),
            _op("join", value={"c": "$input.c", "short": "$input.short", "last": "$last"}),
        ],
        [
            _edge(TRIGGER_ID, "a"),
            _edge("a", "b"),
            _edge("b", "c"),
            _edge("c", "join"),
            _edge(TRIGGER_ID, "short"),
            _edge("short", "join"),
        ],
    )

    assert [result.node_id for result in record.results] == ["a", "short", "b", "c", "join"]
    assert _by_node(record)["join"].output == {"c": "C", "short": "S", "last": "S"}


def test_join_runs_once_the_other_branch_can_no_longer_reach_it(run):
    record = run(
        [
            _op("check", "condition", left=False),
            _op("long", value="L"),
            _op("short", value="S"),
            _op("join", value="$input.short"),
        ],
        [
            _edge(TRIGGER_ID, "check"),
            _edge("check", "long", "success"),
            _edge("long", "join"),
            _edge(TRIGGER_ID, "short"),
            _edge("short", "join"),
        ],
    )

    assert record.status == "completed"
    assert [result.node_id for result in record.results] == ["check", "short", "join"]
    assert _by_node(record)["join"].output == "S"
