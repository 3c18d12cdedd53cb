"""Tests for the built-in operation types."""
from __future__ import annotations

from typing import Any

import pytest
import requests

from backend.app.extensions import db
from backend.app.flows.errors import (
    OperationError,
    RecordNotFoundError,
    UnknownOperationError,
    ValidationError,
)
from backend.app.flows.operations import OperationContext, OperationRegistry, registry
from backend.app.flows.operations.control import ConditionOperation
from backend.app.flows.records import RecordStore
from backend.app.flows.settings import EngineSettings


def _context(records=None, settings=None, last=None, depth=0, run_flow=None) -> OperationContext:
    return OperationContext(
        flow_id=1,
        execution_id=9,
        operation_id="node",
        operation_key="node",
        data={
            "$trigger": {},
            "$last": last,
            "$input": {},
            "$context": {"flow_id": 1, "execution_id": 9, "depth": depth},
        },
        settings=settings or EngineSettings(sandbox_memory_limit_mb=None),
        records=records,
        run_flow=run_flow,
    )


def _execute(operation_type: str, options: dict[str, Any], context: OperationContext):
    definition = registry.get(operation_type)
    return definition.execute(definition.validate_options(options), context)


@pytest.fixture()
def records(app):
    return RecordStore(db.session)


def test_registry_lists_every_builtin():
    assert registry.types() == [
        "bulk_update_data",
        "condition",
        "create_data",
        "delete_data",
        "execute_code",
        "http_request",
        "log",
        "read_data",
        "sleep",
        "transform",
        "trigger_flow",
        "update_data",
    ]
    described = {entry["type"]: entry for entry in registry.describe()}
    assert described["create_data"]["reversible"] is True
    assert described["condition"]["reversible"] is False
    assert "properties" in described["http_request"]["options_schema"]


def test_registry_rejects_duplicates_and_unknown_types():
    local = OperationRegistry([ConditionOperation()])

    with pytest.raises(ValueError):
        local.register(ConditionOperation())
    with pytest.raises(UnknownOperationError) as excinfo:
        local.get("teleport")
    assert excinfo.value.message == "Unknown operation type: teleport"


def test_options_are_merged_over_defaults_and_validated():
    definition = registry.get("execute_code")

    options = definition.validate_options({"code": "def run(message, context):\n    return 1\n"})
    assert options.timeout == 5000

    with pytest.raises(ValidationError) as excinfo:
        definition.validate_options({"code": "print('no entry point')"})
    assert excinfo.value.errors[0]["field"] == "code"


@pytest.mark.parametrize(
    ("left", "operator", "right", "expected"),
    [
        (150, "gt", 100, True),
        (50, "gt", 100, False),
        ("abc", "contains", "b", True),
        ("x", "in", ["x", "y"], True),
        (None, "exists", None, False),
        ("", "falsy", None, True),
    ],
)
def test_condition_picks_a_branch(left, operator, right, expected):
    result = _execute("condition", {"left": left, "operator": operator, "right": right}, _context())

    assert result.output["result"] is expected
    assert result.outcome == ("success" if expected else "failure")
    assert result.error is None


def test_condition_with_incomparable_values_raises():
    with pytest.raises(OperationError):
        _execute("condition", {"left": "a", "operator": "gt", "right": 1}, _context())


def test_transform_and_log_return_their_values(caplog):
    transformed = _execute("transform", {"template": {"a": [1, 2]}}, _context())
    assert transformed.output == {"a": [1, 2]}

    with caplog.at_level("WARNING", logger="flows.operations"):
        logged = _execute("log", {"message": {"n": 1}, "level": "warning"}, _context())
    assert logged.output == {"message": {"n": 1}, "level": "warning"}
    assert logged.logs == ['{"n": 1}']
    assert "[flow 1] node" in caplog.text


def test_data_operations_round_trip(records):
    context = _context(records=records)

    created = _execute("create_data", {"collection": "orders", "data": {"total": 5}}, context)
    record_id = created.output["id"]
    assert created.undo == created.output

    updated = _execute(
        "update_data", {"collection": "orders", "id": record_id, "data": {"paid": True}}, context
    )
    assert updated.output["data"] == {"total": 5, "paid": True}
    assert updated.undo["data"] == {"total": 5}

    found = _execute("read_data", {"collection": "orders", "filters": {"paid": True}}, context)
    assert found.output["count"] == 1

    deleted = _execute("delete_data", {"collection": "orders", "id": record_id}, context)
    assert deleted.output == {"deleted": True, "id": record_id}
    with pytest.raises(RecordNotFoundError):
        _execute("read_data", {"collection": "orders", "id": record_id}, context)


def test_data_operations_compensate(records):
    context = _context(records=records)
    definition = registry.get("update_data")
    original = records.create("orders", {"total": 1})
    options = definition.validate_options(
        {"collection": "orders", "id": original["id"], "data": {"total": 2}}
    )

    result = definition.execute(options, context)
    definition.compensate(options, result.undo, context)

    assert records.get("orders", original["id"])["data"] == {"total": 1}


def test_data_operations_need_record_storage():
    with pytest.raises(OperationError):
        _execute("create_data", {"collection": "orders"}, _context())


def test_bulk_update_continues_past_missing_records(records):
    existing = [records.create("customers", {"tier": "basic"})["id"] for _ in range(3)]
    items = [
        {"id": existing[0], "data": {"tier": "gold"}},
        {"id": "missing-1", "data": {"tier": "gold"}},
        {"id": existing[1], "data": {"tier": "gold"}},
        {"id": "missing-2", "data": {"tier": "gold"}},
        {"id": existing[2], "data": {"tier": "gold"}},
    ]

    result = _execute("bulk_update_data", {"collection": "customers", "items": items}, _context(records))

    output = result.output
    assert result.error is None
    assert output["updated"] == 3
    assert output["failed"] == 2
    assert [entry["index"] for entry in output["results"]] == [0, 1, 2, 3, 4]
    assert [entry["ok"] for entry in output["results"]] == [True, False, True, False, True]
    assert output["results"][1]["error"]["type"] == "RecordNotFoundError"
    assert all(records.get("customers", record_id)["data"]["tier"] == "gold" for record_id in existing)


def test_bulk_update_can_stop_at_the_first_failure(records):
    first = records.create("customers", {"tier": "basic"})["id"]
    last = records.create("customers", {"tier": "basic"})["id"]
    items = [
        {"id": first, "data": {"tier": "gold"}},
        {"id": "missing", "data": {"tier": "gold"}},
        {"id": last, "data": {"tier": "gold"}},
    ]

    result = _execute(
        "bulk_update_data",
        {"collection": "customers", "items": items, "continue_on_error": False},
        _context(records),
    )

    assert result.error["index"] == 1
    assert result.output["updated"] == 1
    assert len(result.output["results"]) == 2
    assert records.get("customers", last)["data"] == {"tier": "basic"}


def test_bulk_update_reports_malformed_items_individually(records):
    record_id = records.create("customers", {"tier": "basic"})["id"]
    items = ["oops", {"id": record_id, "data": {"tier": "gold"}}, {"data": {}}]

    result = _execute("bulk_update_data", {"collection": "customers", "items": items}, _context(records))

    output = result.output
    assert result.error is None
    assert (output["updated"], output["failed"]) == (1, 2)
    assert [entry["ok"] for entry in output["results"]] == [False, True, False]
    assert output["results"][0]["error"]["type"] == "ValidationError"
    assert records.get("customers", record_id)["data"] == {"tier": "gold"}


def test_bulk_update_abort_keeps_undo_for_applied_items(records):
    first = records.create("customers", {"tier": "basic"})["id"]
    definition = registry.get("bulk_update_data")
    options = definition.validate_options(
        {
            "collection": "customers",
            "items": [{"id": first, "data": {"tier": "gold"}}, {"id": "missing", "data": {}}],
            "continue_on_error": False,
        }
    )
    context = _context(records)

    result = definition.execute(options, context)
    assert result.error["index"] == 1
    definition.compensate(options, result.undo, context)

    assert records.get("customers", first)["data"] == {"tier": "basic"}


def test_bulk_update_compensation_restores_previous_values(records):
    record_id = records.create("customers", {"tier": "basic"})["id"]
    definition = registry.get("bulk_update_data")
    options = definition.validate_options(
        {"collection": "customers", "items": [{"id": record_id, "data": {"tier": "gold"}}]}
    )
    context = _context(records)

    result = definition.execute(options, context)
    definition.compensate(options, result.undo, context)

    assert records.get("customers", record_id)["data"] == {"tier": "basic"}


def test_bulk_update_enforces_item_limits():
    items = [{"id": str(index), "data": {}} for index in range(3)]

    with pytest.raises(ValidationError):
        _execute(
            "bulk_update_data",
            {"collection": "c", "items": items, "max_items": 2},
            _context(),
        )
    with pytest.raises(ValidationError):
        _execute(
            "bulk_update_data",
            {"collection": "c", "items": items, "max_items": 50},
            _context(settings=EngineSettings(bulk_max_items_limit=2)),
        )


class _FakeResponse:
    def __init__(self, status_code: int, payload: Any) -> None:
        self.status_code = status_code
        self.headers = {"Content-Type": "application/json"}
        self._payload = payload

    def json(self):
        return self._payload


def test_http_request_returns_status_and_body(monkeypatch):
    calls: list[tuple[str, str, dict[str, Any]]] = []

    def fake_request(method, url, **kwargs):
        calls.append((method, url, kwargs))
        return _FakeResponse(201, {"ok": True})

    monkeypatch.setattr(requests, "request", fake_request)

    result = _execute(
        "http_request",
        {"url": "https://api.test/items", "method": "POST", "body": {"name": "x"}},
        _context(settings=EngineSettings(http_timeout_ms=2500)),
    )

    assert result.error is None
    assert result.output["status"] == 201
    assert result.output["data"] == {"ok": True}
    method, url, kwargs = calls[0]
    assert (method, url) == ("POST", "https://api.test/items")
    assert kwargs["json"] == {"name": "x"}
    assert kwargs["timeout"] == 2.5


def test_http_error_status_fails_the_node(monkeypatch):
    monkeypatch.setattr(requests, "request", lambda method, url, **kwargs: _FakeResponse(404, {}))

    result = _execute("http_request", {"url": "https://api.test/missing"}, _context())

    assert result.error["type"] == "OperationError"
    assert result.error["status"] == 404
    assert result.output["status"] == 404


def test_http_transport_errors_raise(monkeypatch):
    def broken(method, url, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(requests, "request", broken)

    with pytest.raises(OperationError):
        _execute("http_request", {"url": "https://api.test/"}, _context())


def test_trigger_flow_passes_payload_and_depth():
    calls = []

    def run_flow(flow_id, payload, depth):
        calls.append((flow_id, payload, depth))
        return {
            "id": 77,
            "status": "completed",
            "results": [{"operation_key": "double", "output": 4}],
        }

    result = _execute(
        "trigger_flow", {"flow_id": 3}, _context(last={"n": 2}, depth=1, run_flow=run_flow)
    )

    assert calls == [(3, {"n": 2}, 2)]
    assert result.output == {
        "flow_id": 3,
        "execution_id": 77,
        "status": "completed",
        "outputs": {"double": 4},
    }


def test_trigger_flow_stops_at_the_maximum_depth():
    context = _context(
        depth=2,
        settings=EngineSettings(max_flow_depth=2),
        run_flow=lambda *args: pytest.fail("child flow must not run"),
    )

    with pytest.raises(OperationError) as excinfo:
        _execute("trigger_flow", {"flow_id": 3}, context)

    assert "maximum flow depth" in excinfo.value.message


def test_trigger_flow_reports_failed_children():
    result = _execute(
        "trigger_flow",
        {"flow_id": 3, "payload": {"x": 1}},
        _context(run_flow=lambda *args: {"id": 5, "status": "failed", "results": []}),
    )

    assert result.error["execution_id"] == 5
    assert result.output["status"] == "failed"


def test_execute_code_runs_in_the_sandbox():
    result = _execute(
        "execute_code",
        {
            "code": (
                "def run(message, context):\n"
                "    console.log('depth', context['$context']['depth'])\n"
                "    return {'doubled': message['n'] * 2}\n"
            ),
            "timeout": 5000,
        },
        _context(last={"n": 21}),
    )

    assert result.output == {"doubled": 42}
    assert result.logs == ["depth 0"]
