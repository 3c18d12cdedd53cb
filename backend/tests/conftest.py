from __future__ import annotations

import pathlib
import sys
from typing import Any

import pytest
from sqlalchemy.pool import StaticPool

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_dependencies():
    from app import Config, create_app
    from backend.app.extensions import db

    return Config, create_app, db


ConfigBase, create_app, db = _load_dependencies()


class TestConfig(ConfigBase):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite+pysqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {
        "poolclass": StaticPool,
        "connect_args": {"check_same_thread": False},
    }
    CORS_ALLOWED_ORIGINS = "http://localhost"
    RATELIMIT_ENABLED = False
    SANDBOX_MEMORY_LIMIT_MB = 0


@pytest.fixture(scope="module")
def app():
    app = create_app(TestConfig)
    ctx = app.app_context()
    ctx.push()
    yield app
    db.session.remove()
    ctx.pop()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def cleanup_tables(request):
    yield

    if "app" not in request.fixturenames:
        return

    from backend.app.models import (
        Flow,
        FlowConnection,
        FlowExecution,
        FlowExecutionResult,
        FlowOperation,
        Record,
    )

    db.session.rollback()
    for model in (FlowExecutionResult, FlowExecution, FlowConnection, FlowOperation, Flow, Record):
        db.session.query(model).delete()
    db.session.commit()


class MemoryFlowStore:
    """In-memory stand-in for the SQL store used by engine unit tests."""

    def __init__(self) -> None:
        from backend.app.flows.store import ExecutionRecord, FlowDefinition

        self._record_type = ExecutionRecord
        self._definition_type = FlowDefinition
        self.flows: dict[int, Any] = {}
        self.executions: dict[int, Any] = {}
        self.saved: list[tuple[int, list[Any], list[Any]]] = []

    def add_flow(self, flow_id: int = 1, **fields: Any):
        fields.setdefault("name", f"Flow {flow_id}")
        fields.setdefault("status", "active")
        fields.setdefault("trigger_type", "manual")
        definition = self._definition_type(id=flow_id, **fields)
        self.flows[flow_id] = definition
        return definition

    def get_flow(self, flow_id):
        from backend.app.flows.errors import FlowNotFoundError

        if flow_id not in self.flows:
            raise FlowNotFoundError(f"flow {flow_id} not found")
        return self.flows[flow_id]

    def save_canonical_graph(self, flow_id, operations, connections):
        self.saved.append((flow_id, list(operations), list(connections)))

    def create_execution_record(self, flow_id, payload, triggered_by=None):
        record = self._record_type(
            id=len(self.executions) + 1,
            flow_id=flow_id,
            status="pending",
            trigger_data=payload,
            triggered_by=triggered_by,
        )
        self.executions[record.id] = record
        return record

    def start_execution_record(self, execution_id):
        from backend.app.utils.timestamps import utcnow

        record = self.executions[execution_id]
        record.status = "running"
        record.started_at = utcnow()
        return record

    def append_operation_result(self, execution_id, result):
        from backend.app.flows.errors import AlreadyFinalizedError

        record = self.executions[execution_id]
        if record.finalized:
            raise AlreadyFinalizedError("finalized")
        record.results.append(result)

    def finalize_execution_record(self, execution_id, status, finished_at, error=None):
        from backend.app.flows.errors import AlreadyFinalizedError

        record = self.executions[execution_id]
        if record.finalized:
            raise AlreadyFinalizedError("finalized")
        record.status = status
        record.finished_at = finished_at
        record.error = error
        return record

    def get_execution(self, execution_id):
        return self.executions[execution_id]

    def list_executions(self, flow_id=None, status=None, limit=50):
        records = [
            record
            for record in self.executions.values()
            if (flow_id is None or record.flow_id == flow_id)
            and (status is None or record.status == status)
        ]
        return sorted(records, key=lambda record: record.id, reverse=True)[:limit]


@pytest.fixture()
def memory_store():
    return MemoryFlowStore()
