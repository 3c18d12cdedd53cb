"""Persistence collaborator consumed by the compiler, recorder and service."""
from __future__ import annotations

import copy
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.execution import FlowExecution, FlowExecutionResult
from ..models.flow import Flow, FlowConnection, FlowOperation
from ..utils.timestamps import isoformat, utcnow
from .errors import AlreadyFinalizedError, FlowNotFoundError
from .graph import Connection, OperationNode

TERMINAL_STATUSES = ("completed", "failed", "cancelled")


@dataclass(frozen=True)
class FlowDefinition:
    """Immutable snapshot of a flow taken at the start of a run."""

    id: int
    name: str
    status: str
    trigger_type: str
    trigger_config: dict[str, Any] = field(default_factory=dict)
    operations: tuple[OperationNode, ...] = ()
    connections: tuple[Connection, ...] = ()
    canvas_state: dict[str, Any] | None = None


@dataclass
class OperationResult:
    """Outcome of one visited node."""

    node_id: str
    status: str
    output: Any = None
    error: dict[str, Any] | None = None
    duration_ms: int = 0
    logs: list[str] = field(default_factory=list)
    operation_key: str | None = None
    operation_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "operation_key": self.operation_key,
            "operation_type": self.operation_type,
            "status": self.status,
            "output": self.output,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "logs": list(self.logs),
        }


@dataclass
class ExecutionRecord:
    """Audit record of one run of a flow."""

    id: int
    flow_id: int
    status: str
    started_at: datetime | None = None
    finished_at: datetime | None = None
    results: list[OperationResult] = field(default_factory=list)
    trigger_data: Any = None
    triggered_by: str | None = None
    error: dict[str, Any] | None = None

    @property
    def finalized(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "flow_id": self.flow_id,
            "status": self.status,
            "started_at": isoformat(self.started_at),
            "finished_at": isoformat(self.finished_at),
            "trigger_data": self.trigger_data,
            "triggered_by": self.triggered_by,
            "error": self.error,
            "results": [result.to_dict() for result in self.results],
        }


class FlowStore(Protocol):
    def get_flow(self, flow_id: int) -> FlowDefinition: ...

    def save_canonical_graph(
        self,
        flow_id: int,
        operations: Sequence[OperationNode],
        connections: Sequence[Connection],
    ) -> None: ...

    def create_execution_record(
        self, flow_id: int, payload: Any, triggered_by: str | None = None
    ) -> ExecutionRecord: ...

    def start_execution_record(self, execution_id: int) -> ExecutionRecord: ...

    def append_operation_result(self, execution_id: int, result: OperationResult) -> None: ...

    def finalize_execution_record(
        self,
        execution_id: int,
        status: str,
        finished_at: datetime,
        error: dict[str, Any] | None = None,
    ) -> ExecutionRecord: ...

    def get_execution(self, execution_id: int) -> ExecutionRecord: ...

    def list_executions(
        self,
        flow_id: int | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[ExecutionRecord]: ...


def flow_definition(flow: Flow) -> FlowDefinition:
    return FlowDefinition(
        id=flow.id,
        name=flow.name,
        status=flow.status,
        trigger_type=flow.trigger_type,
        trigger_config=copy.deepcopy(flow.trigger_config or {}),
        operations=tuple(operation.to_node() for operation in flow.operations),
        connections=tuple(connection.to_connection() for connection in flow.connections),
        canvas_state=copy.deepcopy(flow.canvas_state) if flow.canvas_state else None,
    )


def _result_from_row(row: FlowExecutionResult) -> OperationResult:
    return OperationResult(
        node_id=row.node_id,
        status=row.status,
        output=row.output,
        error=row.error,
        duration_ms=row.duration_ms or 0,
        logs=list(row.logs or []),
        operation_key=row.operation_key,
        operation_type=row.operation_type,
    )


def execution_record(execution: FlowExecution) -> ExecutionRecord:
    return ExecutionRecord(
        id=execution.id,
        flow_id=execution.flow_id,
        status=execution.status,
        started_at=execution.started_at,
        finished_at=execution.finished_at,
        results=[_result_from_row(row) for row in execution.results],
        trigger_data=execution.trigger_data,
        triggered_by=execution.triggered_by,
        error=execution.error,
    )


class SqlFlowStore:
    """:class:`FlowStore` backed by the Flask-SQLAlchemy session."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def _commit(self) -> None:
        try:
            self._session.commit()
        except SQLAlchemyError:
            self._session.rollback()
            raise

    def _flow(self, flow_id: int) -> Flow:
        flow = self._session.get(Flow, flow_id)
        if flow is None:
            raise FlowNotFoundError(f"flow {flow_id} not found", flow_id=flow_id)
        return flow

    def _execution(self, execution_id: int) -> FlowExecution:
        execution = self._session.get(FlowExecution, execution_id)
        if execution is None:
            raise FlowNotFoundError(
                f"execution {execution_id} not found", execution_id=execution_id
            )
        return execution

    def get_flow(self, flow_id: int) -> FlowDefinition:
        return flow_definition(self._flow(flow_id))

    def save_canonical_graph(
        self,
        flow_id: int,
        operations: Sequence[OperationNode],
        connections: Sequence[Connection],
    ) -> None:
        flow = self._flow(flow_id)
        flow.operations.clear()
        flow.connections.clear()
        self._session.flush()
        flow.operations.extend(FlowOperation.from_node(node) for node in operations)
        flow.connections.extend(FlowConnection.from_connection(edge) for edge in connections)
        self._commit()

    def create_execution_record(
        self, flow_id: int, payload: Any, triggered_by: str | None = None
    ) -> ExecutionRecord:
        execution = FlowExecution(
            flow_id=flow_id,
            status="pending",
            trigger_data=copy.deepcopy(payload),
            triggered_by=triggered_by,
        )
        self._session.add(execution)
        self._commit()
        return execution_record(execution)

    def start_execution_record(self, execution_id: int) -> ExecutionRecord:
        execution = self._execution(execution_id)
        if execution.status != "pending":
            raise AlreadyFinalizedError(
                f"execution {execution_id} already left the pending state",
                execution_id=execution_id,
            )
        execution.status = "running"
        execution.started_at = utcnow()
        self._commit()
        return execution_record(execution)

    def append_operation_result(self, execution_id: int, result: OperationResult) -> None:
        execution = self._execution(execution_id)
        if execution.status in TERMINAL_STATUSES:
            raise AlreadyFinalizedError(
                f"execution {execution_id} is already {execution.status}",
                execution_id=execution_id,
            )
        position = (
            self._session.query(func.count(FlowExecutionResult.id))
            .filter(FlowExecutionResult.execution_id == execution_id)
            .scalar()
        )
        self._session.add(
            FlowExecutionResult(
                execution_id=execution_id,
                position=position,
                node_id=result.node_id,
                operation_key=result.operation_key,
                operation_type=result.operation_type,
                status=result.status,
                output=copy.deepcopy(result.output),
                error=copy.deepcopy(result.error),
                duration_ms=result.duration_ms,
                logs=list(result.logs),
            )
        )
        self._commit()

    def finalize_execution_record(
        self,
        execution_id: int,
        status: str,
        finished_at: datetime,
        error: dict[str, Any] | None = None,
    ) -> ExecutionRecord:
        statement = (
            update(FlowExecution)
            .where(FlowExecution.id == execution_id)
            .where(FlowExecution.status.notin_(TERMINAL_STATUSES))
            .values(status=status, finished_at=finished_at, error=error)
        )
        outcome = self._session.execute(statement)
        if outcome.rowcount != 1:
            self._session.rollback()
            self._execution(execution_id)
            raise AlreadyFinalizedError(
                f"execution {execution_id} was already finalized",
                execution_id=execution_id,
            )
        self._commit()
        execution = self._execution(execution_id)
        self._session.expire(execution)
        return execution_record(execution)

    def get_execution(self, execution_id: int) -> ExecutionRecord:
        execution = self._execution(execution_id)
        # Runs started with wait=False write through another session.
        self._session.expire(execution)
        return execution_record(execution)

    def list_executions(
        self,
        flow_id: int | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[ExecutionRecord]:
        query = self._session.query(FlowExecution)
        if flow_id is not None:
            query = query.filter(FlowExecution.flow_id == flow_id)
        if status is not None:
            query = query.filter(FlowExecution.status == status)
        executions = query.order_by(FlowExecution.id.desc()).limit(limit).all()
        for execution in executions:
            self._session.expire(execution)
        return [execution_record(execution) for execution in executions]


__all__ = [
    "ExecutionRecord",
    "FlowDefinition",
    "FlowStore",
    "OperationResult",
    "SqlFlowStore",
    "TERMINAL_STATUSES",
    "execution_record",
    "flow_definition",
]
