"""Audit trail of flow executions."""
from __future__ import annotations

import logging
from typing import Any

from ..utils.timestamps import utcnow
from .errors import AlreadyFinalizedError
from .store import TERMINAL_STATUSES, ExecutionRecord, FlowStore, OperationResult

logger = logging.getLogger(__name__)


class ExecutionRecorder:
    """Create, append to and finalize execution records.

    Results are append-only and a record is finalized exactly once; any
    further write raises :class:`AlreadyFinalizedError`.
    """

    def __init__(self, store: FlowStore) -> None:
        self._store = store
        self._finalized: set[Any] = set()

    def begin(
        self, flow_id: Any, payload: Any, *, triggered_by: str | None = None
    ) -> ExecutionRecord:
        record = self._store.create_execution_record(flow_id, payload, triggered_by)
        record = self._store.start_execution_record(record.id)
        logger.info("Execution %s of flow %s started", record.id, flow_id)
        return record

    def is_finalized(self, execution_id: Any) -> bool:
        return execution_id in self._finalized

    def record(self, execution_id: Any, result: OperationResult) -> None:
        if execution_id in self._finalized:
            raise AlreadyFinalizedError(
                f"execution {execution_id} is finalized; results are read-only",
                execution_id=execution_id,
            )
        self._store.append_operation_result(execution_id, result)
        logger.debug(
            "Execution %s: node %s finished with %s in %sms",
            execution_id,
            result.node_id,
            result.status,
            result.duration_ms,
        )

    def finish(
        self,
        execution_id: Any,
        status: str,
        error: dict[str, Any] | None = None,
    ) -> ExecutionRecord:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status!r} is not a terminal execution status")
        if execution_id in self._finalized:
            raise AlreadyFinalizedError(
                f"execution {execution_id} was already finalized",
                execution_id=execution_id,
            )
        record = self._store.finalize_execution_record(
            execution_id, status, utcnow(), error=error
        )
        self._finalized.add(execution_id)
        log = logger.warning if status == "failed" else logger.info
        log("Execution %s finished with status %s", execution_id, status)
        return record


__all__ = ["ExecutionRecorder"]
