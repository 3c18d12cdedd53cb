"""Walk a compiled flow graph from the trigger and run each operation."""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .compiler import CompiledFlow
from .context import DataChain, interpolate
from .errors import FlowError, describe_exception
from .graph import FAILURE, SUCCESS, TRIGGER_ID, FlowGraph, OperationNode
from .operations import OperationContext, OperationDefinition, OperationRegistry, StepResult
from .operations import registry as default_registry
from .records import RecordStore
from .recorder import ExecutionRecorder
from .settings import EngineSettings
from .store import ExecutionRecord, OperationResult

logger = logging.getLogger(__name__)

RunFlow = Callable[[Any, Any, int], dict[str, Any]]


@dataclass
class _Compensation:
    node_id: str
    definition: OperationDefinition
    options: Any
    undo: Any
    context: OperationContext


class FlowExecutor:
    """Run compiled flows one node at a time.

    Nodes are taken from a ready queue seeded with the trigger's successors.
    Each node is visited at most once per execution: the first branch to
    reach a node schedules it and supplies its ``$last``. A scheduled node
    waits until every predecessor has run or can no longer run, so joins see
    the outputs of all their upstream branches in ``$input``. Per-node errors
    are contained in that node's result and follow ``failure`` edges; a
    failing node without one ends its branch and fails the execution. Undo
    data returned by a node is kept for compensation even when it failed.
    """

    def __init__(
        self,
        recorder: ExecutionRecorder,
        registry: OperationRegistry | None = None,
        *,
        settings: EngineSettings | None = None,
        records: RecordStore | None = None,
        run_flow: RunFlow | None = None,
    ) -> None:
        self.recorder = recorder
        self.registry = registry if registry is not None else default_registry
        self.settings = settings or EngineSettings()
        self.records = records
        self.run_flow = run_flow

    def run(
        self,
        compiled: CompiledFlow,
        payload: Any,
        record: ExecutionRecord,
        *,
        cancel_event: threading.Event | None = None,
        depth: int = 0,
    ) -> ExecutionRecord:
        graph = compiled.graph
        chain = DataChain(payload, flow_id=record.flow_id, execution_id=record.id, depth=depth)

        waiting: dict[str, Any] = {}
        scheduled: set[str] = set()
        settled: set[str] = {TRIGGER_ID}
        order = graph.topological_order()
        for target in graph.next_nodes(TRIGGER_ID, SUCCESS):
            scheduled.add(target)
            waiting[target] = chain.trigger
        self._settle_skipped(graph, order, scheduled, settled)

        unhandled: list[str] = []
        compensations: list[_Compensation] = []
        cancelled = False

        while waiting:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                break

            node_id = self._next_ready(graph, waiting, settled)
            last = waiting.pop(node_id)
            node = graph.node(node_id)
            step, duration_ms, compensation = self._run_node(node, chain, last, record)

            value = {"error": step.error, "output": step.output} if step.failed else step.output
            chain.store(node.operation_key, value)
            self.recorder.record(
                record.id,
                OperationResult(
                    node_id=node.id,
                    operation_key=node.operation_key,
                    operation_type=node.operation_type,
                    status="failure" if step.failed else "success",
                    output=step.output,
                    error=step.error,
                    duration_ms=duration_ms,
                    logs=step.logs,
                ),
            )
            if compensation is not None:
                compensations.append(compensation)

            outcome = FAILURE if step.failed else (step.outcome or SUCCESS)
            targets = graph.next_nodes(node.id, outcome)
            if step.failed and not targets:
                logger.warning(
                    "Execution %s: node %s failed without a failure edge: %s",
                    record.id,
                    node.id,
                    step.error.get("message"),
                )
                unhandled.append(node.id)

            for target in targets:
                if target in scheduled:
                    continue
                scheduled.add(target)
                waiting[target] = value

            settled.add(node.id)
            self._settle_skipped(graph, order, scheduled, settled)

        if cancelled:
            errors = self._compensate(compensations, record)
            error: dict[str, Any] = {
                "type": "ExecutionCancelled",
                "message": "execution was cancelled by the caller",
                "compensated": len(compensations) - len(errors),
            }
            if errors:
                error["compensation_errors"] = errors
            return self.recorder.finish(record.id, "cancelled", error=error)

        if unhandled:
            return self.recorder.finish(
                record.id,
                "failed",
                error={
                    "type": "UnhandledNodeError",
                    "message": f"{len(unhandled)} operation(s) failed without a failure connection",
                    "node_ids": unhandled,
                },
            )
        return self.recorder.finish(record.id, "completed")

    @staticmethod
    def _next_ready(graph: FlowGraph, waiting: dict[str, Any], settled: set[str]) -> str:
        for node_id in waiting:
            if all(source in settled for source in graph.predecessors(node_id)):
                return node_id
        # The earliest unsettled node in topological order is always ready.
        raise RuntimeError("no scheduled operation is ready to run")

    @staticmethod
    def _settle_skipped(
        graph: FlowGraph, order: list[str], scheduled: set[str], settled: set[str]
    ) -> None:
        """Settle nodes no branch can reach any more."""

        for node_id in order:
            if node_id in settled or node_id in scheduled:
                continue
            if all(source in settled for source in graph.predecessors(node_id)):
                settled.add(node_id)

    def _run_node(
        self,
        node: OperationNode,
        chain: DataChain,
        last: Any,
        record: ExecutionRecord,
    ) -> tuple[StepResult, int, _Compensation | None]:
        started = time.perf_counter()
        scope = chain.scope(last)
        context = OperationContext(
            flow_id=record.flow_id,
            execution_id=record.id,
            operation_id=node.id,
            operation_key=node.operation_key,
            data=scope,
            settings=self.settings,
            records=self.records,
            run_flow=self.run_flow,
            logger=logger,
        )

        compensation = None
        try:
            definition = self.registry.get(node.operation_type)
            options = definition.validate_options(interpolate(node.options, scope))
            step = definition.execute(options, context)
            if step.undo is not None and definition.reversible:
                compensation = _Compensation(node.id, definition, options, step.undo, context)
        except FlowError as exc:
            step = StepResult(error=exc.to_dict(), logs=list(getattr(exc, "logs", [])))
        except Exception as exc:
            logger.exception("Execution %s: node %s raised unexpectedly", record.id, node.id)
            step = StepResult(error=describe_exception(exc))

        duration_ms = int((time.perf_counter() - started) * 1000)
        return step, duration_ms, compensation

    def _compensate(
        self, compensations: list[_Compensation], record: ExecutionRecord
    ) -> list[dict[str, Any]]:
        errors: list[dict[str, Any]] = []
        for item in reversed(compensations):
            try:
                item.definition.compensate(item.options, item.undo, item.context)
            except Exception as exc:
                logger.exception(
                    "Execution %s: compensating node %s failed", record.id, item.node_id
                )
                errors.append({"node_id": item.node_id, **describe_exception(exc)})
            else:
                logger.info("Execution %s: compensated node %s", record.id, item.node_id)
        return errors


__all__ = ["FlowExecutor"]
