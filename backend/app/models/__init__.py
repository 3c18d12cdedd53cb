"""Database models for the flow automation backend."""

from .execution import FlowExecution, FlowExecutionResult
from .flow import Flow, FlowConnection, FlowOperation
from .record import Record

__all__ = [
    "Flow",
    "FlowConnection",
    "FlowExecution",
    "FlowExecutionResult",
    "FlowOperation",
    "Record",
]
