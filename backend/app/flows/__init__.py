"""Flow automation engine package."""

from .context import DataChain, interpolate
from .errors import FlowError, GraphValidationError
from .graph import TRIGGER_ID, Connection, FlowGraph, OperationNode

__all__ = [
    "Connection",
    "DataChain",
    "FlowError",
    "FlowGraph",
    "GraphValidationError",
    "OperationNode",
    "TRIGGER_ID",
    "interpolate",
]
