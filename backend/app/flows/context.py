"""Per-execution data chain and the ``$``-reference interpolation resolver."""
from __future__ import annotations

import copy
import json
import re
from collections.abc import Mapping
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

RESERVED_PREFIXES = ("$trigger", "$last", "$input", "$context")

_PATH = r"\$(?:trigger|last|input|context)(?![A-Za-z0-9_])(?:\.[A-Za-z0-9_\-]+|\[\d+\])*"
_REFERENCE_RE = re.compile(_PATH)
_EXACT_REFERENCE_RE = re.compile(rf"^\s*(?:\{{\{{\s*({_PATH})\s*\}}\}}|({_PATH}))\s*$")
_EMBEDDED_REFERENCE_RE = re.compile(rf"\{{\{{\s*({_PATH})\s*\}}\}}|({_PATH})")
_SEGMENT_RE = re.compile(r"\.([A-Za-z0-9_\-]+)|\[(\d+)\]")


class _Missing:
    """Marker for references that do not resolve."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


class DataChain:
    """Environment shared by every node of one execution.

    ``$trigger`` is a private copy of the payload and never changes during a
    run. ``$input`` is append-only: each operation key is written once.
    ``$last`` is tracked per branch by the executor and passed to
    :meth:`scope`.
    """

    def __init__(
        self,
        payload: Any,
        *,
        flow_id: Any,
        execution_id: Any,
        depth: int = 0,
        timestamp: datetime | None = None,
    ) -> None:
        self._trigger = copy.deepcopy(payload)
        self._inputs: dict[str, Any] = {}
        self.last: Any = None
        self._context = MappingProxyType(
            {
                "flow_id": flow_id,
                "execution_id": execution_id,
                "timestamp": (timestamp or datetime.now(UTC)).isoformat(),
                "depth": depth,
            }
        )

    @property
    def trigger(self) -> Any:
        return copy.deepcopy(self._trigger)

    @property
    def inputs(self) -> Mapping[str, Any]:
        return MappingProxyType(self._inputs)

    @property
    def context(self) -> Mapping[str, Any]:
        return self._context

    def store(self, operation_key: str, output: Any) -> None:
        """Record an operation output under its key and as the latest output."""

        if operation_key in self._inputs:
            raise KeyError(f"output for {operation_key!r} was already recorded")
        self._inputs[operation_key] = output
        self.last = output

    def scope(self, last: Any = MISSING) -> dict[str, Any]:
        """Return a detached snapshot usable for interpolation or sandboxing."""

        return {
            "$trigger": copy.deepcopy(self._trigger),
            "$last": copy.deepcopy(self.last if last is MISSING else last),
            "$input": copy.deepcopy(self._inputs),
            "$context": dict(self._context),
        }


def resolve_path(reference: str, scope: Mapping[str, Any]) -> Any:
    """Resolve a dotted ``$prefix.path[0]`` reference, returning ``MISSING``."""

    match = re.match(r"\$(trigger|last|input|context)", reference)
    if match is None:
        return MISSING
    root = f"${match.group(1)}"
    if root not in scope:
        return MISSING

    value = scope[root]
    for segment in _SEGMENT_RE.finditer(reference, match.end()):
        name, index = segment.group(1), segment.group(2)
        if isinstance(value, Mapping):
            key = name if name is not None else index
            if key not in value:
                return MISSING
            value = value[key]
        elif isinstance(value, (list, tuple)):
            raw = index if index is not None else name
            if raw is None or not raw.isdigit() or int(raw) >= len(value):
                return MISSING
            value = value[int(raw)]
        else:
            return MISSING
    return value


def _as_text(value: Any) -> str:
    if value is MISSING or value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _interpolate_string(value: str, scope: Mapping[str, Any]) -> Any:
    if "$" not in value:
        return value

    exact = _EXACT_REFERENCE_RE.match(value)
    if exact is not None:
        return resolve_path(exact.group(1) or exact.group(2), scope)

    # Substituted text is never rescanned.
    return _EMBEDDED_REFERENCE_RE.sub(
        lambda match: _as_text(resolve_path(match.group(1) or match.group(2), scope)), value
    )


def _interpolate(value: Any, scope: Mapping[str, Any]) -> Any:
    if isinstance(value, str):
        return _interpolate_string(value, scope)
    if isinstance(value, Mapping):
        resolved: dict[str, Any] = {}
        for key, item in value.items():
            item_value = _interpolate(item, scope)
            if item_value is not MISSING:
                resolved[key] = item_value
        return resolved
    if isinstance(value, (list, tuple)):
        items: list[Any] = []
        for entry in value:
            item = _interpolate(entry, scope)
            items.append(None if item is MISSING else item)
        return items
    return value


def has_reference(value: Any) -> bool:
    """Return whether ``value`` contains a data chain reference anywhere."""

    if isinstance(value, str):
        return _REFERENCE_RE.search(value) is not None
    if isinstance(value, Mapping):
        return any(has_reference(item) for item in value.values())
    if isinstance(value, (list, tuple)):
        return any(has_reference(item) for item in value)
    return False


def interpolate(value: Any, scope: Mapping[str, Any]) -> Any:
    """Substitute data chain references inside ``value``.

    Unresolved references never raise: standalone references become ``None``,
    dict entries that resolve to nothing are dropped and embedded references
    render as empty text.
    """

    resolved = _interpolate(value, scope)
    return None if resolved is MISSING else resolved


__all__ = [
    "DataChain",
    "MISSING",
    "RESERVED_PREFIXES",
    "has_reference",
    "interpolate",
    "resolve_path",
]
