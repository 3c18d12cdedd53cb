"""Engine settings derived from the Flask configuration mapping."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


def _split_hosts(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(host.strip().lower() for host in value.split(",") if host.strip())
    return tuple(str(host).strip().lower() for host in value if str(host).strip())


@dataclass(frozen=True)
class EngineSettings:
    """Limits applied by operations while a flow runs."""

    sandbox_allowed_hosts: tuple[str, ...] = ()
    sandbox_memory_limit_mb: int | None = 256
    bulk_max_items_limit: int = 1000
    max_flow_depth: int = 5
    http_timeout_ms: int = 30000

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> EngineSettings:
        memory = config.get("SANDBOX_MEMORY_LIMIT_MB", 256)
        return cls(
            sandbox_allowed_hosts=_split_hosts(config.get("SANDBOX_FETCH_ALLOWED_HOSTS")),
            sandbox_memory_limit_mb=int(memory) if memory else None,
            bulk_max_items_limit=int(config.get("BULK_MAX_ITEMS_LIMIT", 1000)),
            max_flow_depth=int(config.get("FLOW_MAX_DEPTH", 5)),
            http_timeout_ms=int(config.get("HTTP_REQUEST_TIMEOUT_MS", 30000)),
        )
