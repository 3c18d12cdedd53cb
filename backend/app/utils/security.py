"""Security helpers for sandboxing subprocess execution."""
from __future__ import annotations

import os
from collections.abc import Callable


def build_preexec_fn(
    *,
    cpu_seconds: int | None = None,
    memory_limit_mb: int | None = None,
) -> Callable[[], None] | None:
    """Return a callable that configures resource limits for subprocesses.

    Returns ``None`` where POSIX resource limits are unavailable.
    """

    if os.name != "posix" or (cpu_seconds is None and memory_limit_mb is None):
        return None

    import resource

    def _apply_limits() -> None:
        if cpu_seconds is not None:
            resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds + 1))
        if memory_limit_mb is not None and hasattr(resource, "RLIMIT_AS"):
            limit = int(memory_limit_mb) * 1024 * 1024
            resource.setrlimit(resource.RLIMIT_AS, (limit, limit))

    return _apply_limits
