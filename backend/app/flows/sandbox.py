"""Runtime utilities for executing flow code in a sandboxed subprocess."""
from __future__ import annotations

import json
import logging
import math
import pathlib
import subprocess
import sys
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from ..utils import security
from .errors import SandboxRuntimeError, SandboxTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 5000

_CHILD_PATH = pathlib.Path(__file__).with_name("_sandbox_child.py")


@dataclass
class SandboxResult:
    """Outcome of a successful sandbox run."""

    output: Any
    logs: list[str] = field(default_factory=list)
    debug: str = ""
    duration_ms: int = 0


def _collect_error(debug: str, default_type: str = "Exception") -> SandboxRuntimeError:
    error_type = "SyntaxError" if "SyntaxError" in debug else default_type
    message = "Sandbox execution failed"
    if debug:
        last_line = debug.strip().splitlines()[-1]
        if last_line:
            message = last_line
    return SandboxRuntimeError(message, error_type=error_type, stack=debug or None)


def run_code(
    code: str,
    message: Any,
    context: dict[str, Any] | None,
    *,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    allowed_hosts: Iterable[str] = (),
    memory_limit_mb: int | None = None,
) -> SandboxResult:
    """Execute user code defining ``run(message, context)`` in an isolated subprocess.

    The child is killed once ``timeout_ms`` elapses and
    :class:`SandboxTimeoutError` is raised; no retry is attempted. Errors
    raised by the code surface as :class:`SandboxRuntimeError` with the
    captured console output attached.
    """

    payload = json.dumps(
        {
            "code": code,
            "message": message,
            "context": context or {},
            "allowed_hosts": list(allowed_hosts),
        },
        default=str,
    )
    preexec_fn = security.build_preexec_fn(
        cpu_seconds=math.ceil(timeout_ms / 1000) + 1,
        memory_limit_mb=memory_limit_mb,
    )

    started = time.monotonic()
    try:
        completed = subprocess.run(
            [sys.executable, "-I", str(_CHILD_PATH)],
            input=payload,
            capture_output=True,
            text=True,
            timeout=timeout_ms / 1000,
            check=False,
            preexec_fn=preexec_fn,
        )
    except subprocess.TimeoutExpired:
        logger.warning("sandboxed code exceeded %s ms and was abandoned", timeout_ms)
        raise SandboxTimeoutError(timeout_ms) from None
    duration_ms = int((time.monotonic() - started) * 1000)

    debug_output = completed.stderr or ""
    try:
        response = json.loads(completed.stdout or "")
    except json.JSONDecodeError:
        if completed.returncode != 0:
            raise _collect_error(debug_output) from None
        raise SandboxRuntimeError(
            "Invalid JSON output from sandbox", error_type="ProtocolError"
        ) from None

    logs = [str(line) for line in response.get("logs") or []]
    if not response.get("ok"):
        error = response.get("error") or {}
        raise SandboxRuntimeError(
            error.get("message") or "Sandbox execution failed",
            error_type=error.get("type"),
            stack=error.get("stack"),
            logs=logs,
        )

    return SandboxResult(
        output=response.get("result"),
        logs=logs,
        debug=debug_output,
        duration_ms=duration_ms,
    )


__all__ = ["DEFAULT_TIMEOUT_MS", "SandboxResult", "run_code"]
