"""Outbound HTTP request operation."""
from __future__ import annotations

from typing import Any, Literal

import requests
from pydantic import BaseModel, Field

from ..errors import OperationError
from .base import OperationContext, OperationDefinition, StepResult


class HttpRequestOptions(BaseModel):
    url: str = Field(pattern=r"^https?://")
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"] = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    params: dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    timeout_ms: int | None = Field(default=None, ge=1, le=120_000)


class HttpRequestOperation(OperationDefinition):
    """Send an HTTP request; responses with status >= 400 fail the node."""

    type = "http_request"
    name = "HTTP Request"
    description = "Call an external HTTP endpoint."
    category = "integration"
    options_schema = HttpRequestOptions
    default_options = {"method": "GET"}

    def execute(self, options: HttpRequestOptions, context: OperationContext) -> StepResult:
        timeout_ms = options.timeout_ms or context.settings.http_timeout_ms
        kwargs: dict[str, Any] = {
            "headers": options.headers or None,
            "params": options.params or None,
            "timeout": timeout_ms / 1000,
        }
        if options.method not in ("GET", "HEAD") and options.body is not None:
            if isinstance(options.body, (dict, list)):
                kwargs["json"] = options.body
            else:
                kwargs["data"] = str(options.body)

        try:
            response = requests.request(options.method, options.url, **kwargs)
        except requests.RequestException as exc:
            raise OperationError(f"{options.method} {options.url} failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = response.text

        output = {
            "status": response.status_code,
            "headers": dict(response.headers),
            "data": data,
        }
        if response.status_code >= 400:
            error = OperationError(
                f"{options.method} {options.url} returned {response.status_code}",
                status=response.status_code,
            )
            return StepResult(output=output, error=error.to_dict())
        return StepResult(output=output)
