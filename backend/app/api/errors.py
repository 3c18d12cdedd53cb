"""Translate flow engine errors into JSON responses."""

from __future__ import annotations

from http import HTTPStatus

from flask import Flask, jsonify

from ..flows.errors import (
    FlowError,
    FlowNotFoundError,
    FlowStateError,
    GraphValidationError,
    ValidationError,
)

STATUS_BY_ERROR: tuple[tuple[type[FlowError], HTTPStatus], ...] = (
    (FlowNotFoundError, HTTPStatus.NOT_FOUND),
    (FlowStateError, HTTPStatus.CONFLICT),
    (GraphValidationError, HTTPStatus.BAD_REQUEST),
    (ValidationError, HTTPStatus.BAD_REQUEST),
)


def status_for(exc: FlowError) -> HTTPStatus:
    for error_type, status in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return HTTPStatus.INTERNAL_SERVER_ERROR


def error_response(exc: FlowError) -> tuple[object, int]:
    body = {"error": exc.message, **exc.to_dict()}
    body.pop("message", None)
    return jsonify(body), status_for(exc)


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(FlowError)
    def _handle_flow_error(exc: FlowError) -> tuple[object, int]:
        status = status_for(exc)
        if status >= HTTPStatus.INTERNAL_SERVER_ERROR:
            app.logger.exception("Unhandled flow error: %s", exc.message)
        return error_response(exc)
