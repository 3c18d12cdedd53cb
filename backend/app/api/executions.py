"""REST API endpoints exposing execution records."""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, jsonify, request

from ..flows import service
from ..models.execution import EXECUTION_STATUSES

bp = Blueprint("executions", __name__)


@bp.get("/executions")
def list_executions() -> tuple[object, int]:
    status = request.args.get("status") or None
    if status is not None and status not in EXECUTION_STATUSES:
        return jsonify({"error": "status is not supported"}), HTTPStatus.BAD_REQUEST
    flow_id = request.args.get("flow_id", type=int)
    limit = min(max(request.args.get("limit", 50, type=int), 1), 500)
    executions = service.list_executions(flow_id=flow_id, status=status, limit=limit)
    return jsonify([execution.to_dict() for execution in executions]), HTTPStatus.OK


@bp.get("/executions/<int:execution_id>")
def get_execution(execution_id: int) -> tuple[object, int]:
    return jsonify(service.get_execution(execution_id).to_dict()), HTTPStatus.OK
