"""REST API endpoints for managing, validating and triggering flows."""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, current_app, jsonify, request

from ..extensions import limiter
from ..flows import service
from ..flows.service import ExecutionHandle, serialize_flow
from ..models.flow import FLOW_STATUSES, Flow

bp = Blueprint("flows", __name__)


def _trigger_limit() -> str:
    return current_app.config.get("TRIGGER_RATE_LIMIT", "30 per minute")


def _is_truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


@bp.get("/flows")
def list_flows() -> tuple[object, int]:
    query = Flow.query
    status = request.args.get("status")
    if status:
        if status not in FLOW_STATUSES:
            return jsonify({"error": "status is not supported"}), HTTPStatus.BAD_REQUEST
        query = query.filter(Flow.status == status)
    flows = query.order_by(Flow.created_at.desc(), Flow.id.desc()).all()
    return jsonify([serialize_flow(flow, include_graph=False) for flow in flows]), HTTPStatus.OK


@bp.post("/flows")
def create_flow() -> tuple[object, int]:
    payload = request.get_json(silent=True, force=True) or {}
    flow = service.create_flow(payload)
    return jsonify(serialize_flow(flow)), HTTPStatus.CREATED


@bp.get("/flows/<int:flow_id>")
def get_flow(flow_id: int) -> tuple[object, int]:
    return jsonify(serialize_flow(service.get_flow_model(flow_id))), HTTPStatus.OK


@bp.put("/flows/<int:flow_id>")
def update_flow(flow_id: int) -> tuple[object, int]:
    payload = request.get_json(silent=True, force=True) or {}
    flow = service.update_flow(flow_id, payload)
    return jsonify(serialize_flow(flow)), HTTPStatus.OK


@bp.delete("/flows/<int:flow_id>")
def delete_flow(flow_id: int) -> tuple[object, int]:
    service.delete_flow(flow_id)
    return "", HTTPStatus.NO_CONTENT


@bp.put("/flows/<int:flow_id>/canvas")
def update_canvas(flow_id: int) -> tuple[object, int]:
    payload = request.get_json(silent=True, force=True) or {}
    canvas_state = payload.get("canvas_state", payload)
    flow = service.update_canvas(flow_id, canvas_state)
    return jsonify(serialize_flow(flow)), HTTPStatus.OK


@bp.post("/flows/<int:flow_id>/activate")
def activate_flow(flow_id: int) -> tuple[object, int]:
    flow = service.activate_flow(flow_id)
    return jsonify(serialize_flow(flow, include_graph=False)), HTTPStatus.OK


@bp.post("/flows/<int:flow_id>/deactivate")
def deactivate_flow(flow_id: int) -> tuple[object, int]:
    flow = service.deactivate_flow(flow_id)
    return jsonify(serialize_flow(flow, include_graph=False)), HTTPStatus.OK


@bp.post("/flows/<int:flow_id>/duplicate")
def duplicate_flow(flow_id: int) -> tuple[object, int]:
    payload = request.get_json(silent=True, force=True) or {}
    name = payload.get("name")
    if name is not None and not isinstance(name, str):
        return jsonify({"error": "name must be a string"}), HTTPStatus.BAD_REQUEST
    flow = service.duplicate_flow(flow_id, name)
    return jsonify(serialize_flow(flow)), HTTPStatus.CREATED


@bp.get("/flows/<int:flow_id>/validate")
def validate_flow(flow_id: int) -> tuple[object, int]:
    issues = service.validate_flow(flow_id)
    return (
        jsonify(
            {
                "valid": not any(issue.severity == "error" for issue in issues),
                "issues": [issue.to_dict() for issue in issues],
            }
        ),
        HTTPStatus.OK,
    )


@bp.post("/flows/<int:flow_id>/trigger")
@limiter.limit(_trigger_limit)
def trigger_flow(flow_id: int) -> tuple[object, int]:
    body = request.get_json(silent=True, force=True)
    payload = body.get("payload", body) if isinstance(body, dict) else body
    wait = not _is_truthy(request.args.get("async"))

    result = service.trigger_flow(
        flow_id,
        payload,
        triggered_by=request.headers.get("X-Triggered-By") or "api",
        wait=wait,
    )
    if isinstance(result, ExecutionHandle):
        return jsonify(result.record.to_dict()), HTTPStatus.ACCEPTED
    return jsonify(result.to_dict()), HTTPStatus.OK


@bp.get("/flows/<int:flow_id>/executions")
def list_flow_executions(flow_id: int) -> tuple[object, int]:
    service.get_flow_model(flow_id)
    status = request.args.get("status") or None
    limit = min(max(request.args.get("limit", 50, type=int), 1), 500)
    executions = service.list_executions(flow_id=flow_id, status=status, limit=limit)
    return jsonify([execution.to_dict() for execution in executions]), HTTPStatus.OK
