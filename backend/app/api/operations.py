"""Catalogue of operation types and data chain variables for the editor."""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, jsonify

from ..flows.operations import registry

bp = Blueprint("operations", __name__)

DATA_CHAIN_VARIABLES = [
    {"name": "$trigger", "description": "Payload the flow was triggered with."},
    {"name": "$last", "description": "Output of the previous operation on this branch."},
    {"name": "$input", "description": "Outputs of every executed operation, by operation key."},
    {"name": "$context", "description": "flow_id, execution_id, timestamp and depth."},
]


@bp.get("/operations")
def list_operations() -> tuple[object, int]:
    return (
        jsonify({"operations": registry.describe(), "variables": DATA_CHAIN_VARIABLES}),
        HTTPStatus.OK,
    )
