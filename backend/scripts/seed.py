"""Seed the database with an example flow built from a canvas layout."""
from __future__ import annotations

import pathlib
import sys
from typing import Any

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.app import create_app
from backend.app.flows import service
from backend.app.flows.operations.code import EXAMPLE_CODE
from backend.app.models.flow import Flow

EXAMPLE_FLOW_NAME = "Large Order Flow"


def _node(node_id: str, operation_type: str, label: str, options: dict[str, Any], x: int) -> dict:
    return {
        "id": node_id,
        "type": "operation",
        "position": {"x": x, "y": 120},
        "data": {
            "operationType": operation_type,
            "operationKey": node_id.replace("op_", ""),
            "label": label,
            "options": options,
        },
    }


def _example_canvas() -> dict[str, Any]:
    """Trigger, enrich in code, branch on the order total, store or log."""

    nodes = [
        {"id": "trigger", "type": "trigger", "position": {"x": 0, "y": 120}, "data": {}},
        _node("op_enrich", "execute_code", "Enrich order", {"code": EXAMPLE_CODE}, 240),
        _node(
            "op_is_large",
            "condition",
            "Total above 100?",
            {"left": "$last.total", "operator": "gt", "right": 100},
            480,
        ),
        _node(
            "op_store",
            "create_data",
            "Store large order",
            {"collection": "large_orders", "data": "$input.enrich"},
            720,
        ),
        _node(
            "op_log",
            "log",
            "Log small order",
            {"message": "Order {{ $trigger.id }} below threshold", "level": "info"},
            720,
        ),
    ]
    edges = [
        {"id": "e_trigger_enrich", "source": "trigger", "target": "op_enrich"},
        {"id": "e_enrich_branch", "source": "op_enrich", "target": "op_is_large"},
        {
            "id": "e_branch_store",
            "source": "op_is_large",
            "target": "op_store",
            "sourceHandle": "true",
        },
        {
            "id": "e_branch_log",
            "source": "op_is_large",
            "target": "op_log",
            "sourceHandle": "false",
        },
    ]
    return {"nodes": nodes, "edges": edges, "viewport": {"x": 0, "y": 0, "zoom": 1}}


def main() -> None:
    app = create_app()
    with app.app_context():
        flow = Flow.query.filter_by(name=EXAMPLE_FLOW_NAME).first()
        created = flow is None
        if flow is None:
            flow = service.create_flow(
                {
                    "name": EXAMPLE_FLOW_NAME,
                    "description": "Stores orders above 100 and logs the rest.",
                    "trigger_type": "manual",
                }
            )
        elif flow.status == "active":
            service.deactivate_flow(flow.id)

        service.update_canvas(flow.id, _example_canvas())
        service.activate_flow(flow.id)

        print(
            "Seed completed",
            f"flow id={flow.id}",
            f"flows created={int(created)}",
            f"flows updated={int(not created)}",
        )


if __name__ == "__main__":
    main()
