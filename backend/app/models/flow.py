"""Flow definition models: the flow, its operations and connections."""

from __future__ import annotations

from datetime import UTC, datetime

from ..extensions import db
from ..flows.graph import CONNECTION_TYPES, Connection, OperationNode

FLOW_STATUSES = ("draft", "active", "inactive")
TRIGGER_TYPES = ("event", "schedule", "webhook", "manual", "another_flow")


def default_canvas_state() -> dict[str, object]:
    return {"nodes": [], "edges": [], "viewport": {"x": 0, "y": 0, "zoom": 1}}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Flow(db.Model):
    """Represents a named automation: trigger configuration plus an operation graph."""

    __tablename__ = "flows"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(
        db.Enum(*FLOW_STATUSES, name="flow_status"), nullable=False, default="draft"
    )
    trigger_type = db.Column(
        db.Enum(*TRIGGER_TYPES, name="flow_trigger_type"), nullable=False, default="manual"
    )
    trigger_config = db.Column(db.JSON, nullable=False, default=dict)
    canvas_state = db.Column(db.JSON, nullable=True, default=default_canvas_state)
    created_at = db.Column(db.DateTime, default=_utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    operations = db.relationship(
        "FlowOperation",
        back_populates="flow",
        cascade="all, delete-orphan",
        order_by=lambda: (FlowOperation.sort_order, FlowOperation.id),
    )
    connections = db.relationship(
        "FlowConnection",
        back_populates="flow",
        cascade="all, delete-orphan",
        order_by="FlowConnection.id",
    )

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<Flow {self.id} {self.name!r} ({self.status})>"


class FlowOperation(db.Model):
    """One operation node of a flow."""

    __tablename__ = "flow_operations"
    __table_args__ = (
        db.UniqueConstraint("flow_id", "node_id", name="uq_flow_operation_node"),
        db.UniqueConstraint("flow_id", "operation_key", name="uq_flow_operation_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    flow_id = db.Column(db.Integer, db.ForeignKey("flows.id"), nullable=False, index=True)
    node_id = db.Column(db.String(64), nullable=False)
    operation_key = db.Column(db.String(255), nullable=False)
    operation_type = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=True)
    options = db.Column(db.JSON, nullable=False, default=dict)
    position_x = db.Column(db.Float, nullable=False, default=0)
    position_y = db.Column(db.Float, nullable=False, default=0)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    flow = db.relationship("Flow", back_populates="operations")

    def to_node(self) -> OperationNode:
        return OperationNode(
            id=self.node_id,
            operation_key=self.operation_key,
            operation_type=self.operation_type,
            name=self.name,
            options=dict(self.options or {}),
            position=(float(self.position_x or 0), float(self.position_y or 0)),
            sort_order=int(self.sort_order or 0),
        )

    @classmethod
    def from_node(cls, node: OperationNode) -> FlowOperation:
        return cls(
            node_id=node.id,
            operation_key=node.operation_key,
            operation_type=node.operation_type,
            name=node.name,
            options=dict(node.options),
            position_x=node.position[0],
            position_y=node.position[1],
            sort_order=node.sort_order,
        )


class FlowConnection(db.Model):
    """A directed connection between two nodes of a flow."""

    __tablename__ = "flow_connections"
    __table_args__ = (
        db.UniqueConstraint("flow_id", "edge_id", name="uq_flow_connection_edge"),
    )

    id = db.Column(db.Integer, primary_key=True)
    flow_id = db.Column(db.Integer, db.ForeignKey("flows.id"), nullable=False, index=True)
    edge_id = db.Column(db.String(64), nullable=False)
    source_id = db.Column(db.String(64), nullable=False)
    source_handle = db.Column(db.String(64), nullable=False, default="default")
    target_id = db.Column(db.String(64), nullable=False)
    target_handle = db.Column(db.String(64), nullable=False, default="default")
    connection_type = db.Column(
        db.Enum(*CONNECTION_TYPES, name="flow_connection_type"),
        nullable=False,
        default="default",
    )
    label = db.Column(db.String(255), nullable=True)

    flow = db.relationship("Flow", back_populates="connections")

    def to_connection(self) -> Connection:
        return Connection(
            id=self.edge_id,
            source_id=self.source_id,
            target_id=self.target_id,
            source_handle=self.source_handle or "default",
            target_handle=self.target_handle or "default",
            connection_type=self.connection_type or "default",
            label=self.label,
        )

    @classmethod
    def from_connection(cls, connection: Connection) -> FlowConnection:
        return cls(
            edge_id=connection.id,
            source_id=connection.source_id,
            source_handle=connection.source_handle,
            target_id=connection.target_id,
            target_handle=connection.target_handle,
            connection_type=connection.connection_type,
            label=connection.label,
        )
