"""Execution audit models."""

from __future__ import annotations

from datetime import UTC, datetime

from ..extensions import db

EXECUTION_STATUSES = ("pending", "running", "completed", "failed", "cancelled")
RESULT_STATUSES = ("success", "failure")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class FlowExecution(db.Model):
    """Audit record of one run of a flow.

    ``flow_id`` is deliberately not a foreign key: executions outlive edits
    and deletion of the flow they ran.
    """

    __tablename__ = "flow_executions"

    id = db.Column(db.Integer, primary_key=True)
    flow_id = db.Column(db.Integer, nullable=False, index=True)
    status = db.Column(
        db.Enum(*EXECUTION_STATUSES, name="flow_execution_status"),
        nullable=False,
        default="pending",
        index=True,
    )
    trigger_data = db.Column(db.JSON, nullable=True)
    triggered_by = db.Column(db.String(255), nullable=True)
    error = db.Column(db.JSON, nullable=True)
    started_at = db.Column(db.DateTime, nullable=True, index=True)
    finished_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=_utcnow, nullable=False)

    results = db.relationship(
        "FlowExecutionResult",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="FlowExecutionResult.position",
    )

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<FlowExecution {self.id} flow={self.flow_id} {self.status}>"


class FlowExecutionResult(db.Model):
    """Result of one visited node within an execution."""

    __tablename__ = "flow_execution_results"
    __table_args__ = (
        db.UniqueConstraint("execution_id", "position", name="uq_execution_result_position"),
    )

    id = db.Column(db.Integer, primary_key=True)
    execution_id = db.Column(
        db.Integer, db.ForeignKey("flow_executions.id"), nullable=False, index=True
    )
    position = db.Column(db.Integer, nullable=False)
    node_id = db.Column(db.String(64), nullable=False)
    operation_key = db.Column(db.String(255), nullable=True)
    operation_type = db.Column(db.String(64), nullable=True)
    status = db.Column(db.Enum(*RESULT_STATUSES, name="flow_result_status"), nullable=False)
    output = db.Column(db.JSON, nullable=True)
    error = db.Column(db.JSON, nullable=True)
    duration_ms = db.Column(db.Integer, nullable=False, default=0)
    logs = db.Column(db.JSON, nullable=False, default=list)
    executed_at = db.Column(db.DateTime, default=_utcnow, nullable=False)

    execution = db.relationship("FlowExecution", back_populates="results")
