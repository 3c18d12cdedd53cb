"""Generic record storage targeted by the data operations."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from ..extensions import db


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Record(db.Model):
    """A JSON document stored in a named collection."""

    __tablename__ = "records"

    id = db.Column(db.String(64), primary_key=True, default=lambda: uuid.uuid4().hex)
    collection = db.Column(db.String(120), nullable=False, index=True)
    data = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, default=_utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<Record {self.collection}/{self.id}>"
