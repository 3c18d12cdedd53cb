"""Record storage used by the data operations."""
from __future__ import annotations

import copy
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.record import Record
from ..utils.timestamps import isoformat
from .errors import OperationError, RecordNotFoundError


def serialize_record(record: Record) -> dict[str, Any]:
    return {
        "id": record.id,
        "collection": record.collection,
        "data": copy.deepcopy(record.data or {}),
        "created_at": isoformat(record.created_at),
        "updated_at": isoformat(record.updated_at),
    }


def _matches(data: dict[str, Any], filters: dict[str, Any]) -> bool:
    return all(data.get(key) == value for key, value in filters.items())


class RecordStore:
    """CRUD access to :class:`Record` rows, committing after every mutation."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def _load(self, collection: str, record_id: Any) -> Record:
        record = self._session.get(Record, str(record_id))
        if record is None or record.collection != collection:
            raise RecordNotFoundError(collection, record_id)
        return record

    def _commit(self) -> None:
        try:
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise OperationError(f"record storage failed: {exc}") from exc

    def get(self, collection: str, record_id: Any) -> dict[str, Any]:
        return serialize_record(self._load(collection, record_id))

    def find(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        query = (
            self._session.query(Record)
            .filter_by(collection=collection)
            .order_by(Record.created_at.asc(), Record.id.asc())
        )
        matched: list[dict[str, Any]] = []
        for record in query:
            if filters and not _matches(record.data or {}, filters):
                continue
            matched.append(serialize_record(record))
            if len(matched) >= limit:
                break
        return matched

    def create(
        self,
        collection: str,
        data: dict[str, Any],
        record_id: Any | None = None,
    ) -> dict[str, Any]:
        record = Record(collection=collection, data=copy.deepcopy(data))
        if record_id is not None:
            if self._session.get(Record, str(record_id)) is not None:
                raise OperationError(f"record {record_id!r} already exists")
            record.id = str(record_id)
        self._session.add(record)
        self._commit()
        return serialize_record(record)

    def update(
        self,
        collection: str,
        record_id: Any,
        data: dict[str, Any],
        merge: bool = True,
    ) -> dict[str, Any]:
        record = self._load(collection, record_id)
        updated = dict(record.data or {}) if merge else {}
        updated.update(copy.deepcopy(data))
        record.data = updated
        self._commit()
        return serialize_record(record)

    def delete(self, collection: str, record_id: Any) -> dict[str, Any]:
        record = self._load(collection, record_id)
        snapshot = serialize_record(record)
        self._session.delete(record)
        self._commit()
        return snapshot

    def restore(self, snapshot: dict[str, Any]) -> dict[str, Any]:
        """Put a previously serialized record back into its exact state."""

        record = self._session.get(Record, str(snapshot["id"]))
        if record is None:
            return self.create(snapshot["collection"], snapshot.get("data") or {}, snapshot["id"])
        record.collection = snapshot["collection"]
        record.data = copy.deepcopy(snapshot.get("data") or {})
        self._commit()
        return serialize_record(record)
