# Overview: Primary backend; records and storage state in the relational entity store.

from __future__ import annotations

from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError

from ..entities import EntityType
from ..errors import RecordConflictError
from ..extensions import db
from ..models import Record, StorageMeta
from .concurrency import run_with_retry
from .conversions import build_document


class EntityStore:
    """
    Indexed storage for records, keyed by (entity_type, id).

    Every write commits before returning so that callers (migration in
    particular) can rely on durability once a method has returned.
    """

    def ensure_schema(self) -> None:
        """Probe connectivity and create tables if missing."""
        db.session.execute(sa.text("SELECT 1"))
        db.create_all()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list(self, entity_type: EntityType) -> list[dict[str, Any]]:
        rows = (
            db.session.query(Record)
            .filter(Record.entity_type == entity_type.value)
            .order_by(Record.created_at.asc(), Record.record_id.asc())
            .all()
        )
        return [r.to_dict() for r in rows]

    def get(self, entity_type: EntityType, record_id: str) -> dict[str, Any] | None:
        row = db.session.get(Record, (entity_type.value, record_id))
        return row.to_dict() if row else None

    def ids(self, entity_type: EntityType) -> set[str]:
        rows = db.session.query(Record.record_id).filter(Record.entity_type == entity_type.value).all()
        return {r.record_id for r in rows}

    def changed_since(self, entity_type: EntityType, since: datetime) -> list[dict[str, Any]]:
        rows = (
            db.session.query(Record)
            .filter(Record.entity_type == entity_type.value, Record.updated_at > since)
            .order_by(Record.updated_at.asc(), Record.record_id.asc())
            .all()
        )
        return [r.to_dict() for r in rows]

    def count(self, entity_type: EntityType) -> int:
        return db.session.query(Record).filter(Record.entity_type == entity_type.value).count()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(
        self,
        entity_type: EntityType,
        record_id: str,
        payload: dict[str, Any],
        *,
        created_at: datetime,
        updated_at: datetime,
    ) -> dict[str, Any]:
        """Insert a new record; RecordConflictError if the id is taken."""
        def _op():
            if db.session.get(Record, (entity_type.value, record_id)) is not None:
                raise RecordConflictError(entity_type.value, record_id)
            row = Record(
                entity_type=entity_type.value,
                record_id=record_id,
                payload=dict(payload),
                created_at=created_at,
                updated_at=updated_at,
            )
            db.session.add(row)
            try:
                db.session.commit()
            except IntegrityError as exc:
                db.session.rollback()
                raise RecordConflictError(entity_type.value, record_id) from exc
            return build_document(record_id, payload, created_at, updated_at)
        return run_with_retry(_op)

    def insert_if_absent(
        self,
        entity_type: EntityType,
        record_id: str,
        payload: dict[str, Any],
        *,
        created_at: datetime,
        updated_at: datetime,
    ) -> bool:
        """Insert unless the id already exists. Returns True when a row was written."""
        try:
            self.insert(entity_type, record_id, payload, created_at=created_at, updated_at=updated_at)
        except RecordConflictError:
            return False
        return True

    def save(
        self,
        entity_type: EntityType,
        record_id: str,
        payload: dict[str, Any],
        *,
        created_at: datetime,
        updated_at: datetime,
    ) -> dict[str, Any]:
        """Insert or replace a record."""
        def _op():
            row = db.session.get(Record, (entity_type.value, record_id))
            if row is None:
                row = Record(entity_type=entity_type.value, record_id=record_id)
                db.session.add(row)
            row.payload = dict(payload)
            row.created_at = created_at
            row.updated_at = updated_at
            db.session.commit()
            return row.to_dict()
        return run_with_retry(_op)

    def delete(self, entity_type: EntityType, record_id: str) -> bool:
        def _op():
            deleted = (
                db.session.query(Record)
                .filter(Record.entity_type == entity_type.value, Record.record_id == record_id)
                .delete()
            )
            db.session.commit()
            return deleted > 0
        return run_with_retry(_op)

    # ------------------------------------------------------------------
    # Storage state
    # ------------------------------------------------------------------

    def get_meta(self, key: str, default: Any = None) -> Any:
        row = db.session.get(StorageMeta, key)
        if row is None:
            return default
        return row.value

    def set_meta(self, key: str, value: Any) -> None:
        def _op():
            row = db.session.get(StorageMeta, key)
            if row is None:
                row = StorageMeta(key=key)
                db.session.add(row)
            row.value = value
            db.session.commit()
        run_with_retry(_op)
