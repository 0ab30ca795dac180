from __future__ import annotations

from ..extensions import db
from ..entities import ID_KEY, CREATED_AT_KEY, UPDATED_AT_KEY
from ..time_utils import to_utc_z


class Record(db.Model):
    """
    One business object (inventory item, sale, report, customer, setting).

    Fields other than id/timestamps live in the JSON payload column so every
    entity type shares one table; (entity_type, record_id) is the identity.

    updated_at is the ordering key for incremental sync and is written by the
    storage gateway only.
    """
    __tablename__ = "records"
    __table_args__ = (
        db.Index("ix_records_type_updated", "entity_type", "updated_at"),
    )

    entity_type = db.Column(db.String(32), primary_key=True)
    record_id = db.Column(db.String(128), primary_key=True)
    payload = db.Column(db.JSON, nullable=False, default=dict)

    created_at = db.Column(db.DateTime, nullable=False)
    updated_at = db.Column(db.DateTime, nullable=False)

    def to_dict(self) -> dict:
        doc = dict(self.payload or {})
        doc[ID_KEY] = self.record_id
        doc[CREATED_AT_KEY] = to_utc_z(self.created_at)
        doc[UPDATED_AT_KEY] = to_utc_z(self.updated_at)
        return doc


class StorageMeta(db.Model):
    """
    Key-value state owned by the storage engine.

    Holds the migration completion flag and durable sync cursors.
    """
    __tablename__ = "storage_meta"

    key = db.Column(db.String(128), primary_key=True)
    value = db.Column(db.JSON, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "value": self.value,
            "updated_at": to_utc_z(self.updated_at),
        }
