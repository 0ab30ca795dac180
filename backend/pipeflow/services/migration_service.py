# Overview: One-time migration that drains the fallback store into the entity store.

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..entities import EntityType, ID_KEY
from ..errors import MigrationRecordError
from ..extensions import db
from ..time_utils import utcnow, to_utc_z
from .activity_service import ActivityLogger
from .conversions import split_document
from .entity_store import EntityStore
from .fallback_store import FallbackStore
"""
Migration invariants (authoritative)

- The completion flag lives in the entity store; its absence is the only trigger.
- Ordering: every entity store write is committed before the flag is written,
  and the fallback store is cleared only after the flag write succeeded.
- A crash at any point re-enters at NOT_STARTED on the next start. Records
  already copied by the interrupted run are detected by id and not rewritten.
- Per-record failures are reported and skipped; nothing is rolled back.
"""

MIGRATION_FLAG_KEY = "migration.fallback_store.completed"


class MigrationState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass
class MigrationReport:
    already_completed: bool = False
    migrated: int = 0
    already_present: int = 0
    skipped: list[dict[str, Any]] = field(default_factory=list)
    per_type: dict[str, int] = field(default_factory=dict)
    fallback_cleared: bool = False

    @property
    def writes(self) -> int:
        return self.migrated

    @property
    def partial(self) -> bool:
        return bool(self.skipped)

    def to_dict(self) -> dict:
        return {
            "already_completed": self.already_completed,
            "migrated": self.migrated,
            "already_present": self.already_present,
            "skipped": list(self.skipped),
            "skipped_count": len(self.skipped),
            "per_type": dict(self.per_type),
            "fallback_cleared": self.fallback_cleared,
        }


class MigrationService:
    def __init__(self, entity_store: EntityStore, fallback_store: FallbackStore, activity: ActivityLogger):
        self.entity_store = entity_store
        self.fallback_store = fallback_store
        self.activity = activity
        self.state = MigrationState.NOT_STARTED
        self.last_report: MigrationReport | None = None

    def is_completed(self) -> bool:
        flag = self.entity_store.get_meta(MIGRATION_FLAG_KEY)
        if isinstance(flag, dict):
            return bool(flag.get("completed"))
        return bool(flag)

    def ensure_migrated(self) -> MigrationReport:
        """
        Copy every fallback record into the entity store, at most once.

        Returns a report of what was migrated and what was skipped. A second
        call after completion performs no writes.
        """
        if self.is_completed():
            self.state = MigrationState.COMPLETED
            report = MigrationReport(already_completed=True)
            self.last_report = report
            return report

        self.state = MigrationState.IN_PROGRESS
        try:
            report = self._run()
        except Exception:
            self.state = MigrationState.NOT_STARTED
            raise
        self.last_report = report
        return report

    def _run(self) -> MigrationReport:
        report = MigrationReport()
        collections = {et: self.fallback_store.list(et) for et in EntityType}
        total = sum(len(docs) for docs in collections.values())

        if total == 0:
            current_app.logger.info("No fallback records to migrate")
            self._write_flag(report)
            self.state = MigrationState.COMPLETED
            return report

        current_app.logger.info("Migrating %d fallback records into the entity store", total)
        for et, docs in collections.items():
            migrated_for_type = 0
            for doc in docs:
                try:
                    if self._migrate_record(et, doc):
                        migrated_for_type += 1
                    else:
                        report.already_present += 1
                except MigrationRecordError as exc:
                    report.skipped.append({
                        "entity_type": exc.entity_type,
                        "id": exc.record_id,
                        "reason": exc.reason,
                    })
                    self.activity.record(
                        "migration.record_skipped",
                        str(exc),
                        success=False,
                        entity_type=exc.entity_type,
                        entity_id=exc.record_id,
                    )
            report.per_type[et.value] = migrated_for_type
            report.migrated += migrated_for_type

        # Flag only after all entity store writes above have committed
        self._write_flag(report)
        self.state = MigrationState.COMPLETED

        try:
            self.fallback_store.clear_all()
            report.fallback_cleared = True
        except OSError:
            current_app.logger.exception("Migration completed but the fallback store could not be cleared")

        self.activity.record(
            "migration.completed",
            f"Migrated {report.migrated} records ({len(report.skipped)} skipped, "
            f"{report.already_present} already present)",
            success=not report.partial,
            details=report.to_dict(),
        )
        return report

    def _migrate_record(self, entity_type: EntityType, doc: Any) -> bool:
        if not isinstance(doc, dict):
            raise MigrationRecordError(entity_type.value, None, "record is not an object")
        raw_id = doc.get(ID_KEY)
        if raw_id is None or str(raw_id).strip() == "":
            raise MigrationRecordError(entity_type.value, None, "record has no id")
        record_id = str(raw_id).strip()
        try:
            _, payload, created_at, _ = split_document(doc)
            now = utcnow()
            return self.entity_store.insert_if_absent(
                entity_type,
                record_id,
                payload,
                created_at=created_at or now,
                updated_at=now,
            )
        except (ValueError, TypeError) as exc:
            raise MigrationRecordError(entity_type.value, record_id, str(exc)) from exc
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise MigrationRecordError(entity_type.value, record_id, exc.__class__.__name__) from exc

    def _write_flag(self, report: MigrationReport) -> None:
        self.entity_store.set_meta(MIGRATION_FLAG_KEY, {
            "completed": True,
            "completed_at": to_utc_z(utcnow()),
            "migrated": report.migrated,
            "skipped": len(report.skipped),
        })
