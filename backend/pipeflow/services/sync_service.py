# Overview: Sync manager; pull/push reconciliation against the remote store, one entity type at a time.

from __future__ import annotations

import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..entities import EntityType, ID_KEY, SYNC_ORDER
from ..errors import (
    NotFoundError,
    RemoteRecordRejected,
    RemoteUnreachable,
    StorageError,
    SyncError,
)
from ..extensions import db
from ..time_utils import EPOCH, coerce_datetime, to_utc_z, utcnow
from ..validation import ValidationError, parse_entity_type
from .activity_service import ActivityLogger
from .conversions import from_remote_row, to_remote_row
from .defaults import APP_SETTINGS_ID
from .remote_store import RemoteStore
from .storage_gateway import StorageGateway
"""
Sync Invariants (authoritative)

- At most one sync per entity type runs at a time in this process. A request
  arriving while one runs is queued (FIFO) and answered "in-progress"; the
  thread owning the running slot executes queued requests before releasing it.
- Each type keeps two cursors, advanced only after both pull and push
  succeeded:
  - the local cursor bounds the push query; it becomes the local instant
    captured just before that query, so writes made during the push go out
    on the next pass.
  - the remote cursor bounds the pull query; it becomes the highest remote
    updated_at seen, counting the stamps of rows this pass pushed, so a
    pusher does not pull its own rows back.
- Pushed rows are stamped with the push instant. A change made offline and
  pushed later is newer than every other installation's remote cursor.
- Records pulled in a pass are not pushed back in the same pass.
- Only inventory, sale and customer records are synced.
- A rejected record (remote 4xx, local validation) is skipped; transport and
  server errors abort the pass with both cursors untouched.
- Sync passes never raise to callers; outcomes are returned as SyncResult.
  Only an unknown or unsynced entity type is a ValidationError.
"""

CURSOR_META_PREFIX = "sync.cursor."
REMOTE_CURSOR_META_PREFIX = "sync.remote_cursor."

IN_PROGRESS = "in-progress"
OFFLINE = "offline"


def _row_updated_at(row: dict) -> datetime | None:
    try:
        return coerce_datetime(row.get("updated_at"))
    except ValueError:
        return None


def parse_sync_type(value: Any) -> EntityType:
    """Entity type that is exchanged with the remote store; ValidationError otherwise."""
    et = parse_entity_type(value)
    if et not in SYNC_ORDER:
        synced = ", ".join(t.value for t in SYNC_ORDER)
        raise ValidationError(f"{et.value} records are not synced (synced types: {synced})")
    return et


@dataclass
class SyncResult:
    entity_type: EntityType
    success: bool
    reason: str | None = None
    offline: bool = False
    queued: bool = False
    pulled: int = 0
    pushed: int = 0
    skipped: int = 0
    finished_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "entity_type": self.entity_type.value,
            "success": self.success,
            "reason": self.reason,
            "offline": self.offline,
            "queued": self.queued,
            "stats": {"pulled": self.pulled, "pushed": self.pushed, "skipped": self.skipped},
            "finished_at": to_utc_z(self.finished_at),
        }


@dataclass
class OfflineChangeMarker:
    entity_type: EntityType
    queued_at: datetime
    attempts: int = 1

    def to_dict(self) -> dict:
        return {
            "entity_type": self.entity_type.value,
            "queued_at": to_utc_z(self.queued_at),
            "attempts": self.attempts,
        }


class CursorStore:
    """
    Sync cursors per entity type.

    ``get``/``set`` hold the local cursor (bounds the push query, local
    clock); ``get_remote``/``set_remote`` hold the remote cursor (bounds the
    pull query, remote updated_at values). Persisted through the gateway's
    storage state when ``persist`` is set, otherwise kept in memory and lost
    on restart.
    """

    def __init__(self, gateway: StorageGateway, *, persist: bool = True):
        self.gateway = gateway
        self.persist = persist
        self._memory: dict[str, datetime] = {}

    def _read(self, key: str) -> datetime:
        if not self.persist:
            return self._memory.get(key, EPOCH)
        raw = self.gateway.read_meta(key)
        try:
            return coerce_datetime(raw) or EPOCH
        except ValueError:
            current_app.logger.warning("Ignoring unreadable sync cursor %s: %r", key, raw)
            return EPOCH

    def _write(self, key: str, value: datetime | None) -> None:
        if not self.persist:
            if value is None:
                self._memory.pop(key, None)
            else:
                self._memory[key] = value
            return
        self.gateway.write_meta(key, to_utc_z(value) if value is not None else None)

    def get(self, entity_type: EntityType) -> datetime:
        return self._read(CURSOR_META_PREFIX + entity_type.value)

    def set(self, entity_type: EntityType, value: datetime) -> None:
        self._write(CURSOR_META_PREFIX + entity_type.value, value)

    def get_remote(self, entity_type: EntityType) -> datetime:
        return self._read(REMOTE_CURSOR_META_PREFIX + entity_type.value)

    def set_remote(self, entity_type: EntityType, value: datetime) -> None:
        self._write(REMOTE_CURSOR_META_PREFIX + entity_type.value, value)

    def reset(self, entity_type: EntityType | None = None) -> None:
        targets = [entity_type] if entity_type else list(SYNC_ORDER)
        for et in targets:
            self._write(CURSOR_META_PREFIX + et.value, None)
            self._write(REMOTE_CURSOR_META_PREFIX + et.value, None)

    def snapshot(self, *, remote: bool = False) -> dict[str, str | None]:
        read = self.get_remote if remote else self.get
        out = {}
        for et in SYNC_ORDER:
            value = read(et)
            out[et.value] = None if value == EPOCH else to_utc_z(value)
        return out


class SyncManager:
    def __init__(
        self,
        gateway: StorageGateway,
        remote: RemoteStore,
        *,
        activity: ActivityLogger,
        persist_cursors: bool = True,
    ):
        self.gateway = gateway
        self.remote = remote
        self.activity = activity
        self.cursors = CursorStore(gateway, persist=persist_cursors)

        self._lock = threading.Lock()
        self._running: set[EntityType] = set()
        self._queues: dict[EntityType, deque] = {et: deque() for et in SYNC_ORDER}
        self._offline: "OrderedDict[EntityType, OfflineChangeMarker]" = OrderedDict()
        self._last_results: dict[EntityType, SyncResult] = {}

    # ------------------------------------------------------------------
    # Remote configuration
    # ------------------------------------------------------------------

    def load_remote_config(self) -> bool:
        """Apply remote settings persisted in the app settings record, if any."""
        settings = self.gateway.get(EntityType.SETTING, APP_SETTINGS_ID) or {}
        url, key = settings.get("remoteUrl"), settings.get("remoteKey")
        if url and key:
            self.remote.configure(url, key)
            return True
        return False

    def configure_remote(self, url: Any, key: Any) -> dict:
        """Point the manager at a new remote endpoint and persist it."""
        if not isinstance(url, str) or not url.strip():
            raise ValidationError("remote url is required")
        if not isinstance(key, str) or not key.strip():
            raise ValidationError("remote key is required")
        if not url.strip().lower().startswith(("http://", "https://")):
            raise ValidationError("remote url must start with http:// or https://")
        url, key = url.strip(), key.strip()

        self.remote.configure(url, key)
        fields = {ID_KEY: APP_SETTINGS_ID, "remoteUrl": url, "remoteKey": key}
        try:
            self.gateway.update(EntityType.SETTING, fields, source="config")
        except NotFoundError:
            self.gateway.create(EntityType.SETTING, fields, source="config")

        self.activity.record("sync.remote_configured", f"Remote store set to {url}")
        return {"configured": self.remote.is_configured, "url": url}

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync_entity_type(self, entity_type: EntityType | str) -> SyncResult:
        """
        Pull then push one entity type.

        Returns immediately with reason "in-progress" if a sync for the type
        is already running; the request is queued and run after it.
        """
        et = parse_sync_type(entity_type)
        with self._lock:
            if et in self._running:
                self._queues[et].append(utcnow())
                current_app.logger.info("Sync of %s already running; request queued", et.value)
                return SyncResult(et, success=False, reason=IN_PROGRESS, queued=True)
            self._running.add(et)

        released = False
        try:
            result = self._run(et)
            released = self._drain_queue(et)
        finally:
            if not released:
                with self._lock:
                    self._running.discard(et)
        return result

    def _drain_queue(self, et: EntityType) -> bool:
        """Run queued requests for et; releases the running slot when the queue is empty."""
        while True:
            with self._lock:
                if not self._queues[et]:
                    self._running.discard(et)
                    return True
                self._queues[et].popleft()
            current_app.logger.info("Running queued sync of %s", et.value)
            self._run(et)

    def _run(self, et: EntityType) -> SyncResult:
        if not self.remote.is_available():
            result = SyncResult(et, success=False, reason=OFFLINE, offline=True)
            self._mark_offline(et)
            self.activity.record("sync.offline", f"Remote unreachable; {et.value} sync deferred",
                                 success=False, entity_type=et.value)
            return self._finish(result)

        try:
            result = self._pull_and_push(et)
        except RemoteUnreachable as exc:
            current_app.logger.warning("Lost the remote during %s sync: %s", et.value, exc)
            self._mark_offline(et)
            result = SyncResult(et, success=False, reason=OFFLINE, offline=True)
        except (SyncError, StorageError, SQLAlchemyError) as exc:
            if isinstance(exc, SQLAlchemyError):
                db.session.rollback()
            current_app.logger.exception("Sync of %s failed", et.value)
            result = SyncResult(et, success=False, reason=str(exc))
            self.activity.record("sync.failed", f"{et.value} sync failed: {exc}",
                                 success=False, entity_type=et.value)
        else:
            self.activity.record(
                "sync.completed",
                f"{et.value}: pulled {result.pulled}, pushed {result.pushed}, skipped {result.skipped}",
                success=True,
                entity_type=et.value,
                details=result.to_dict()["stats"],
            )
        return self._finish(result)

    def _pull_and_push(self, et: EntityType) -> SyncResult:
        local_cursor = self.cursors.get(et)
        remote_cursor = self.cursors.get_remote(et)
        result = SyncResult(et, success=False)

        # Pull: remote wins for every row newer than the remote cursor
        pulled_ids = set()
        for row in self.remote.select(et, remote_cursor):
            remote_cursor = max(remote_cursor, _row_updated_at(row) or remote_cursor)
            record_id = self._apply_remote_row(et, row, result)
            if record_id is not None:
                pulled_ids.add(record_id)
                result.pulled += 1

        # Push: local changes since the local cursor, minus what was just pulled
        push_started = utcnow()
        for doc in self.gateway.changed_since(et, local_cursor):
            if doc[ID_KEY] in pulled_ids:
                continue
            pushed_at = utcnow()
            try:
                self.remote.upsert(et, to_remote_row(et, doc, pushed_at=pushed_at))
            except RemoteRecordRejected as exc:
                self._skip(et, doc[ID_KEY], str(exc), result)
                continue
            remote_cursor = max(remote_cursor, pushed_at)
            result.pushed += 1

        self.cursors.set(et, push_started)
        self.cursors.set_remote(et, remote_cursor)
        result.success = True
        return result

    def _apply_remote_row(self, et: EntityType, row: dict, result: SyncResult) -> str | None:
        doc = from_remote_row(et, row)
        record_id = doc.get(ID_KEY)
        if not record_id:
            self._skip(et, None, "remote row has no id", result)
            return None
        try:
            if self.gateway.get(et, record_id) is None:
                self.gateway.create(et, doc, source="sync", apply_side_effects=False)
            else:
                self.gateway.update(et, doc, source="sync")
        except (ValidationError, StorageError) as exc:
            self._skip(et, record_id, str(exc), result)
            return None
        return record_id

    def _skip(self, et: EntityType, record_id: str | None, reason: str, result: SyncResult) -> None:
        result.skipped += 1
        self.activity.record(
            "sync.record_skipped",
            f"Skipped {et.value}/{record_id}: {reason}",
            success=False,
            entity_type=et.value,
            entity_id=record_id,
        )

    def _finish(self, result: SyncResult) -> SyncResult:
        with self._lock:
            self._last_results[result.entity_type] = result
        return result

    def sync_all(self, entity_types: Iterable[EntityType] = SYNC_ORDER) -> dict:
        """
        Sync each type in order; the first offline result stops the run.

        Types skipped after that still get an offline marker so the next
        process_offline_changes() replays them.
        """
        results: dict[str, dict] = {}
        offline = False
        for et in entity_types:
            if offline:
                self._mark_offline(et)
                results[et.value] = self._finish(SyncResult(et, success=False, reason=OFFLINE, offline=True)).to_dict()
                continue
            result = self.sync_entity_type(et)
            results[et.value] = result.to_dict()
            offline = result.offline
        success = all(r["success"] for r in results.values())
        return {"success": success, "offline": offline, "results": results}

    # ------------------------------------------------------------------
    # Offline buffering
    # ------------------------------------------------------------------

    def _mark_offline(self, et: EntityType) -> None:
        with self._lock:
            marker = self._offline.get(et)
            if marker is None:
                self._offline[et] = OfflineChangeMarker(et, utcnow())
            else:
                marker.attempts += 1

    def offline_markers(self) -> list[OfflineChangeMarker]:
        with self._lock:
            return list(self._offline.values())

    def process_offline_changes(self) -> dict:
        """Re-sync every type with an offline marker; markers clear per type on success."""
        with self._lock:
            pending = list(self._offline)
        if not pending:
            return {"success": True, "processed": {}, "remaining": []}
        if not self.remote.is_available():
            return {"success": False, "offline": True, "processed": {},
                    "remaining": [et.value for et in pending]}

        processed = {}
        for et in pending:
            result = self.sync_entity_type(et)
            processed[et.value] = result.to_dict()
            if result.success:
                with self._lock:
                    self._offline.pop(et, None)

        with self._lock:
            remaining = [et.value for et in self._offline]
        return {"success": not remaining, "processed": processed, "remaining": remaining}

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict:
        with self._lock:
            running = sorted(et.value for et in self._running)
            queued = {et.value: len(q) for et, q in self._queues.items() if q}
            markers = [m.to_dict() for m in self._offline.values()]
            last = {et.value: r.to_dict() for et, r in self._last_results.items()}
        return {
            "remote_configured": self.remote.is_configured,
            "remote_url": self.remote.url,
            "cursors": self.cursors.snapshot(),
            "remote_cursors": self.cursors.snapshot(remote=True),
            "running": running,
            "queued": queued,
            "offline_markers": markers,
            "last_results": last,
        }

    def shutdown(self) -> None:
        self.remote.close()
