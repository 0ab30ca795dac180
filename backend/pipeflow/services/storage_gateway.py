# Overview: Storage gateway; single CRUD surface over the entity store and the fallback store.

from __future__ import annotations

import importlib
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Protocol

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..entities import EntityType, ID_KEY, CREATED_AT_KEY
from ..errors import BackendUnavailable, NotFoundError, RecordConflictError, StorageError
from ..extensions import db
from ..time_utils import EPOCH, coerce_datetime, to_utc_z, utcnow
from ..validation import ValidationError, parse_amount, parse_entity_type, validate_payload, validate_record_id
from .activity_service import ActivityLogger
from .change_feed import CREATED, DELETED, UPDATED, ChangeEvent, ChangeFeed
from .conversions import split_document, strip_reserved
from .defaults import default_setting_records
from .entity_store import EntityStore
from .fallback_store import FallbackStore
from .migration_service import MigrationService
"""
Storage Gateway Invariants (authoritative)

- Backend selection happens once, in initialize(); every call afterwards goes
  to the selected backend (primary = entity store, fallback = JSON store).
- A record id is unique per entity type across both backends: create checks
  both, list() never returns the same id twice, delete removes it from both.
- updatedAt is written here on every mutation and never taken from callers.
  It never moves backwards for a record: max(now, previous updatedAt).
- Only NotFoundError / RecordConflictError / ValidationError reach callers of
  the CRUD methods (plus StorageError before initialize()). Side-effect and
  reconciliation failures are recovered locally and logged.
"""


class StorageMode(str, Enum):
    UNINITIALIZED = "uninitialized"
    PRIMARY = "primary"
    FALLBACK = "fallback"


class RecordBackend(Protocol):
    """Operations both backends provide; the gateway talks to the active one through this."""

    def list(self, entity_type: EntityType) -> list[dict[str, Any]]: ...

    def get(self, entity_type: EntityType, record_id: str) -> dict[str, Any] | None: ...

    def changed_since(self, entity_type: EntityType, since: datetime) -> list[dict[str, Any]]: ...

    def insert(self, entity_type: EntityType, record_id: str, payload: dict[str, Any], *,
               created_at: datetime, updated_at: datetime) -> dict[str, Any]: ...

    def save(self, entity_type: EntityType, record_id: str, payload: dict[str, Any], *,
             created_at: datetime, updated_at: datetime) -> dict[str, Any]: ...

    def delete(self, entity_type: EntityType, record_id: str) -> bool: ...

    def count(self, entity_type: EntityType) -> int: ...

    def get_meta(self, key: str, default: Any = None) -> Any: ...

    def set_meta(self, key: str, value: Any) -> None: ...


def _to_int(value: Any) -> int:
    """Lenient integer parse for quantities coming from UI payloads (bad input -> 0)."""
    if isinstance(value, bool) or value is None:
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class StorageGateway:
    def __init__(
        self,
        fallback_store: FallbackStore,
        *,
        activity: ActivityLogger,
        change_feed: ChangeFeed,
        entity_store_factory: Callable[[], EntityStore] = EntityStore,
        low_stock_threshold: int = 10,
    ):
        self.fallback_store = fallback_store
        self.activity = activity
        self.change_feed = change_feed
        self.low_stock_threshold = low_stock_threshold
        self._entity_store_factory = entity_store_factory

        self.mode = StorageMode.UNINITIALIZED
        self.ready = False
        self.fallback_reason: str | None = None
        self.entity_store: EntityStore | None = None
        self.migration: MigrationService | None = None
        self._backend: RecordBackend | None = None

        # Serializes read-modify-write sequences (merge updates, stock decrements)
        self._write_lock = threading.RLock()

        self._repair_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pipeflow-repair")
        self._repair_lock = threading.Lock()
        self._repair_futures: list[Future] = []
        self._repairs_pending: set[tuple[EntityType, str]] = set()

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def initialize(self) -> bool:
        """
        Select the backend, migrate fallback data once, seed defaults.

        Never raises; returns whether storage is ready for use.
        """
        try:
            store = self._probe_entity_store()
        except BackendUnavailable as exc:
            return self._initialize_fallback(str(exc))

        self.entity_store = store
        self._backend = store
        self.mode = StorageMode.PRIMARY
        self.fallback_reason = None
        self.migration = MigrationService(store, self.fallback_store, self.activity)

        try:
            self.migration.ensure_migrated()
        except (SQLAlchemyError, StorageError, OSError):
            db.session.rollback()
            current_app.logger.exception("Migration from the fallback store failed; it will be retried on next start")

        self._seed_defaults()
        self.ready = True
        self.activity.record("storage.initialized", "Using the entity store")
        return True

    def _probe_entity_store(self) -> EntityStore:
        if not current_app.config.get("ENTITY_STORE_ENABLED", True):
            raise BackendUnavailable("entity store disabled by configuration")
        driver = current_app.config.get("ENTITY_STORE_DRIVER")
        try:
            if driver:
                importlib.import_module(driver)
            store = self._entity_store_factory()
            store.ensure_schema()
        except (ImportError, SQLAlchemyError, OSError, RuntimeError) as exc:
            raise BackendUnavailable(f"{exc.__class__.__name__}: {exc}") from exc
        return store

    def _initialize_fallback(self, reason: str) -> bool:
        self.mode = StorageMode.FALLBACK
        self.fallback_reason = reason
        self.entity_store = None
        self.migration = None
        self._backend = self.fallback_store
        current_app.logger.warning("Entity store unavailable (%s); using the fallback store", reason)

        try:
            self.fallback_store.ensure_collections()
        except (StorageError, OSError):
            current_app.logger.exception("Fallback store could not be prepared")
            self.ready = False
            return False

        self._seed_defaults()
        self.ready = True
        self.activity.record("storage.fallback", f"Using the fallback store: {reason}", details={"reason": reason})
        return True

    def _seed_defaults(self) -> None:
        try:
            self.ensure_defaults_seeded()
        except (SQLAlchemyError, StorageError, OSError):
            if self.mode == StorageMode.PRIMARY:
                db.session.rollback()
            current_app.logger.exception("Seeding default records failed")

    def ensure_defaults_seeded(self) -> int:
        """Create default settings and product taxonomy records that are missing."""
        created = 0
        for record_id, payload in default_setting_records().items():
            if self.get(EntityType.SETTING, record_id) is not None:
                continue
            self.create(EntityType.SETTING, {ID_KEY: record_id, **payload}, source="seed")
            created += 1
        return created

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list(self, entity_type: EntityType | str) -> list[dict[str, Any]]:
        et = parse_entity_type(entity_type)
        backend = self._active()
        if self.mode == StorageMode.FALLBACK:
            return backend.list(et)

        records = backend.list(et)
        known = {r[ID_KEY] for r in records}
        missing = [d for d in self._fallback_docs(et) if str(d.get(ID_KEY)) not in known]
        if missing:
            current_app.logger.info(
                "Found %d %s records only in the fallback store; repairing in background", len(missing), et.value
            )
            for doc in missing:
                doc[ID_KEY] = str(doc[ID_KEY])
            records.extend(missing)
            self._schedule_repair(et, missing)
        return records

    def get(self, entity_type: EntityType | str, record_id: Any) -> dict[str, Any] | None:
        et = parse_entity_type(entity_type)
        rid = validate_record_id(record_id)
        doc, _ = self._locate(et, rid)
        return doc

    def changed_since(self, entity_type: EntityType | str, since: datetime | str | None) -> list[dict[str, Any]]:
        """Records with updatedAt > since, oldest first."""
        et = parse_entity_type(entity_type)
        try:
            since_dt = coerce_datetime(since) or EPOCH
        except ValueError as exc:
            raise ValidationError(f"invalid timestamp: {since}") from exc
        backend = self._active()
        changes = backend.changed_since(et, since_dt)
        if self.mode == StorageMode.PRIMARY:
            known = self.entity_store.ids(et)
            pending = [d for d in self._fallback_changed_since(et, since_dt) if str(d.get(ID_KEY)) not in known]
            if pending:
                changes = sorted(
                    changes + pending,
                    key=lambda d: (coerce_datetime(d.get("updatedAt")) or EPOCH, str(d.get(ID_KEY))),
                )
        return changes

    def low_stock(self, threshold: int | None = None) -> list[dict[str, Any]]:
        """Inventory records at or below their alert threshold."""
        default = self.low_stock_threshold if threshold is None else threshold
        low = []
        for item in self.list(EntityType.INVENTORY):
            quantity = _to_number(item.get("quantity"))
            if quantity is None:
                continue
            limit = _to_number(item.get("alertThreshold"))
            if limit is None:
                limit = default
            if quantity <= limit:
                low.append(item)
        return low

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        entity_type: EntityType | str,
        payload: dict[str, Any],
        *,
        source: str = "local",
        apply_side_effects: bool = True,
    ) -> dict[str, Any]:
        """
        Store a new record and return it.

        createdAt is kept when the caller supplies one; updatedAt is always now.
        Creating a sale decrements stock for its items; that side effect may
        fail without failing the sale.
        """
        et = parse_entity_type(entity_type)
        doc = validate_payload(payload)
        record_id = doc.get(ID_KEY) or uuid.uuid4().hex
        now = utcnow()
        try:
            created_at = coerce_datetime(doc.get(CREATED_AT_KEY)) or now
        except ValueError as exc:
            raise ValidationError(f"invalid createdAt: {doc.get(CREATED_AT_KEY)}") from exc

        with self._write_lock:
            backend = self._active()
            existing, _ = self._locate(et, record_id)
            if existing is not None:
                raise RecordConflictError(et.value, record_id)
            stored = backend.insert(et, record_id, strip_reserved(doc), created_at=created_at, updated_at=now)

        self._publish(CREATED, et, stored, source)
        if et == EntityType.SALE and apply_side_effects:
            self._apply_sale_side_effects(stored)
        return stored

    def update(self, entity_type: EntityType | str, record: dict[str, Any], *, source: str = "local") -> dict[str, Any]:
        """Shallow-merge fields over the stored record. NotFoundError if it does not exist."""
        et = parse_entity_type(entity_type)
        doc = validate_payload(record, require_id=True)

        with self._write_lock:
            stored = self._merge(et, doc)

        self._publish(UPDATED, et, stored, source)
        return stored

    def _merge(self, et: EntityType, doc: dict[str, Any]) -> dict[str, Any]:
        """Merge and save; caller holds _write_lock and publishes afterwards."""
        record_id = doc[ID_KEY]
        backend = self._active()
        existing, found_in = self._locate(et, record_id)
        if existing is None:
            raise NotFoundError(et.value, record_id)
        _, current, created_at, previous_updated = split_document(existing)
        merged = {**current, **strip_reserved(doc)}
        now = utcnow()
        updated_at = max(now, previous_updated) if previous_updated else now
        stored = backend.save(et, record_id, merged, created_at=created_at or now, updated_at=updated_at)
        if found_in is StorageMode.FALLBACK and self.mode == StorageMode.PRIMARY:
            # now owned by the entity store
            self.fallback_store.delete(et, record_id)
        return stored

    def delete(self, entity_type: EntityType | str, record_id: Any, *, source: str = "local") -> dict[str, Any]:
        """Hard delete (no tombstone; deletions are not synced). Returns the removed record."""
        et = parse_entity_type(entity_type)
        rid = validate_record_id(record_id)

        with self._write_lock:
            backend = self._active()
            existing, _ = self._locate(et, rid)
            if existing is None:
                raise NotFoundError(et.value, rid)
            backend.delete(et, rid)
            if self.mode == StorageMode.PRIMARY:
                self._discard_fallback_copy(et, rid)

        self.change_feed.publish(ChangeEvent(action=DELETED, entity_type=et, record_id=rid, record=existing, source=source))
        return existing

    def record_customer_purchase(self, customer_id: Any, amount: Any) -> dict[str, Any]:
        """Add a purchase to a customer's running totals."""
        rid = validate_record_id(customer_id)
        value = parse_amount(amount)
        with self._write_lock:
            customer = self.get(EntityType.CUSTOMER, rid)
            if customer is None:
                raise NotFoundError(EntityType.CUSTOMER.value, rid)
            stored = self._merge(EntityType.CUSTOMER, {
                ID_KEY: rid,
                "totalPurchases": (_to_number(customer.get("totalPurchases")) or 0) + value,
                "purchaseCount": _to_int(customer.get("purchaseCount")) + 1,
                "lastPurchaseDate": to_utc_z(utcnow()),
            })
        self._publish(UPDATED, EntityType.CUSTOMER, stored, "local")
        return stored

    # ------------------------------------------------------------------
    # Sale side effects
    # ------------------------------------------------------------------

    def _apply_sale_side_effects(self, sale: dict[str, Any]) -> None:
        sale_id = sale.get(ID_KEY)
        try:
            self._decrement_stock(sale.get("items"))
        except (StorageError, SQLAlchemyError, OSError, ValueError) as exc:
            if self.mode == StorageMode.PRIMARY:
                db.session.rollback()
            current_app.logger.exception("Stock decrement failed for sale %s", sale_id)
            self.activity.record(
                "sale.stock_decrement_failed",
                f"Sale {sale_id} stored but stock was not decremented: {exc}",
                success=False,
                entity_type=EntityType.SALE.value,
                entity_id=sale_id,
            )

        customer_id = sale.get("customerId")
        if customer_id in (None, ""):
            return
        try:
            self.record_customer_purchase(customer_id, self._sale_total(sale))
        except (NotFoundError, ValidationError):
            current_app.logger.warning("Sale %s references unknown customer %s", sale_id, customer_id)
        except (StorageError, SQLAlchemyError, OSError):
            if self.mode == StorageMode.PRIMARY:
                db.session.rollback()
            current_app.logger.exception("Purchase stats update failed for customer %s", customer_id)

    def _decrement_stock(self, items: Any) -> int:
        if not isinstance(items, list) or not items:
            return 0
        updated = 0
        for item in items:
            if not isinstance(item, dict):
                continue
            item_id = item.get("id") or item.get("itemId") or item.get("productId")
            if item_id in (None, ""):
                continue
            sold = _to_int(item.get("quantity"))
            with self._write_lock:
                stock = self.get(EntityType.INVENTORY, item_id)
                if stock is None:
                    continue
                remaining = max(0, _to_int(stock.get("quantity")) - sold)
                stored = self._merge(EntityType.INVENTORY, {ID_KEY: stock[ID_KEY], "quantity": remaining})
            self._publish(UPDATED, EntityType.INVENTORY, stored, "local")
            updated += 1
        return updated

    @staticmethod
    def _sale_total(sale: dict[str, Any]) -> float:
        for key in ("total", "totalAmount", "grandTotal"):
            value = _to_number(sale.get(key))
            if value is not None:
                return value
        total = 0.0
        for item in sale.get("items") or []:
            if isinstance(item, dict):
                total += (_to_number(item.get("price")) or 0) * _to_int(item.get("quantity"))
        return total

    # ------------------------------------------------------------------
    # Fallback reconciliation
    # ------------------------------------------------------------------

    def _fallback_docs(self, entity_type: EntityType) -> list[dict[str, Any]]:
        try:
            return [d for d in self.fallback_store.list(entity_type) if d.get(ID_KEY) is not None]
        except StorageError:
            current_app.logger.exception("Fallback store unreadable; skipping reconciliation")
            return []

    def _fallback_changed_since(self, entity_type: EntityType, since: datetime) -> list[dict[str, Any]]:
        try:
            return self.fallback_store.changed_since(entity_type, since)
        except StorageError:
            current_app.logger.exception("Fallback store unreadable; skipping reconciliation")
            return []

    def _discard_fallback_copy(self, entity_type: EntityType, record_id: str) -> bool:
        try:
            return self.fallback_store.delete(entity_type, record_id)
        except StorageError:
            current_app.logger.exception("Could not remove %s/%s from the fallback store", entity_type.value, record_id)
            return False

    def _schedule_repair(self, entity_type: EntityType, docs: list[dict[str, Any]]) -> None:
        with self._repair_lock:
            todo = []
            for doc in docs:
                key = (entity_type, doc[ID_KEY])
                if key not in self._repairs_pending:
                    self._repairs_pending.add(key)
                    todo.append(dict(doc))
            if not todo:
                return
            app = current_app._get_current_object()

            def _job():
                with app.app_context():
                    return self._repair(entity_type, todo)

            self._repair_futures = [f for f in self._repair_futures if not f.done()]
            self._repair_futures.append(self._repair_executor.submit(_job))

    def _repair(self, entity_type: EntityType, docs: list[dict[str, Any]]) -> int:
        """
        Move fallback-only records into the entity store.

        Insert-if-absent: a concurrent create/update of the same id that
        lands first is kept. The fallback copy is dropped either way.
        """
        healed = 0
        for doc in docs:
            record_id = doc[ID_KEY]
            try:
                _, payload, created_at, updated_at = split_document(doc)
                now = utcnow()
                if self.entity_store.insert_if_absent(
                    entity_type, record_id, payload,
                    created_at=created_at or now,
                    updated_at=updated_at or now,
                ):
                    healed += 1
                self.fallback_store.delete(entity_type, record_id)
            except (SQLAlchemyError, StorageError, OSError, ValueError):
                db.session.rollback()
                current_app.logger.exception("Repair of %s/%s failed", entity_type.value, record_id)
            finally:
                with self._repair_lock:
                    self._repairs_pending.discard((entity_type, record_id))
        if healed:
            self.activity.record(
                "storage.repair",
                f"Moved {healed} {entity_type.value} records from the fallback store",
                entity_type=entity_type.value,
            )
        return healed

    def wait_for_repairs(self, timeout: float | None = None) -> None:
        """Block until background repairs scheduled so far have finished."""
        with self._repair_lock:
            futures = list(self._repair_futures)
        wait(futures, timeout=timeout)

    # ------------------------------------------------------------------
    # Storage state
    # ------------------------------------------------------------------

    def read_meta(self, key: str, default: Any = None) -> Any:
        return self._active().get_meta(key, default)

    def write_meta(self, key: str, value: Any) -> None:
        self._active().set_meta(key, value)

    def status(self) -> dict[str, Any]:
        counts = {}
        if self._backend is not None:
            for et in EntityType:
                counts[et.value] = self._backend.count(et)
        migration = None
        if self.migration is not None:
            migration = {
                "state": self.migration.state.value,
                "report": self.migration.last_report.to_dict() if self.migration.last_report else None,
            }
        with self._repair_lock:
            pending = len(self._repairs_pending)
        return {
            "mode": self.mode.value,
            "ready": self.ready,
            "fallback_reason": self.fallback_reason,
            "migration": migration,
            "counts": counts,
            "pending_repairs": pending,
            "subscribers": self.change_feed.subscriber_count,
        }

    def shutdown(self) -> None:
        self._repair_executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _active(self) -> RecordBackend:
        if self._backend is None:
            raise StorageError("storage gateway has not been initialized")
        return self._backend

    def _locate(self, entity_type: EntityType, record_id: str) -> tuple[dict[str, Any] | None, StorageMode | None]:
        backend = self._active()
        doc = backend.get(entity_type, record_id)
        if doc is not None:
            return doc, self.mode
        if self.mode == StorageMode.PRIMARY:
            try:
                doc = self.fallback_store.get(entity_type, record_id)
            except StorageError:
                current_app.logger.exception("Fallback store unreadable")
                doc = None
            if doc is not None:
                doc[ID_KEY] = str(doc[ID_KEY])
                return doc, StorageMode.FALLBACK
        return None, None

    def _publish(self, action: str, entity_type: EntityType, record: dict[str, Any], source: str) -> None:
        self.change_feed.publish(ChangeEvent(
            action=action,
            entity_type=entity_type,
            record_id=record[ID_KEY],
            record=record,
            source=source,
        ))
