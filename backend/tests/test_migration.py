# Overview: Pytest coverage for the one-time fallback -> entity store migration.

"""
Migration Tests

Covers:
- fallback contents land in the entity store and the fallback is cleared
- the completion flag makes later runs no-ops (zero writes)
- a failure before the flag is written is resumed on the next start
  without duplicating records
- malformed fallback records are skipped and reported
"""

import pytest

from pipeflow.entities import EntityType
from pipeflow.errors import StorageError
from pipeflow.extensions import get_gateway, get_services
from pipeflow.services.entity_store import EntityStore
from pipeflow.services.migration_service import (
    MIGRATION_FLAG_KEY,
    MigrationService,
    MigrationState,
)
from pipeflow.services.storage_gateway import StorageMode


class TestMigrationOnStartup:
    def test_fallback_record_moves_to_entity_store(self, app_factory, fallback_file):
        fallback_file({"inventory": [{"id": "p1", "quantity": 5}]})

        app = app_factory()
        with app.app_context():
            gateway = get_gateway()
            assert gateway.mode == StorageMode.PRIMARY

            assert gateway.entity_store.get(EntityType.INVENTORY, "p1")["quantity"] == 5
            assert gateway.get("inventory", "p1")["quantity"] == 5
            assert gateway.fallback_store.list(EntityType.INVENTORY) == []
            assert gateway.migration.is_completed()
            assert gateway.migration.state == MigrationState.COMPLETED

            report = gateway.migration.last_report
            assert report.migrated == 1
            assert report.per_type["inventory"] == 1
            assert report.fallback_cleared is True

    def test_created_at_is_preserved(self, app_factory, fallback_file):
        fallback_file({"customers": [{"id": "c1", "name": "Baraka", "createdAt": "2025-06-01T08:00:00Z"}]})

        app = app_factory()
        with app.app_context():
            record = get_gateway().get("customer", "c1")
            assert record["createdAt"] == "2025-06-01T08:00:00.000000Z"

    def test_data_written_in_fallback_mode_survives_switch(self, app_factory):
        fallback_app = app_factory(ENTITY_STORE_ENABLED=False)
        with fallback_app.app_context():
            get_gateway().create("sale", {"id": "s1", "total": 900, "items": []})
            get_gateway().create("customer", {"id": "c1", "name": "Zawadi"})

        primary_app = app_factory()
        with primary_app.app_context():
            gateway = get_gateway()
            assert gateway.mode == StorageMode.PRIMARY
            assert gateway.entity_store.get(EntityType.SALE, "s1")["total"] == 900
            assert gateway.entity_store.get(EntityType.CUSTOMER, "c1")["name"] == "Zawadi"
            assert gateway.fallback_store.is_empty()

    def test_second_start_performs_no_writes(self, app_factory, fallback_file):
        fallback_file({"inventory": [{"id": "p1", "quantity": 5}]})
        first = app_factory()
        with first.app_context():
            before = get_gateway().get("inventory", "p1")

        # Anything left in the fallback after completion is not re-migrated
        fallback_file({"inventory": [{"id": "p-late", "quantity": 1}]})

        second = app_factory()
        with second.app_context():
            gateway = get_gateway()
            report = gateway.migration.last_report
            assert report.already_completed is True
            assert report.writes == 0
            assert gateway.entity_store.get(EntityType.INVENTORY, "p1") == before
            assert gateway.entity_store.get(EntityType.INVENTORY, "p-late") is None


class FlakyFlagStore(EntityStore):
    """Entity store whose first flag write fails, as if the process died there."""

    def __init__(self):
        self.flag_failures = 1

    def set_meta(self, key, value):
        if key == MIGRATION_FLAG_KEY and self.flag_failures:
            self.flag_failures -= 1
            raise StorageError("disk full")
        super().set_meta(key, value)


class TestMigrationService:
    @pytest.fixture
    def service(self, gateway):
        store = FlakyFlagStore()
        return MigrationService(store, gateway.fallback_store, get_services().activity)

    def _seed_fallback(self, gateway):
        gateway.fallback_store.put(EntityType.INVENTORY, {"id": "p1", "quantity": 5})
        gateway.fallback_store.put(EntityType.SALE, {"id": "s1", "items": []})

    def test_flag_failure_leaves_fallback_intact_and_resumes(self, gateway, service):
        # The app already completed a (empty) migration; start over for this scenario
        gateway.entity_store.set_meta(MIGRATION_FLAG_KEY, None)
        self._seed_fallback(gateway)

        with pytest.raises(StorageError):
            service.ensure_migrated()

        assert service.state == MigrationState.NOT_STARTED
        assert not service.is_completed()
        assert gateway.fallback_store.get(EntityType.INVENTORY, "p1") is not None
        assert gateway.entity_store.get(EntityType.INVENTORY, "p1") is not None

        report = service.ensure_migrated()

        assert report.migrated == 0
        assert report.already_present == 2
        assert service.is_completed()
        assert gateway.fallback_store.is_empty()
        assert gateway.entity_store.count(EntityType.INVENTORY) == 1

    def test_running_twice_is_idempotent(self, gateway, service):
        gateway.entity_store.set_meta(MIGRATION_FLAG_KEY, None)
        service.entity_store.flag_failures = 0
        self._seed_fallback(gateway)

        first = service.ensure_migrated()
        contents = gateway.entity_store.list(EntityType.INVENTORY)
        second = service.ensure_migrated()

        assert first.migrated == 2
        assert second.already_completed is True
        assert second.writes == 0
        assert gateway.entity_store.list(EntityType.INVENTORY) == contents

    def test_bad_records_are_skipped_and_reported(self, gateway, service):
        gateway.entity_store.set_meta(MIGRATION_FLAG_KEY, None)
        service.entity_store.flag_failures = 0
        gateway.fallback_store.put(EntityType.INVENTORY, {"id": "ok", "quantity": 1})
        gateway.fallback_store.put(EntityType.INVENTORY, {"id": "bad", "createdAt": "not-a-date"})
        gateway.fallback_store.put(EntityType.INVENTORY, {"id": "  "})

        report = service.ensure_migrated()

        assert report.migrated == 1
        assert report.partial is True
        reasons = {s["id"]: s["reason"] for s in report.skipped}
        assert set(reasons) == {"bad", None}
        assert service.is_completed()
        assert gateway.entity_store.get(EntityType.INVENTORY, "bad") is None
        assert gateway.fallback_store.is_empty()

    def test_empty_fallback_sets_flag_without_writes(self, gateway, service):
        gateway.entity_store.set_meta(MIGRATION_FLAG_KEY, None)
        service.entity_store.flag_failures = 0

        report = service.ensure_migrated()

        assert report.migrated == 0
        assert report.skipped == []
        assert service.is_completed()
