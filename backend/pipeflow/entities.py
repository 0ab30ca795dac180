# Overview: Entity types persisted by the storage engine and their collection names.

from __future__ import annotations

from enum import Enum


class EntityType(str, Enum):
    INVENTORY = "inventory"
    SALE = "sale"
    REPORT = "report"
    CUSTOMER = "customer"
    SETTING = "setting"

    @property
    def collection(self) -> str:
        """Collection name used by the fallback store and the remote store."""
        return COLLECTIONS[self]


COLLECTIONS = {
    EntityType.INVENTORY: "inventory",
    EntityType.SALE: "sales",
    EntityType.REPORT: "reports",
    EntityType.CUSTOMER: "customers",
    EntityType.SETTING: "settings",
}

# Order used by SyncManager.sync_all()
SYNC_ORDER = (EntityType.INVENTORY, EntityType.SALE, EntityType.CUSTOMER)

# Document keys owned by the storage engine, never part of the payload
ID_KEY = "id"
CREATED_AT_KEY = "createdAt"
UPDATED_AT_KEY = "updatedAt"
RESERVED_KEYS = frozenset({ID_KEY, CREATED_AT_KEY, UPDATED_AT_KEY})
