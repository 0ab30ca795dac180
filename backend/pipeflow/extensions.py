# Overview: Flask extension instances and accessors for the per-app storage/sync services.

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from flask import current_app
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

if TYPE_CHECKING:
    from .services.activity_service import ActivityLogger
    from .services.change_feed import ChangeFeed
    from .services.storage_gateway import StorageGateway
    from .services.sync_service import SyncManager

db = SQLAlchemy()
migrate = Migrate()

EXTENSION_KEY = "pipeflow"


@dataclass
class PipeflowServices:
    gateway: "StorageGateway"
    sync: "SyncManager"
    activity: "ActivityLogger"
    change_feed: "ChangeFeed"

    def shutdown(self) -> None:
        self.sync.shutdown()
        self.gateway.shutdown()


def get_services() -> PipeflowServices:
    return current_app.extensions[EXTENSION_KEY]


def get_gateway() -> "StorageGateway":
    return get_services().gateway


def get_sync_manager() -> "SyncManager":
    return get_services().sync
