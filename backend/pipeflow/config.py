# backend/pipeflow/config.py
from __future__ import annotations
import os


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # Entity store: SQLite file next to the instance by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///pipeflow.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Set to false to run on the fallback store only
    ENTITY_STORE_ENABLED = _env_flag("ENTITY_STORE_ENABLED", True)
    # DB-API module that must be importable for the entity store to be usable
    ENTITY_STORE_DRIVER = os.environ.get("ENTITY_STORE_DRIVER", "sqlite3")

    FALLBACK_STORE_PATH = os.environ.get("FALLBACK_STORE_PATH", "pipeflow-store.json")
    STORAGE_AUTO_INITIALIZE = _env_flag("STORAGE_AUTO_INITIALIZE", True)

    # Remote store (PostgREST-compatible endpoint + API key)
    REMOTE_URL = os.environ.get("REMOTE_URL")
    REMOTE_KEY = os.environ.get("REMOTE_KEY")
    REMOTE_HEALTH_TABLE = os.environ.get("REMOTE_HEALTH_TABLE", "health_check")

    SYNC_PROBE_TIMEOUT = float(os.environ.get("SYNC_PROBE_TIMEOUT", "10"))
    SYNC_REQUEST_TIMEOUT = float(os.environ.get("SYNC_REQUEST_TIMEOUT", "30"))
    SYNC_PERSIST_CURSORS = _env_flag("SYNC_PERSIST_CURSORS", True)

    LOW_STOCK_THRESHOLD = int(os.environ.get("LOW_STOCK_THRESHOLD", "10"))
    ACTIVITY_BUFFER_SIZE = int(os.environ.get("ACTIVITY_BUFFER_SIZE", "500"))
