# Overview: Fallback backend; one JSON document holding a collection per entity type.

from __future__ import annotations

import json
import os
import threading
from datetime import datetime
from typing import Any

from ..entities import COLLECTIONS, EntityType, ID_KEY
from ..errors import RecordConflictError, StorageError
from .conversions import build_document, document_updated_at

META_KEY = "_meta"


class FallbackStore:
    """
    Key-to-document store persisted as a single JSON file.

    Layout::

        {"inventory": [...], "sales": [...], "reports": [...],
         "customers": [...], "settings": [...], "_meta": {...}}

    Queries are linear scans. Writes go to a temp file that replaces the
    original, so a crash leaves either the old or the new file on disk.
    """

    def __init__(self, file_path: str):
        self.file_path = file_path
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # File access
    # ------------------------------------------------------------------

    def _empty_data(self) -> dict[str, Any]:
        return {name: [] for name in COLLECTIONS.values()}

    def _read_raw(self) -> dict[str, Any]:
        with self._lock:
            try:
                with open(self.file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except FileNotFoundError:
                return self._empty_data()
            except json.JSONDecodeError as exc:
                raise StorageError(f"fallback store {self.file_path} is not valid JSON: {exc}") from exc
            if not isinstance(data, dict):
                raise StorageError(f"fallback store {self.file_path} has an unexpected layout")
            return data

    def _write_raw(self, data: dict[str, Any]) -> None:
        with self._lock:
            directory = os.path.dirname(os.path.abspath(self.file_path))
            os.makedirs(directory, exist_ok=True)
            temp_path = self.file_path + ".tmp"
            try:
                with open(temp_path, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2, ensure_ascii=False)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_path, self.file_path)
            except Exception:
                if os.path.exists(temp_path):
                    os.remove(temp_path)
                raise

    def _collection(self, data: dict[str, Any], entity_type: EntityType) -> list[dict[str, Any]]:
        docs = data.get(entity_type.collection)
        if not isinstance(docs, list):
            docs = []
            data[entity_type.collection] = docs
        return docs

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    def ensure_collections(self) -> bool:
        """Create any missing collection. Returns True when the file was written."""
        with self._lock:
            exists = os.path.exists(self.file_path)
            data = self._read_raw()
            missing = [name for name in COLLECTIONS.values() if not isinstance(data.get(name), list)]
            if exists and not missing:
                return False
            for name in missing:
                data[name] = []
            self._write_raw(data)
            return True

    def list(self, entity_type: EntityType) -> list[dict[str, Any]]:
        data = self._read_raw()
        return [dict(doc) for doc in self._collection(data, entity_type) if isinstance(doc, dict)]

    def get(self, entity_type: EntityType, record_id: str) -> dict[str, Any] | None:
        for doc in self.list(entity_type):
            if str(doc.get(ID_KEY)) == record_id:
                return doc
        return None

    def ids(self, entity_type: EntityType) -> set[str]:
        return {str(doc.get(ID_KEY)) for doc in self.list(entity_type) if doc.get(ID_KEY) is not None}

    def changed_since(self, entity_type: EntityType, since: datetime) -> list[dict[str, Any]]:
        changed = []
        for doc in self.list(entity_type):
            updated_at = document_updated_at(doc)
            if updated_at is not None and updated_at > since:
                changed.append((updated_at, str(doc.get(ID_KEY)), doc))
        changed.sort(key=lambda entry: (entry[0], entry[1]))
        return [doc for _, _, doc in changed]

    def put(self, entity_type: EntityType, doc: dict[str, Any]) -> dict[str, Any]:
        """Replace the document with the same id, or append it."""
        record_id = str(doc[ID_KEY])
        with self._lock:
            data = self._read_raw()
            docs = self._collection(data, entity_type)
            for index, existing in enumerate(docs):
                if isinstance(existing, dict) and str(existing.get(ID_KEY)) == record_id:
                    docs[index] = dict(doc)
                    break
            else:
                docs.append(dict(doc))
            self._write_raw(data)
        return dict(doc)

    def insert(
        self,
        entity_type: EntityType,
        record_id: str,
        payload: dict[str, Any],
        *,
        created_at: datetime,
        updated_at: datetime,
    ) -> dict[str, Any]:
        with self._lock:
            if self.get(entity_type, record_id) is not None:
                raise RecordConflictError(entity_type.value, record_id)
            return self.put(entity_type, build_document(record_id, payload, created_at, updated_at))

    def save(
        self,
        entity_type: EntityType,
        record_id: str,
        payload: dict[str, Any],
        *,
        created_at: datetime,
        updated_at: datetime,
    ) -> dict[str, Any]:
        return self.put(entity_type, build_document(record_id, payload, created_at, updated_at))

    def delete(self, entity_type: EntityType, record_id: str) -> bool:
        with self._lock:
            data = self._read_raw()
            docs = self._collection(data, entity_type)
            kept = [d for d in docs if not (isinstance(d, dict) and str(d.get(ID_KEY)) == record_id)]
            if len(kept) == len(docs):
                return False
            data[entity_type.collection] = kept
            self._write_raw(data)
            return True

    def count(self, entity_type: EntityType) -> int:
        return len(self.list(entity_type))

    def is_empty(self) -> bool:
        return all(self.count(et) == 0 for et in EntityType)

    def clear_all(self) -> None:
        """Empty every collection (hard delete). Storage state in _meta is kept."""
        with self._lock:
            data = self._read_raw()
            for name in COLLECTIONS.values():
                data[name] = []
            self._write_raw(data)

    # ------------------------------------------------------------------
    # Storage state
    # ------------------------------------------------------------------

    def get_meta(self, key: str, default: Any = None) -> Any:
        meta = self._read_raw().get(META_KEY) or {}
        return meta.get(key, default)

    def set_meta(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read_raw()
            meta = data.get(META_KEY)
            if not isinstance(meta, dict):
                meta = {}
            meta[key] = value
            data[META_KEY] = meta
            self._write_raw(data)
