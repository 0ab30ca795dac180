# Overview: HTTP client for the shared remote store (PostgREST-style table API).

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from flask import current_app

from ..entities import EntityType
from ..errors import RemoteApiError, RemoteRecordRejected, RemoteUnreachable
from ..time_utils import to_utc_z

# Status codes that condemn the whole batch rather than one record
_BATCH_FATAL_CODES = {401, 403, 404, 408, 429}


class RemoteStore:
    """
    Thin wrapper over the remote table API.

    Tables are named after the entity collections (inventory, sales, ...),
    rows are keyed by ``id`` and carry an ``updated_at`` column.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        key: Optional[str] = None,
        *,
        health_table: str = "health_check",
        probe_timeout: float = 10.0,
        request_timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.health_table = health_table
        self.probe_timeout = probe_timeout
        self.request_timeout = request_timeout
        self._transport = transport
        self._lock = threading.Lock()
        self.url: Optional[str] = None
        self.key: Optional[str] = None
        self.client: Optional[httpx.Client] = None
        if url and key:
            self.configure(url, key)

    def configure(self, url: str, key: str) -> None:
        client = httpx.Client(timeout=self.request_timeout, transport=self._transport)
        with self._lock:
            previous = self.client
            self.url = url.rstrip("/")
            self.key = key
            self.client = client
        if previous is not None:
            previous.close()

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.key and self.client is not None)

    def _headers(self, extra: Optional[Dict] = None) -> Dict:
        headers = {
            "Content-Type": "application/json",
            "apikey": self.key or "",
            "Authorization": f"Bearer {self.key}",
        }
        if extra:
            headers.update(extra)
        return headers

    def _table_url(self, table: str) -> str:
        return f"{self.url}/rest/v1/{table}"

    def _require_client(self) -> httpx.Client:
        if not self.is_configured:
            raise RemoteUnreachable("remote store is not configured")
        return self.client

    def is_available(self) -> bool:
        """Liveness probe. Unconfigured means unavailable, without any network I/O."""
        if not self.is_configured:
            return False
        try:
            response = self.client.get(
                self._table_url(self.health_table),
                headers=self._headers(),
                params={"select": "*", "limit": 1},
                timeout=self.probe_timeout,
            )
        except httpx.HTTPError as exc:
            current_app.logger.warning("Remote probe failed: %s", exc)
            return False
        if response.status_code >= 400:
            current_app.logger.warning("Remote probe returned HTTP %s", response.status_code)
            return False
        return True

    def select(self, entity_type: EntityType, updated_after: datetime) -> List[Dict[str, Any]]:
        """Rows of one table with updated_at > updated_after, oldest first."""
        client = self._require_client()
        try:
            response = client.get(
                self._table_url(entity_type.collection),
                headers=self._headers(),
                params={
                    "select": "*",
                    "updated_at": f"gt.{to_utc_z(updated_after)}",
                    "order": "updated_at.asc",
                },
            )
        except httpx.TransportError as exc:
            raise RemoteUnreachable(f"pull {entity_type.collection}: {exc}") from exc

        if response.status_code >= 400:
            raise RemoteApiError(
                f"pull {entity_type.collection} failed: HTTP {response.status_code} {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            rows = response.json()
        except ValueError as exc:
            raise RemoteApiError(f"pull {entity_type.collection}: response is not JSON") from exc
        if not isinstance(rows, list):
            raise RemoteApiError(f"pull {entity_type.collection}: expected a list of rows")
        return [row for row in rows if isinstance(row, dict)]

    def upsert(self, entity_type: EntityType, row: Dict[str, Any]) -> None:
        """Insert or merge one row by id."""
        client = self._require_client()
        try:
            response = client.post(
                self._table_url(entity_type.collection),
                headers=self._headers({"Prefer": "resolution=merge-duplicates,return=minimal"}),
                params={"on_conflict": "id"},
                json=[row],
            )
        except httpx.TransportError as exc:
            raise RemoteUnreachable(f"push {entity_type.collection}: {exc}") from exc

        code = response.status_code
        if code < 400:
            return
        message = f"push {entity_type.collection}/{row.get('id')} failed: HTTP {code} {response.text[:200]}"
        if code < 500 and code not in _BATCH_FATAL_CODES:
            raise RemoteRecordRejected(message, status_code=code)
        raise RemoteApiError(message, status_code=code)

    def close(self):
        with self._lock:
            client, self.client = self.client, None
        if client is not None:
            client.close()
