# Overview: Error taxonomy for the storage and sync layers.

from __future__ import annotations


class StorageError(Exception):
    """Base class for local storage failures."""


class BackendUnavailable(StorageError):
    """The entity store cannot be loaded or constructed; triggers fallback mode."""


class NotFoundError(StorageError):
    """Update/delete addressed an id that does not exist."""

    def __init__(self, entity_type: str, record_id: str):
        super().__init__(f"{entity_type} record {record_id!r} not found")
        self.entity_type = entity_type
        self.record_id = record_id


class RecordConflictError(StorageError):
    """Create addressed an id that already exists."""

    def __init__(self, entity_type: str, record_id: str):
        super().__init__(f"{entity_type} record {record_id!r} already exists")
        self.entity_type = entity_type
        self.record_id = record_id


class MigrationRecordError(StorageError):
    """A single record could not be copied during migration (logged and skipped)."""

    def __init__(self, entity_type: str, record_id: str | None, reason: str):
        super().__init__(f"cannot migrate {entity_type} record {record_id!r}: {reason}")
        self.entity_type = entity_type
        self.record_id = record_id
        self.reason = reason


class SyncError(Exception):
    """Base class for remote synchronisation failures."""


class RemoteUnreachable(SyncError):
    """The remote store could not be reached (transport failure, timeout, not configured)."""


class RemoteApiError(SyncError):
    """The remote store answered with an error."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteRecordRejected(RemoteApiError):
    """The remote store rejected one record (4xx); the rest of the batch continues."""
