# Overview: Shared data-conversion helpers between stored documents, entity rows and remote rows.

from __future__ import annotations

from datetime import datetime
from typing import Any

from ..entities import CREATED_AT_KEY, EntityType, ID_KEY, RESERVED_KEYS, UPDATED_AT_KEY
from ..time_utils import coerce_datetime, to_utc_z, utcnow

# Local field -> remote column. Keys not listed here keep their name both ways.
_COMMON_COLUMNS = {
    CREATED_AT_KEY: "created_at",
    UPDATED_AT_KEY: "updated_at",
}

REMOTE_COLUMNS: dict[EntityType, dict[str, str]] = {
    EntityType.INVENTORY: {
        "buyingPrice": "buying_price",
        "alertThreshold": "alert_threshold",
    },
    EntityType.SALE: {
        "invoiceNumber": "invoice_number",
        "customerId": "customer_id",
        "customerName": "customer_name",
        "customerContact": "customer_contact",
        "totalAmount": "total_amount",
        "paymentMethod": "payment_method",
    },
    EntityType.CUSTOMER: {
        "totalPurchases": "total_purchases",
        "purchaseCount": "purchase_count",
        "lastPurchaseDate": "last_purchase_date",
    },
}


def _columns(entity_type: EntityType) -> dict[str, str]:
    return {**_COMMON_COLUMNS, **REMOTE_COLUMNS.get(entity_type, {})}


def split_document(doc: dict[str, Any]) -> tuple[str | None, dict[str, Any], datetime | None, datetime | None]:
    """Split a flat document into (id, payload, created_at, updated_at)."""
    payload = {k: v for k, v in doc.items() if k not in RESERVED_KEYS}
    return (
        doc.get(ID_KEY),
        payload,
        coerce_datetime(doc.get(CREATED_AT_KEY)),
        coerce_datetime(doc.get(UPDATED_AT_KEY)),
    )


def build_document(
    record_id: str,
    payload: dict[str, Any],
    created_at: datetime,
    updated_at: datetime,
) -> dict[str, Any]:
    doc = {k: v for k, v in payload.items() if k not in RESERVED_KEYS}
    doc[ID_KEY] = record_id
    doc[CREATED_AT_KEY] = to_utc_z(created_at)
    doc[UPDATED_AT_KEY] = to_utc_z(updated_at)
    return doc


def document_updated_at(doc: dict[str, Any]) -> datetime | None:
    return coerce_datetime(doc.get(UPDATED_AT_KEY))


def to_remote_row(entity_type: EntityType, doc: dict[str, Any], *, pushed_at: datetime | None = None) -> dict[str, Any]:
    """
    Local document -> remote row.

    Mapped fields are renamed to their remote column (buyingPrice ->
    buying_price); every other key is sent unchanged. updated_at is the
    push instant, not the local updatedAt, so readers whose cursor is past
    the local edit still see the row.
    """
    columns = _columns(entity_type)
    row = {k: v for k, v in doc.items() if k not in columns}
    for field, column in columns.items():
        if field in doc:
            row[column] = doc[field]
    row[columns[UPDATED_AT_KEY]] = to_utc_z(pushed_at or utcnow())
    return row


def from_remote_row(entity_type: EntityType, row: dict[str, Any]) -> dict[str, Any]:
    """Remote row -> local document (inverse of to_remote_row)."""
    fields = {column: field for field, column in _columns(entity_type).items()}
    doc = {k: v for k, v in row.items() if k not in fields}
    for column, field in fields.items():
        if column in row:
            doc[field] = row[column]
    if doc.get(ID_KEY) is not None:
        doc[ID_KEY] = str(doc[ID_KEY])
    return doc


def strip_reserved(doc: dict[str, Any]) -> dict[str, Any]:
    """Payload fields only; id and timestamps removed."""
    return {k: v for k, v in doc.items() if k not in RESERVED_KEYS}
