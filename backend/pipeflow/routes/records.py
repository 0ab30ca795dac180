# backend/pipeflow/routes/records.py
"""
Record CRUD routes for the UI.

Every entity type shares the same surface; the entity type in the URL
accepts singular or collection names (sale / sales).

Time semantics:
- createdAt / updatedAt are ISO-8601 UTC with a trailing Z.
- updatedAt is always written by the server; a client-sent value is ignored.
- ?since= on /changes is exclusive: updatedAt > since.
"""
from flask import Blueprint, request

from ..errors import NotFoundError, RecordConflictError, StorageError
from ..extensions import get_gateway
from ..validation import ValidationError


records_bp = Blueprint("records", __name__, url_prefix="/api")

# Credentials stored in records; never returned in full
SECRET_FIELDS = ("remoteKey",)
REDACTED = "***"


def _public(record):
    if record is None or not any(record.get(f) for f in SECRET_FIELDS):
        return record
    return {k: (REDACTED if k in SECRET_FIELDS and v else v) for k, v in record.items()}


def _error(exc: Exception):
    if isinstance(exc, ValidationError):
        return {"error": str(exc)}, 400
    if isinstance(exc, NotFoundError):
        return {"error": str(exc)}, 404
    if isinstance(exc, RecordConflictError):
        return {"error": str(exc)}, 409
    return {"error": "Storage unavailable"}, 503


@records_bp.get("/records/<entity_type>")
def list_records_route(entity_type):
    try:
        records = get_gateway().list(entity_type)
    except (ValidationError, StorageError) as e:
        return _error(e)
    return {"records": [_public(r) for r in records], "count": len(records)}


@records_bp.post("/records/<entity_type>")
def create_record_route(entity_type):
    """
    Create a record. The body is the flat document; id is optional.

    Creating a sale also decrements stock for its items and updates the
    buying customer's purchase totals (failures there do not fail the sale).
    """
    payload = request.get_json(silent=True)
    try:
        record = get_gateway().create(entity_type, payload)
    except (ValidationError, StorageError) as e:
        return _error(e)
    return {"record": _public(record)}, 201


@records_bp.get("/records/<entity_type>/changes")
def changed_records_route(entity_type):
    since = request.args.get("since")
    try:
        records = get_gateway().changed_since(entity_type, since)
    except (ValidationError, StorageError) as e:
        return _error(e)
    return {"records": [_public(r) for r in records], "count": len(records), "since": since}


@records_bp.get("/records/<entity_type>/<record_id>")
def get_record_route(entity_type, record_id):
    try:
        record = get_gateway().get(entity_type, record_id)
    except (ValidationError, StorageError) as e:
        return _error(e)
    if record is None:
        return {"error": "Record not found"}, 404
    return {"record": _public(record)}


@records_bp.route("/records/<entity_type>/<record_id>", methods=["PUT", "PATCH"])
def update_record_route(entity_type, record_id):
    """Shallow-merge the body over the stored record (both verbs merge)."""
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return {"error": "record payload must be an object"}, 400
    # a redacted value echoed back by a client keeps the stored secret
    payload = {k: v for k, v in payload.items() if not (k in SECRET_FIELDS and v == REDACTED)}
    try:
        record = get_gateway().update(entity_type, {**payload, "id": record_id})
    except (ValidationError, StorageError) as e:
        return _error(e)
    return {"record": _public(record)}


@records_bp.delete("/records/<entity_type>/<record_id>")
def delete_record_route(entity_type, record_id):
    try:
        record = get_gateway().delete(entity_type, record_id)
    except (ValidationError, StorageError) as e:
        return _error(e)
    return {"deleted": _public(record)}


@records_bp.get("/inventory/low-stock")
def low_stock_route():
    threshold = request.args.get("threshold")
    if threshold is not None:
        try:
            threshold = int(threshold)
        except ValueError:
            return {"error": "threshold must be an integer"}, 400
    try:
        items = get_gateway().low_stock(threshold)
    except StorageError as e:
        return _error(e)
    return {"items": items, "count": len(items)}


@records_bp.post("/customers/<customer_id>/purchases")
def record_purchase_route(customer_id):
    payload = request.get_json(silent=True) or {}
    try:
        customer = get_gateway().record_customer_purchase(customer_id, payload.get("amount"))
    except (ValidationError, StorageError) as e:
        return _error(e)
    return {"record": customer}
