# backend/pipeflow/routes/sync.py
"""
Remote sync routes.

Sync never fails the request: outcomes (offline, in-progress, partial)
are reported in the body with HTTP 200. Only bad input is a 400.
"""
from flask import Blueprint, request

from ..extensions import get_sync_manager
from ..validation import ValidationError


sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


@sync_bp.post("/run")
def sync_all_route():
    return get_sync_manager().sync_all()


@sync_bp.post("/run/<entity_type>")
def sync_entity_type_route(entity_type):
    try:
        result = get_sync_manager().sync_entity_type(entity_type)
    except ValidationError as e:
        return {"error": str(e)}, 400
    return result.to_dict()


@sync_bp.post("/offline")
def process_offline_route():
    return get_sync_manager().process_offline_changes()


@sync_bp.get("/status")
def sync_status_route():
    return get_sync_manager().status()


@sync_bp.put("/remote")
def configure_remote_route():
    """Set the remote endpoint and key. Both are required; they are persisted in the app settings record."""
    payload = request.get_json(silent=True) or {}
    try:
        result = get_sync_manager().configure_remote(payload.get("url"), payload.get("key"))
    except ValidationError as e:
        return {"error": str(e)}, 400
    return result
