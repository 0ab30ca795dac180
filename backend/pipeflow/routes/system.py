# backend/pipeflow/routes/system.py
"""
System health, storage and activity endpoints.

/health reports storage mode and remote configuration. Running on the
fallback store is "degraded", not unhealthy; uninitialized storage is 503.
"""

import sys
import time

from flask import Blueprint, current_app, request

from ..extensions import get_services
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_storage_health() -> dict:
    """Storage status plus the round-trip time of a record count."""
    start_time = time.time()
    gateway = get_services().gateway
    status = gateway.status()
    elapsed_ms = (time.time() - start_time) * 1000

    if not status["ready"]:
        health = "unhealthy"
    elif status["mode"] == "fallback":
        health = "degraded"
    else:
        health = "healthy"
    return {
        "status": health,
        "latency_ms": round(elapsed_ms, 2),
        "details": status,
    }


def check_remote_health() -> dict:
    sync = get_services().sync
    return {
        "status": "healthy" if sync.remote.is_configured else "degraded",
        "details": {
            "configured": sync.remote.is_configured,
            "offline_markers": len(sync.offline_markers()),
        },
    }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: storage ready (healthy or degraded)
    - 503: storage could not be initialized
    """
    start_time = time.time()

    storage_health = check_storage_health()
    remote_health = check_remote_health()

    all_checks = [storage_health, remote_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status = "unhealthy"
        http_status = 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status = "degraded"
        http_status = 200
    else:
        overall_status = "healthy"
        http_status = 200

    response = {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "storage": storage_health,
            "remote": remote_health,
        },
    }
    return response, http_status


@system_bp.get("/storage")
def storage_status():
    return get_services().gateway.status()


@system_bp.get("/activity")
def activity():
    try:
        limit = int(request.args.get("limit", 50))
    except ValueError:
        return {"error": "limit must be an integer"}, 400
    event_type = request.args.get("type")
    events = get_services().activity.recent(limit, event_type=event_type)
    return {"events": [e.to_dict() for e in events]}


@system_bp.get("/version")
def version():
    env = "production" if not current_app.debug else "development"
    return {
        "api_version": "1.0.0",
        "environment": env,
        "python_version": sys.version.split()[0],
        "server_time": to_utc_z(utcnow()),
    }
