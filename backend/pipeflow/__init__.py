# backend/pipeflow/__init__.py
import os

from flask import Flask, request

from .config import Config
from .extensions import EXTENSION_KEY, PipeflowServices, db, migrate

MIGRATIONS_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "migrations")


def create_app(test_config=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db, directory=MIGRATIONS_DIR)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.records import records_bp
    from .routes.sync import sync_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(records_bp)
    app.register_blueprint(sync_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:4173",
            "http://127.0.0.1:4173",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    app.extensions[EXTENSION_KEY] = build_services(app)

    if app.config.get("STORAGE_AUTO_INITIALIZE", True):
        with app.app_context():
            initialize_storage(app)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app


def build_services(app: Flask) -> PipeflowServices:
    from .services.activity_service import ActivityLogger
    from .services.change_feed import ChangeFeed
    from .services.fallback_store import FallbackStore
    from .services.remote_store import RemoteStore
    from .services.storage_gateway import StorageGateway
    from .services.sync_service import SyncManager

    fallback_path = app.config["FALLBACK_STORE_PATH"]
    if not os.path.isabs(fallback_path):
        fallback_path = os.path.join(app.instance_path, fallback_path)

    activity = ActivityLogger(app.logger, max_events=app.config.get("ACTIVITY_BUFFER_SIZE", 500))
    change_feed = ChangeFeed()
    gateway = StorageGateway(
        FallbackStore(fallback_path),
        activity=activity,
        change_feed=change_feed,
        low_stock_threshold=app.config.get("LOW_STOCK_THRESHOLD", 10),
    )
    remote = RemoteStore(
        app.config.get("REMOTE_URL"),
        app.config.get("REMOTE_KEY"),
        health_table=app.config.get("REMOTE_HEALTH_TABLE", "health_check"),
        probe_timeout=app.config.get("SYNC_PROBE_TIMEOUT", 10),
        request_timeout=app.config.get("SYNC_REQUEST_TIMEOUT", 30),
        # Tests inject an httpx.MockTransport here
        transport=app.config.get("REMOTE_TRANSPORT"),
    )
    sync = SyncManager(
        gateway,
        remote,
        activity=activity,
        persist_cursors=app.config.get("SYNC_PERSIST_CURSORS", True),
    )
    return PipeflowServices(gateway=gateway, sync=sync, activity=activity, change_feed=change_feed)


def initialize_storage(app: Flask) -> bool:
    """Select the storage backend, then pick up persisted remote settings. Needs an app context."""
    services = app.extensions[EXTENSION_KEY]
    ready = services.gateway.initialize()
    if ready:
        services.sync.load_remote_config()
    return ready
