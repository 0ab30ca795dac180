"""
Pytest fixtures for pipeflow backend tests.

Each test gets its own SQLite entity store file and fallback JSON file
under tmp_path, plus an in-memory remote store served through
httpx.MockTransport.
"""

import json
import threading
from collections import defaultdict

import httpx
import pytest

from pipeflow import create_app
from pipeflow.extensions import db, get_gateway, get_sync_manager
from pipeflow.time_utils import EPOCH, parse_iso_datetime

REMOTE_URL = "https://remote.test"


class FakeRemote:
    """
    Minimal PostgREST-like table API.

    - reachable=False makes every request fail with a connection error
    - reject_ids: upserts of these ids answer 400
    - fail_status: every upsert answers this status
    - fail_select_tables: selects on these tables answer 500
    - gate: (started, release) events; the next select signals `started`
      and waits for `release`
    """

    def __init__(self):
        self.tables = defaultdict(dict)
        self.reachable = True
        self.reject_ids = set()
        self.fail_status = None
        self.fail_select_tables = set()
        self.gate = None
        self.requests = 0
        self.selects = defaultdict(int)
        self.upserts = defaultdict(int)
        self.active_selects = 0
        self.max_active_selects = 0
        self._lock = threading.Lock()

    def put(self, table, row):
        self.tables[table][str(row["id"])] = dict(row)

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests += 1
        if not self.reachable:
            raise httpx.ConnectError("remote offline", request=request)

        table = request.url.path.rsplit("/", 1)[-1]
        if table == "health_check":
            return httpx.Response(200, json=[])
        if request.method == "GET" and table in self.fail_select_tables:
            return httpx.Response(500, json={"message": "server error"})
        if request.method == "GET":
            return self._select(table, request)
        if request.method == "POST":
            return self._upsert(table, request)
        return httpx.Response(405)

    def _select(self, table, request):
        with self._lock:
            self.active_selects += 1
            self.max_active_selects = max(self.max_active_selects, self.active_selects)
            self.selects[table] += 1
            gate, self.gate = self.gate, None
        try:
            if gate is not None:
                started, release = gate
                started.set()
                release.wait(5)
            raw = request.url.params.get("updated_at", "gt.1970-01-01T00:00:00Z")
            since = parse_iso_datetime(raw[len("gt."):]) or EPOCH
            rows = [
                r for r in self.tables[table].values()
                if parse_iso_datetime(r.get("updated_at")) > since
            ]
            rows.sort(key=lambda r: parse_iso_datetime(r["updated_at"]))
            return httpx.Response(200, json=rows)
        finally:
            with self._lock:
                self.active_selects -= 1

    def _upsert(self, table, request):
        if self.fail_status:
            return httpx.Response(self.fail_status, json={"message": "server error"})
        rows = json.loads(request.content)
        for row in rows:
            if str(row.get("id")) in self.reject_ids:
                return httpx.Response(400, json={"message": "invalid row"})
        for row in rows:
            existing = self.tables[table].get(str(row["id"]), {})
            self.tables[table][str(row["id"])] = {**existing, **row}
            self.upserts[table] += 1
        return httpx.Response(201)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def app_factory(tmp_path, remote):
    """
    Build apps over this test's storage paths.

    Calls with the same site share storage (simulates restarts); another
    site is a separate installation talking to the same remote.
    """
    apps = []

    def _make(site=None, **overrides):
        root = tmp_path if site is None else tmp_path / site
        root.mkdir(exist_ok=True)
        config = {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{root / 'entity.sqlite3'}",
            "FALLBACK_STORE_PATH": str(root / "fallback.json"),
            "REMOTE_URL": REMOTE_URL,
            "REMOTE_KEY": "test-key",
            "REMOTE_TRANSPORT": httpx.MockTransport(remote.handler),
        }
        config.update(overrides)
        app = create_app(config)
        apps.append(app)
        return app

    yield _make

    for app in apps:
        with app.app_context():
            app.extensions["pipeflow"].shutdown()
            db.session.remove()
            db.engine.dispose()


@pytest.fixture
def app(app_factory):
    app = app_factory()
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def gateway(app):
    return get_gateway()


@pytest.fixture
def sync(app):
    return get_sync_manager()


@pytest.fixture
def fallback_file(tmp_path):
    """Write a fallback store file before the app starts."""
    path = tmp_path / "fallback.json"

    def _write(data):
        path.write_text(json.dumps(data), encoding="utf-8")
        return path

    return _write
