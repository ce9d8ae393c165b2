import os

import pytest

from pgcache.client import PostgrestClient, PostgrestResponse
from pgcache.config import CacheConfig
from pgcache.query.filters import matches, sort_rows
from pgcache.query.parser import parse_params
from pgcache.store import MemoryStore


class FakeTransport:
    """
    In-memory stand-in for a PostgREST server.

    Evaluates filters, order and pagination with pgcache's own evaluator and
    records every request it receives.
    """

    def __init__(self, rows=None):
        self.rows = [dict(r) for r in rows or []]
        self.requests = []

    def request(self, base_url, query):
        self.requests.append(query)
        params = parse_params(query.params)
        prefer = query.headers.get("Prefer", "")

        if query.method in ("GET", "HEAD"):
            matched = sort_rows([r for r in self.rows if matches(r, params.filters)], params.order)
            start = params.offset or 0
            end = start + params.limit if params.limit is not None else None
            data = None if query.method == "HEAD" else [dict(r) for r in matched[start:end]]
            count = len(matched) if "count=" in prefer else None
            return PostgrestResponse(data=data, count=count, status=200)

        if query.method == "POST":
            body = query.body if isinstance(query.body, list) else [query.body]
            written = []
            for row in body:
                existing = next((r for r in self.rows if "id" in row and r.get("id") == row["id"]), None)
                if existing is not None:
                    existing.update(row)
                    written.append(dict(existing))
                    continue
                new = dict(row)
                new.setdefault("id", max([r.get("id", 0) for r in self.rows] or [0]) + 1)
                self.rows.append(new)
                written.append(dict(new))
            return PostgrestResponse(data=written, status=201)

        targets = [r for r in self.rows if matches(r, params.filters)]
        if query.method == "PATCH":
            for row in targets:
                row.update(query.body)
        elif query.method == "DELETE":
            self.rows = [r for r in self.rows if r not in targets]
        return PostgrestResponse(data=[dict(r) for r in targets], status=200)


@pytest.fixture
def tasks():
    """Sample task rows."""
    return [
        {"id": 1, "title": "Write docs", "status": "open", "priority": 2, "created_at": 1, "tags": ["docs"]},
        {"id": 2, "title": "Fix login bug", "status": "open", "priority": 3, "created_at": 2, "tags": ["bug", "auth"]},
        {"id": 3, "title": "Release 1.0", "status": "done", "priority": 1, "created_at": 3, "tags": []},
        {"id": 4, "title": "Triage issues", "status": "open", "priority": None, "created_at": 4, "tags": ["bug"]},
    ]


@pytest.fixture
def transport(tasks):
    return FakeTransport(tasks)


@pytest.fixture
def client(transport):
    return PostgrestClient("http://localhost:3000", transport=transport)


@pytest.fixture
def make_client():
    """Factory for a client over a FakeTransport holding other rows."""
    def _make(rows):
        transport = FakeTransport(rows)
        return PostgrestClient("http://localhost:3000", transport=transport), transport
    return _make


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def config():
    return CacheConfig(primary_keys={"tasks": ["id"]})


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep user config files and PGCACHE_* variables out of tests."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    for name in list(os.environ):
        if name.startswith("PGCACHE_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("pgcache.config._config", None)
    return home
