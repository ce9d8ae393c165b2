"""
Tests for pgcache.fetchers: read-through queries and cache-updating writes.
"""

from unittest.mock import MagicMock

import pytest

from pgcache.client import PostgrestClient, PostgrestResponse
from pgcache.errors import PostgrestError
from pgcache.fetchers import DeleteFetcher, InsertFetcher, QueryFetcher, UpdateFetcher, UpsertFetcher
from pgcache.mutate import CacheUpdatePlan, MutationEngine, UpdateAction
from pgcache.query import encode


def ids(value):
    return [row["id"] for row in value.rows]


@pytest.fixture
def engine(store, config):
    return MutationEngine(store, config)


@pytest.fixture
def reader(store):
    return QueryFetcher(store)


@pytest.fixture
def open_tasks(client):
    return client.from_("tasks").select("*").eq("status", "open").order("id")


@pytest.fixture
def done_tasks(client):
    return client.from_("tasks").select("*").eq("status", "done").order("id")


class TestQueryFetcher:
    """Read-through caching."""

    def test_miss_then_hit(self, reader, open_tasks, transport, store):
        first = reader.fetch(open_tasks)
        second = reader.fetch(open_tasks)

        assert ids(first) == [1, 2, 4]
        assert second is first
        assert len(transport.requests) == 1
        assert store.get(encode(open_tasks)) is not None

    def test_refetch(self, reader, open_tasks, transport):
        reader.fetch(open_tasks)
        transport.rows[0]["status"] = "done"
        result = reader.refetch(open_tasks)

        assert ids(result) == [2, 4]
        assert len(transport.requests) == 2
        assert ids(reader.fetch(open_tasks)) == [2, 4]

    def test_count(self, reader, client):
        result = reader.fetch(client.from_("tasks").select("*", count="exact").eq("status", "open").limit(1))
        assert result.count == 3
        assert len(result) == 1

    def test_key(self, reader, open_tasks):
        assert reader.key(open_tasks) == encode(open_tasks)


class TestInsertFetcher:
    """Inserts flow into cached queries."""

    def test_insert_updates_cache(self, store, engine, reader, client, open_tasks, done_tasks, transport):
        reader.fetch(open_tasks)
        reader.fetch(done_tasks)

        fetcher = InsertFetcher(store, engine)
        rows = fetcher(client.from_("tasks"), {"title": "New", "status": "open", "priority": 1, "created_at": 5})

        assert rows[0]["id"] == 5
        assert ids(store.get(encode(open_tasks))) == [1, 2, 4, 5]
        assert ids(store.get(encode(done_tasks))) == [3]
        assert transport.requests[-1].method == "POST"

    def test_last_plan(self, store, engine, reader, client, open_tasks):
        reader.fetch(open_tasks)
        fetcher = InsertFetcher(store, engine)
        assert fetcher.last_plan is None

        fetcher(client.from_("tasks"), {"title": "New", "status": "open"})

        assert isinstance(fetcher.last_plan, CacheUpdatePlan)
        assert fetcher.last_plan.keys(UpdateAction.INSERTED) == [encode(open_tasks)]

    def test_returning_columns(self, store, client, transport):
        InsertFetcher(store, returning=["id", "title"])(client.from_("tasks"), {"title": "New"})
        request = transport.requests[-1]
        assert ("select", "id,title") in request.params
        assert "return=representation" in request.headers["Prefer"]

    def test_revalidate_tables(self, store, reader, client):
        notes = client.from_("notes").select("*")
        reader.fetch(notes)
        InsertFetcher(store, revalidate_tables=[("public", "notes")])(client.from_("tasks"), {"title": "New"})
        assert store.get(encode(notes)) is None

    def test_error_leaves_cache_alone(self, store, reader, open_tasks):
        reader.fetch(open_tasks)
        before = ids(store.get(encode(open_tasks)))

        failing = MagicMock()
        failing.request.side_effect = PostgrestError("duplicate key value", code="23505", status=409)
        client = PostgrestClient("http://localhost:3000", transport=failing)
        fetcher = InsertFetcher(store)

        with pytest.raises(PostgrestError) as exc:
            fetcher(client.from_("tasks"), {"id": 1, "title": "Dup"})

        assert exc.value.code == "23505"
        assert ids(store.get(encode(open_tasks))) == before
        assert fetcher.last_plan is None


class TestUpdateFetcher:
    """Updates by primary key."""

    def test_update_moves_row_between_queries(self, store, engine, reader, client, open_tasks, done_tasks, transport):
        reader.fetch(open_tasks)
        reader.fetch(done_tasks)

        rows = UpdateFetcher(store, engine, primary_keys=["id"])(client.from_("tasks"), {"id": 2, "status": "done"})

        assert rows[0]["title"] == "Fix login bug"
        assert ids(store.get(encode(open_tasks))) == [1, 4]
        assert ids(store.get(encode(done_tasks))) == [2, 3]

        request = transport.requests[-1]
        assert request.method == "PATCH"
        assert request.body == {"status": "done"}
        assert ("id", "eq.2") in request.params

    def test_fallback_to_payload(self, store, reader, open_tasks):
        reader.fetch(open_tasks)
        silent = MagicMock()
        silent.request.return_value = PostgrestResponse(data=None, status=204)
        client = PostgrestClient("http://localhost:3000", transport=silent)

        UpdateFetcher(store, primary_keys=["id"])(client.from_("tasks"), {"id": 1, "title": "Docs v2"})

        assert store.get(encode(open_tasks)).rows[0]["title"] == "Docs v2"

    def test_requires_primary_keys(self, store, client):
        with pytest.raises(ValueError):
            UpdateFetcher(store)(client.from_("tasks"), {"id": 1, "title": "x"})

    def test_requires_key_value(self, store, client):
        with pytest.raises(ValueError):
            UpdateFetcher(store, primary_keys=["id"])(client.from_("tasks"), {"title": "x"})


class TestUpsertFetcher:
    """Upserts update existing rows and add new ones."""

    def test_upsert(self, store, engine, reader, client, open_tasks, transport):
        reader.fetch(open_tasks)
        payload = [
            {"id": 1, "title": "Docs v2", "status": "open"},
            {"id": 7, "title": "Plan sprint", "status": "open"},
        ]
        UpsertFetcher(store, engine, primary_keys=["id"])(client.from_("tasks"), payload)

        value = store.get(encode(open_tasks))
        assert ids(value) == [1, 2, 4, 7]
        assert value.rows[0]["title"] == "Docs v2"
        assert value.rows[0]["priority"] == 2

        request = transport.requests[-1]
        assert ("on_conflict", "id") in request.params
        assert "resolution=merge-duplicates" in request.headers["Prefer"]


class TestDeleteFetcher:
    """Deletes by identity."""

    def test_single(self, store, engine, reader, client, open_tasks, transport):
        reader.fetch(open_tasks)
        DeleteFetcher(store, engine, primary_keys=["id"])(client.from_("tasks"), {"id": 2})

        assert ids(store.get(encode(open_tasks))) == [1, 4]
        assert [r["id"] for r in transport.rows] == [1, 3, 4]

    def test_many_with_single_key(self, store, engine, reader, client, open_tasks, transport):
        reader.fetch(open_tasks)
        DeleteFetcher(store, engine, primary_keys=["id"])(client.from_("tasks"), [{"id": 2}, {"id": 1}])

        assert ("id", "in.(1,2)") in transport.requests[-1].params
        assert ids(store.get(encode(open_tasks))) == [4]

    def test_composite_keys(self, store, make_client):
        members = [{"tenant": "a", "id": 1}, {"tenant": "b", "id": 1}, {"tenant": "b", "id": 2}]
        client, transport = make_client(members)
        reader = QueryFetcher(store)
        query = client.from_("members").select("*")
        reader.fetch(query)

        DeleteFetcher(store, primary_keys=["tenant", "id"])(
            client.from_("members"), [{"tenant": "a", "id": 1}, {"tenant": "b", "id": 2}])

        assert transport.requests[-1].params[0] == ("or", "(and(tenant.eq.a,id.eq.1),and(tenant.eq.b,id.eq.2))")
        assert store.get(encode(query)).rows == [{"tenant": "b", "id": 1}]

    def test_fallback_to_payload(self, store, reader, open_tasks):
        reader.fetch(open_tasks)
        silent = MagicMock()
        silent.request.return_value = PostgrestResponse(data=[], status=200)
        client = PostgrestClient("http://localhost:3000", transport=silent)

        rows = DeleteFetcher(store, primary_keys=["id"])(client.from_("tasks"), {"id": 4})

        assert rows == []
        assert ids(store.get(encode(open_tasks))) == [1, 2]

    def test_requires_primary_keys(self, store, client):
        with pytest.raises(ValueError):
            DeleteFetcher(store)(client.from_("tasks"), {"id": 1})

    def test_requires_rows(self, store, client):
        with pytest.raises(ValueError):
            DeleteFetcher(store, primary_keys=["id"])(client.from_("tasks"), [])
