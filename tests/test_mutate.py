"""
Tests for pgcache.mutate: applying write results to cached queries.
"""

import functools
import logging

import pytest

from pgcache.config import CacheConfig
from pgcache.mutate import (
    CacheUpdatePlan, MutationEngine, RelationRevalidation, UpdateAction,
    find_index_ordered, merge_rows,
)
from pgcache.query import OperationKind, QueryParser, encode, parse_order, build_comparator
from pgcache.results import InfiniteResponse, QueryResponse


def ids(value):
    return [row["id"] for row in value.rows]


@pytest.fixture
def engine(store, config):
    return MutationEngine(store, config)


@pytest.fixture
def by_id(tasks):
    return {t["id"]: t for t in tasks}


@pytest.fixture
def cache(store):
    """Store a response under a builder's key and return the key."""
    def _cache(builder, data, count=None):
        key = encode(builder)
        store.set(key, QueryResponse(data=data, count=count, status=200))
        return key
    return _cache


def new_task(**values):
    row = {"id": 5, "title": "New", "status": "open", "priority": 2, "created_at": 5, "tags": []}
    row.update(values)
    return row


class TestInsert:
    """Inserted rows enter matching cached queries."""

    def test_bounded_page_keeps_size(self, engine, client, cache, store, by_id):
        key = cache(client.from_("tasks").select("*").order("created_at", desc=True).limit(2),
                    [by_id[4], by_id[3]])
        row = new_task()
        plan = engine.apply("insert", [row], client.from_("tasks").insert(row))

        assert ids(store.get(key)) == [5, 4]
        assert plan.keys(UpdateAction.INSERTED) == [key]

    def test_sorted_position(self, engine, client, cache, store, by_id):
        key = cache(client.from_("tasks").select("*").order("priority"), [by_id[3], by_id[1], by_id[2]])
        row = new_task(priority=2)
        engine.apply(OperationKind.INSERT, [row], client.from_("tasks").insert(row))
        assert ids(store.get(key)) == [3, 1, 5, 2]

    def test_non_matching_row_is_ignored(self, engine, client, cache, store, by_id):
        key = cache(client.from_("tasks").select("*").eq("status", "done"), [by_id[3]])
        row = new_task()
        plan = engine.apply("insert", [row], client.from_("tasks").insert(row))
        assert ids(store.get(key)) == [3]
        assert plan.changed == []
        assert plan.keys(UpdateAction.UNCHANGED) == [key]

    def test_null_fails_comparison_filter(self, engine, client, cache, store, by_id):
        key = cache(client.from_("tasks").select("*").gt("priority", 1), [by_id[1], by_id[2]])
        row = new_task(priority=None)
        engine.apply("insert", [row], client.from_("tasks").insert(row))
        assert ids(store.get(key)) == [1, 2]

    def test_count_is_adjusted(self, engine, client, cache, store, by_id):
        key = cache(client.from_("tasks").select("*", count="exact").eq("status", "open"),
                    [by_id[1], by_id[2], by_id[4]], count=3)
        rows = [new_task(), new_task(id=6, status="done")]
        engine.apply("insert", rows, client.from_("tasks").insert(rows))
        assert store.get(key).count == 4

    def test_unbounded_list_grows(self, engine, client, cache, store, tasks):
        key = cache(client.from_("tasks").select("*"), list(tasks))
        row = new_task()
        engine.apply("insert", [row], client.from_("tasks").insert(row))
        assert ids(store.get(key)) == [1, 2, 3, 4, 5]


class TestUpdate:
    """Updated rows are merged, moved, dropped or added."""

    def test_row_moves(self, engine, client, cache, store, by_id):
        key = cache(client.from_("tasks").select("*").order("priority"), [by_id[3], by_id[1], by_id[2]])
        engine.apply("update", [{"id": 3, "priority": 5}],
                     client.from_("tasks").update({"priority": 5}).eq("id", 3))

        value = store.get(key)
        assert ids(value) == [1, 2, 3]
        assert value.rows[2]["title"] == "Release 1.0"
        assert value.rows[2]["priority"] == 5

    def test_row_leaves_filter(self, engine, client, cache, store, by_id):
        key = cache(client.from_("tasks").select("*", count="exact").eq("status", "open"),
                    [by_id[1], by_id[2], by_id[4]], count=3)
        plan = engine.apply("update", [dict(by_id[2], status="done")],
                            client.from_("tasks").update({"status": "done"}).eq("id", 2))

        value = store.get(key)
        assert ids(value) == [1, 4]
        assert value.count == 2
        assert plan.keys(UpdateAction.REMOVED) == [key]

    def test_row_enters_filter(self, engine, client, cache, store, by_id):
        key = cache(client.from_("tasks").select("*").eq("status", "done"), [by_id[3]])
        engine.apply("update", [dict(by_id[1], status="done")],
                     client.from_("tasks").update({"status": "done"}).eq("id", 1))
        assert ids(store.get(key)) == [3, 1]

    def test_nested_values_are_merged(self, engine, client, cache, store):
        key = cache(client.from_("profiles").select("*"), [{"id": 1, "settings": {"theme": "dark", "lang": "en"}}])
        engine.apply("update", [{"id": 1, "settings": {"theme": "light"}}],
                     client.from_("profiles").update({"settings": {"theme": "light"}}).eq("id", 1))
        assert store.get(key).rows[0]["settings"] == {"theme": "light", "lang": "en"}

    def test_upsert(self, engine, client, cache, store, by_id):
        key = cache(client.from_("tasks").select("*").eq("status", "open").order("id"),
                    [by_id[1], by_id[2], by_id[4]])
        rows = [dict(by_id[1], title="Write more docs"), new_task()]
        plan = engine.apply("upsert", rows, client.from_("tasks").upsert(rows, on_conflict="id"))

        value = store.get(key)
        assert ids(value) == [1, 2, 4, 5]
        assert value.rows[0]["title"] == "Write more docs"
        assert plan.keys(UpdateAction.UPDATED) == [key]


class TestDelete:
    """Deleted rows are removed by identity."""

    def test_removed_from_every_entry(self, engine, client, cache, store, tasks, by_id):
        all_key = cache(client.from_("tasks").select("*"), list(tasks))
        open_key = cache(client.from_("tasks").select("*").eq("status", "open"), [by_id[1], by_id[2], by_id[4]])

        plan = engine.apply("delete", [{"id": 2}], client.from_("tasks").delete().eq("id", 2))

        assert ids(store.get(all_key)) == [1, 3, 4]
        assert ids(store.get(open_key)) == [1, 4]
        assert set(plan.keys(UpdateAction.REMOVED)) == {all_key, open_key}

    def test_idempotent(self, engine, client, cache, store, tasks):
        key = cache(client.from_("tasks").select("*"), list(tasks))
        delete = client.from_("tasks").delete().eq("id", 2)
        engine.apply("delete", [{"id": 2}], delete)
        plan = engine.apply("delete", [{"id": 2}], delete)

        assert ids(store.get(key)) == [1, 3, 4]
        assert plan.changed == []

    def test_stale_copy_is_removed_regardless_of_filters(self, engine, client, cache, store, by_id):
        key = cache(client.from_("tasks").select("*").eq("status", "open"), [by_id[1], by_id[2]])
        engine.apply("delete", [dict(by_id[2], status="done")], client.from_("tasks").delete().eq("id", 2))
        assert ids(store.get(key)) == [1]

    def test_composite_identity(self, engine, client, cache, store):
        rows = [{"tenant": "a", "id": 1}, {"tenant": "b", "id": 1}]
        key = cache(client.from_("members").select("*"), rows)
        engine.apply("delete", [{"tenant": "b", "id": 1}], client.from_("members").delete(),
                     primary_keys=["tenant", "id"])
        assert store.get(key).rows == [{"tenant": "a", "id": 1}]


class TestEntryShapes:
    """Single-row, count-only, windowed and infinite entries."""

    def test_single_row_updated(self, engine, client, store, by_id):
        key = encode(client.from_("tasks").select("*").eq("id", 1).single())
        store.set(key, QueryResponse(data=dict(by_id[1]), status=200))
        engine.apply("update", [{"id": 1, "title": "Docs v2"}],
                     client.from_("tasks").update({"title": "Docs v2"}).eq("id", 1))
        assert store.get(key).data["title"] == "Docs v2"
        assert store.get(key).data["status"] == "open"

    def test_single_row_deleted(self, engine, client, store, by_id):
        key = encode(client.from_("tasks").select("*").eq("id", 1).single())
        store.set(key, QueryResponse(data=dict(by_id[1]), status=200))
        plan = engine.apply("delete", [{"id": 1}], client.from_("tasks").delete().eq("id", 1))
        assert store.get(key).data is None
        assert plan.keys(UpdateAction.REMOVED) == [key]

    def test_single_row_ignores_inserts(self, engine, client, store, by_id):
        key = encode(client.from_("tasks").select("*").eq("id", 1).single())
        store.set(key, QueryResponse(data=dict(by_id[1]), status=200))
        row = new_task()
        engine.apply("insert", [row], client.from_("tasks").insert(row))
        assert store.get(key).data["id"] == 1

    def test_head_count_follows_inserts_and_deletes(self, engine, client, store):
        key = encode(client.from_("tasks").select("*", count="exact", head=True).eq("status", "open"))
        store.set(key, QueryResponse(data=None, count=3, status=200))

        row = new_task()
        engine.apply("insert", [row], client.from_("tasks").insert(row))
        assert store.get(key).count == 4

        engine.apply("delete", [row], client.from_("tasks").delete().eq("id", 5))
        assert store.get(key).count == 3

    def test_head_invalidated_by_update(self, engine, client, store):
        key = encode(client.from_("tasks").select("*", count="exact", head=True).eq("status", "open"))
        store.set(key, QueryResponse(data=None, count=3, status=200))
        plan = engine.apply("update", [{"id": 1, "status": "done"}],
                            client.from_("tasks").update({"status": "done"}).eq("id", 1))
        assert store.get(key) is None
        assert plan.keys(UpdateAction.INVALIDATED) == [key]

    def test_offset_window_invalidated_when_row_lands_first(self, engine, client, cache, store, by_id):
        key = cache(client.from_("tasks").select("*").order("created_at", desc=True).range(2, 3),
                    [by_id[2], by_id[1]])
        row = new_task(created_at=5)
        plan = engine.apply("insert", [row], client.from_("tasks").insert(row))
        assert store.get(key) is None
        assert plan.keys(UpdateAction.INVALIDATED) == [key]

    def test_offset_window_patched_inside(self, engine, client, cache, store, by_id):
        key = cache(client.from_("tasks").select("*").order("created_at", desc=True).range(2, 3),
                    [by_id[2], by_id[1]])
        row = new_task(created_at=1.5)
        engine.apply("insert", [row], client.from_("tasks").insert(row))
        assert ids(store.get(key)) == [2, 5]

    def test_offset_window_keeps_updated_first_row(self, engine, client, cache, store, by_id):
        key = cache(client.from_("tasks").select("*").order("created_at", desc=True).range(2, 3),
                    [by_id[2], by_id[1]])
        plan = engine.apply("update", [{"id": 2, "title": "renamed", "created_at": 2}],
                            client.from_("tasks").update({"title": "renamed"}).eq("id", 2))

        value = store.get(key)
        assert value is not None
        assert ids(value) == [2, 1]
        assert value.rows[0]["title"] == "renamed"
        assert plan.keys(UpdateAction.UPDATED) == [key]

    def test_offset_window_keeps_upserted_first_row(self, engine, client, cache, store, by_id):
        key = cache(client.from_("tasks").select("*").order("created_at", desc=True).range(2, 3),
                    [by_id[2], by_id[1]])
        engine.apply("upsert", [dict(by_id[2], title="renamed")],
                     client.from_("tasks").upsert(dict(by_id[2], title="renamed")))
        assert store.get(key).rows[0]["title"] == "renamed"

    def test_infinite_insert_rechunks(self, engine, client, store, by_id):
        key = encode(client.from_("tasks").select("*").order("created_at", desc=True), is_infinite=True)
        store.set(key, InfiniteResponse(pages=[[by_id[4], by_id[3]], [by_id[2], by_id[1]]],
                                        page_params=[0, 1], page_size=2, has_more=False))
        row = new_task()
        engine.apply("insert", [row], client.from_("tasks").insert(row))

        value = store.get(key)
        assert [[r["id"] for r in page] for page in value.pages] == [[5, 4], [3, 2]]
        assert value.page_params == [0, 1]

    def test_infinite_delete_shrinks_last_page(self, engine, client, store, by_id):
        key = encode(client.from_("tasks").select("*").order("created_at", desc=True), is_infinite=True)
        store.set(key, InfiniteResponse(pages=[[by_id[4], by_id[3]], [by_id[2], by_id[1]]],
                                        page_params=[0, 1], page_size=2))
        engine.apply("delete", [{"id": 4}], client.from_("tasks").delete().eq("id", 4))
        assert [[r["id"] for r in page] for page in store.get(key).pages] == [[3, 2], [1]]


class TestIdentity:
    """Identity column resolution."""

    def test_explicit_beats_config(self, store, config):
        engine = MutationEngine(store, config)
        assert engine.identity_columns("public", "tasks", [], primary_keys=["uuid"]) == ["uuid"]

    def test_config_by_schema_and_table(self, store):
        engine = MutationEngine(store, CacheConfig(primary_keys={"api.tasks": ["slug"]}))
        assert engine.identity_columns("api", "tasks", []) == ["slug"]

    def test_inferred_id(self, store):
        assert MutationEngine(store).identity_columns("public", "tasks", [{"id": 1}]) == ["id"]

    def test_inference_disabled(self, store):
        engine = MutationEngine(store, CacheConfig(infer_identity=False))
        assert engine.identity_columns("public", "tasks", [{"id": 1}]) is None

    def test_deep_equality_fallback(self, store, client, cache, caplog):
        key = cache(client.from_("tags").select("*"), [{"name": "bug"}, {"name": "docs"}])
        engine = MutationEngine(store)
        with caplog.at_level(logging.WARNING, logger="pgcache.mutate"):
            plan = engine.apply("delete", [{"name": "bug"}], client.from_("tags").delete().eq("name", "bug"))

        assert plan.identity is None
        assert store.get(key).rows == [{"name": "docs"}]
        assert "deep equality" in caplog.text

    def test_same_row(self):
        assert MutationEngine.same_row({"id": 1, "a": 1}, {"id": 1, "a": 2}, ["id"]) is True
        assert MutationEngine.same_row({"id": 1}, {"id": 2}, ["id"]) is False
        assert MutationEngine.same_row({"a": 1}, {"a": 1}, None) is True


class TestScope:
    """Which cache entries a mutation may touch."""

    def test_other_tables_and_schemas_untouched(self, engine, client, cache, store, tasks):
        notes = cache(client.from_("notes").select("*"), [{"id": 2, "body": "x"}])
        private = encode(client.from_("tasks").select("*"))._replace(schema="private")
        store.set(private, QueryResponse(data=list(tasks)))
        store.set(("todos", "list"), QueryResponse(data=[{"id": 2}]))

        plan = engine.apply("delete", [{"id": 2}], client.from_("tasks").delete().eq("id", 2))

        assert store.get(notes).rows == [{"id": 2, "body": "x"}]
        assert len(store.get(private).rows) == 4
        assert store.get(("todos", "list")).rows == [{"id": 2}]
        assert len(plan) == 0

    def test_undecodable_key_is_skipped(self, engine, client, cache, store, tasks):
        odd = ("postgrest", "null", "public", "tasks", "", "null", "count=undefined", "head=false", "")
        store.set(odd, QueryResponse(data=[{"id": 2}]))
        key = cache(client.from_("tasks").select("*"), list(tasks))

        engine.apply("delete", [{"id": 2}], client.from_("tasks").delete().eq("id", 2))

        assert store.get(odd).data == [{"id": 2}]
        assert ids(store.get(key)) == [1, 3, 4]

    def test_no_rows_no_changes(self, engine, client, cache, store, tasks):
        cache(client.from_("tasks").select("*"), list(tasks))
        plan = engine.apply("insert", [], client.from_("tasks").insert([]))
        assert isinstance(plan, CacheUpdatePlan)
        assert len(plan) == 0

    def test_accepts_parsed_query(self, engine, client, cache, store, tasks):
        key = cache(client.from_("tasks").select("*"), list(tasks))
        parsed = QueryParser().parse(client.from_("tasks").delete().eq("id", 1))
        engine.apply("delete", [{"id": 1}], parsed)
        assert ids(store.get(key)) == [2, 3, 4]

    def test_select_is_rejected(self, engine, client):
        with pytest.raises(ValueError):
            engine.apply("select", [{"id": 1}], client.from_("tasks").select("*"))

    def test_bad_query_is_rejected(self, engine):
        with pytest.raises(TypeError):
            engine.apply("insert", [{"id": 1}], {"table": "tasks"})

    def test_summary(self, engine, client, cache, store, tasks, by_id):
        cache(client.from_("tasks").select("*"), list(tasks))
        cache(client.from_("tasks").select("*").eq("status", "done"), [by_id[3]])
        row = new_task()
        plan = engine.apply("insert", [row], client.from_("tasks").insert(row))
        assert plan.summary() == {"inserted": 1, "unchanged": 1}


class TestRevalidation:
    """Table and relation invalidation after a write."""

    def test_revalidate_tables(self, engine, client, cache, store, tasks):
        notes = cache(client.from_("notes").select("*"), [])
        row = new_task()
        plan = engine.apply("insert", [row], client.from_("tasks").insert(row),
                            revalidate_tables=[("public", "notes")])
        assert store.get(notes) is None
        assert plan.keys(UpdateAction.INVALIDATED) == [notes]

    def test_revalidate_relations(self, engine, client, cache, store):
        first = cache(client.from_("comments").select("*").eq("post_id", 1), [{"id": 10, "post_id": 1}])
        second = cache(client.from_("comments").select("*").eq("post_id", 2), [{"id": 11, "post_id": 2}])
        other = cache(client.from_("comments").select("*").gt("post_id", 0), [])

        row = {"id": 1, "title": "Hello"}
        engine.apply("update", [row], client.from_("posts").update({"title": "Hello"}).eq("id", 1),
                     revalidate_relations=[RelationRevalidation("comments", "id", "post_id")])

        assert store.get(first) is None
        assert store.get(second) is not None
        assert store.get(other) is not None


class TestRowHelpers:
    """find_index_ordered and merge_rows."""

    def test_find_index_ordered(self):
        compare = build_comparator(parse_order("n"))
        rows = [{"n": 1}, {"n": 3}, {"n": 5}]
        assert find_index_ordered(rows, {"n": 0}, compare) == 0
        assert find_index_ordered(rows, {"n": 3}, compare) == 2
        assert find_index_ordered(rows, {"n": 9}, compare) == 3
        assert find_index_ordered([], {"n": 1}, compare) == 0

    def test_find_index_matches_sorted_insert(self):
        compare = build_comparator(parse_order("n.desc"))
        rows = sorted([{"n": v} for v in (4, 8, 1)], key=functools.cmp_to_key(compare))
        assert find_index_ordered(rows, {"n": 5}, compare) == 1

    def test_merge_rows(self):
        old = {"id": 1, "meta": {"a": 1, "b": 2}, "tags": ["x"]}
        merged = merge_rows(old, {"meta": {"b": 3}, "tags": ["y"]})
        assert merged == {"id": 1, "meta": {"a": 1, "b": 3}, "tags": ["y"]}
        assert old["meta"] == {"a": 1, "b": 2}
