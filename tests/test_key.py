"""
Tests for pgcache.query.key: cache key encoding and decoding.
"""

import pytest

from pgcache.errors import NotABuilderError
from pgcache.query import CacheKey, CountMode, QueryParser, decode_key, encode, encode_key, strip_pagination


class TestEncode:
    """Key encoding."""

    def test_segments(self, client):
        key = encode(client.from_("tasks").select("id,title", count="exact")
                     .eq("status", "open").order("created_at", desc=True).range(0, 9))

        assert isinstance(key, CacheKey)
        assert len(key) == 9
        assert key.prefix == "postgrest"
        assert key.pagination == "null"
        assert key.schema == "public"
        assert key.table == "tasks"
        assert key.query == "limit=10&offset=0&order=created_at.desc&select=id,title&status=eq.open"
        assert key.body == "null"
        assert key.count == "count=exact"
        assert key.head == "head=false"
        assert key.order == "created_at:desc.nullsFirst"

    def test_infinite_tag(self, client):
        key = encode(client.from_("tasks").select("*"), is_infinite=True)
        assert key.pagination == "page"
        assert key.is_infinite is True

    def test_same_query_same_key(self, client):
        a = encode(client.from_("tasks").select("*").eq("status", "open").gt("priority", 1))
        b = encode(client.from_("tasks").select("*").gt("priority", 1).eq("status", "open"))
        assert a == b
        assert hash(a) == hash(b)

    def test_different_table_different_key(self, client):
        assert encode(client.from_("tasks").select("*")) != encode(client.from_("notes").select("*"))

    def test_write_has_body_segment(self, client):
        key = encode(client.from_("tasks").insert({"title": "x"}))
        assert key.body == "title=x"

    def test_not_a_builder(self):
        with pytest.raises(NotABuilderError):
            encode(object())

    def test_override_infinite(self, client):
        q = QueryParser().parse(client.from_("tasks").select("*"))
        assert encode_key(q, is_infinite=True).pagination == "page"
        assert encode_key(q).pagination == "null"

    def test_str(self, client):
        key = encode(client.from_("tasks").select("*"))
        assert str(key).startswith("postgrest|null|public|tasks|")


class TestDecode:
    """Key decoding."""

    def test_round_trip(self, client):
        for infinite in (False, True):
            key = encode(client.from_("tasks").select("*", count="planned", head=True).range(20, 39),
                         is_infinite=infinite)
            decoded = decode_key(key)

            assert decoded.key == key
            assert decoded.schema == "public"
            assert decoded.table == "tasks"
            assert decoded.count is CountMode.PLANNED
            assert decoded.is_head is True
            assert decoded.is_infinite is infinite
            assert decoded.limit == 20
            assert decoded.offset == 20
            assert decoded.body_key is None

    def test_plain_list(self, client):
        key = encode(client.from_("tasks").select("*"))
        decoded = decode_key(list(key))
        assert decoded is not None
        assert isinstance(decoded.key, CacheKey)
        assert decoded.key == key

    def test_unbounded_query(self, client):
        decoded = decode_key(encode(client.from_("tasks").select("*")))
        assert decoded.limit is None
        assert decoded.offset is None
        assert decoded.count is CountMode.NONE

    def test_body_segment(self, client):
        decoded = decode_key(encode(client.from_("tasks").insert({"title": "x"})))
        assert decoded.body_key == "title=x"

    @pytest.mark.parametrize("key", [
        "postgrest",
        ("other", "null", "public", "tasks", "", "null", "count=null", "head=false", ""),
        ("postgrest", "null", "public"),
        ("postgrest", "null", "public", "tasks", 1, "null", "count=null", "head=false", ""),
        ("postgrest", "null", "public", "tasks", "", "null", "count=undefined", "head=false", ""),
        {"prefix": "postgrest"},
        None,
    ])
    def test_foreign_keys(self, key):
        assert decode_key(key) is None

    def test_filter_key_drops_pagination(self, client):
        a = decode_key(encode(client.from_("tasks").select("*").eq("status", "open").range(0, 9)))
        b = decode_key(encode(client.from_("tasks").select("*").eq("status", "open").range(10, 19)))
        assert a.key != b.key
        assert a.filter_key == b.filter_key == "select=*&status=eq.open"


class TestStripPagination:
    """Removing limit/offset from query strings."""

    def test_strip(self):
        assert strip_pagination("limit=10&offset=20&select=*&status=eq.open") == "select=*&status=eq.open"

    def test_keeps_referenced_limits(self):
        assert strip_pagination("comments.limit=3&limit=10") == "comments.limit=3"
