"""
pgcache - PostgREST query cache

Keeps locally cached PostgREST query results in sync with writes, without
refetching:

- Parses query builders into a canonical form and derives stable cache keys
- Evaluates PostgREST filters and ordering locally
- Applies inserted, updated, upserted and deleted rows to every cached
  query over the same table, respecting filters, order and page windows

Example Usage:
    >>> from pgcache import PostgrestClient, MemoryStore, QueryFetcher, InsertFetcher
    >>> client = PostgrestClient("http://localhost:3000")
    >>> store = MemoryStore()
    >>> open_tasks = client.from_("tasks").select("*").eq("status", "open").order("id")
    >>> QueryFetcher(store).fetch(open_tasks)
    >>> InsertFetcher(store, primary_keys=["id"])(client.from_("tasks"), {"title": "New", "status": "open"})
"""

__version__ = "0.1.0"

# Errors
from pgcache.errors import PgCacheError, NotABuilderError, MalformedFilterError, PostgrestError

# Configuration
from pgcache.config import CacheConfig, get_config, init_config

# Query layer
from pgcache.query import (
    QueryParser,
    ParsedQuery,
    QuerySource,
    ExecutableQuery,
    RecordedQuery,
    CacheKey,
    DecodedKey,
    KeyFamily,
    KEY_FAMILY,
    encode,
    encode_key,
    decode_key,
    matches,
    build_comparator,
)

# Cached values and stores
from pgcache.results import QueryResponse, InfiniteResponse, result_from_dict
from pgcache.store import CacheStore, MemoryStore, SqlStore, create_store

# Mutation engine
from pgcache.mutate import (
    MutationEngine,
    CacheUpdate,
    CacheUpdatePlan,
    UpdateAction,
    RelationRevalidation,
    find_index_ordered,
    merge_rows,
)

# Fetchers
from pgcache.fetchers import (
    QueryFetcher,
    InsertFetcher,
    UpdateFetcher,
    UpsertFetcher,
    DeleteFetcher,
)
from pgcache.pagination import PageDescriptor, OffsetPaginationFetcher, CursorPaginationFetcher

# Reference client
from pgcache.client import PostgrestClient, PostgrestBuilder, PostgrestResponse, RequestsTransport

__all__ = [
    # Version
    "__version__",

    # Errors
    "PgCacheError",
    "NotABuilderError",
    "MalformedFilterError",
    "PostgrestError",

    # Configuration
    "CacheConfig",
    "get_config",
    "init_config",

    # Query layer
    "QueryParser",
    "ParsedQuery",
    "QuerySource",
    "ExecutableQuery",
    "RecordedQuery",
    "CacheKey",
    "DecodedKey",
    "KeyFamily",
    "KEY_FAMILY",
    "encode",
    "encode_key",
    "decode_key",
    "matches",
    "build_comparator",

    # Values and stores
    "QueryResponse",
    "InfiniteResponse",
    "result_from_dict",
    "CacheStore",
    "MemoryStore",
    "SqlStore",
    "create_store",

    # Mutation
    "MutationEngine",
    "CacheUpdate",
    "CacheUpdatePlan",
    "UpdateAction",
    "RelationRevalidation",
    "find_index_ordered",
    "merge_rows",

    # Fetchers
    "QueryFetcher",
    "InsertFetcher",
    "UpdateFetcher",
    "UpsertFetcher",
    "DeleteFetcher",
    "PageDescriptor",
    "OffsetPaginationFetcher",
    "CursorPaginationFetcher",

    # Client
    "PostgrestClient",
    "PostgrestBuilder",
    "PostgrestResponse",
    "RequestsTransport",
]
