"""
Cache-aware fetchers.

QueryFetcher reads through the cache. The mutation fetchers perform a
write, then hand the returned rows to the MutationEngine so every cached
query over the table reflects the write without refetching.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pgcache.query.ast import OperationKind
from pgcache.query.filters import get_path
from pgcache.query.key import CacheKey, encode_key
from pgcache.query.parser import QueryParser
from pgcache.query.source import ExecutableQuery
from pgcache.query.values import encode_value
from pgcache.mutate import CacheUpdatePlan, MutationEngine, RelationRevalidation
from pgcache.results import QueryResponse
from pgcache.store import CacheStore

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


def _as_rows(data: Any) -> List[Row]:
    if data is None:
        return []
    if isinstance(data, dict):
        return [data]
    return [r for r in data if isinstance(r, dict)]


# =============================================================================
# Query fetcher
# =============================================================================

class QueryFetcher:
    """Reads query results through the cache."""

    def __init__(self, store: CacheStore, parser: Optional[QueryParser] = None):
        self.store = store
        self.parser = parser or QueryParser()

    def key(self, query: ExecutableQuery) -> CacheKey:
        return encode_key(self.parser.parse(query))

    def fetch(self, query: ExecutableQuery) -> QueryResponse:
        """Return the cached result, executing the query on a miss."""
        key = self.key(query)
        cached = self.store.get(key)
        if cached is not None:
            logger.debug(f"Cache hit for {key.table}: {key.query}")
            return cached
        return self._execute(key, query)

    def refetch(self, query: ExecutableQuery) -> QueryResponse:
        """Execute the query and replace the cached result."""
        return self._execute(self.key(query), query)

    def _execute(self, key: CacheKey, query: ExecutableQuery) -> QueryResponse:
        result = query.execute().to_result()
        self.store.set(key, result)
        logger.info(f"Fetched {len(result)} row(s) from {key.schema}.{key.table}")
        return result


# =============================================================================
# Mutation fetchers
# =============================================================================

class MutationFetcher(ABC):
    """
    Performs one kind of write and applies its result to the cache.

    Args:
        store: Cache store
        engine: Mutation engine (one is created over ``store`` otherwise)
        returning: Columns to return from the write (all columns by default)
        primary_keys: Identity columns of the table
        revalidate_tables: ``(schema, table)`` pairs invalidated after the write
        revalidate_relations: Related-table invalidations
    """

    kind: OperationKind

    def __init__(self, store: CacheStore, engine: Optional[MutationEngine] = None,
                 returning: Optional[Sequence[str]] = None,
                 primary_keys: Optional[Sequence[str]] = None,
                 revalidate_tables: Optional[Sequence[Tuple[str, str]]] = None,
                 revalidate_relations: Optional[Sequence[RelationRevalidation]] = None):
        self.store = store
        self.engine = engine or MutationEngine(store)
        self.returning = list(returning) if returning else ['*']
        self.primary_keys = list(primary_keys) if primary_keys else None
        self.revalidate_tables = revalidate_tables
        self.revalidate_relations = revalidate_relations
        self.last_plan: Optional[CacheUpdatePlan] = None

    @abstractmethod
    def prepare(self, query: ExecutableQuery, payload: Any) -> ExecutableQuery:
        """Turn a table query into the write request."""
        pass

    def fallback_rows(self, payload: Any) -> List[Row]:
        """Rows to apply when the write returned none."""
        return []

    def __call__(self, query: ExecutableQuery, payload: Any = None) -> List[Row]:
        """
        Perform the write and update the cache.

        Returns:
            Rows returned by the server
        """
        builder = self.prepare(query, payload).select(','.join(self.returning))
        parsed = self.engine.parser.parse(builder)
        response = builder.execute()

        rows = _as_rows(response.data)
        affected = rows or self.fallback_rows(payload)
        self.last_plan = self.engine.apply(
            self.kind, affected, parsed,
            primary_keys=self.primary_keys,
            revalidate_tables=self.revalidate_tables,
            revalidate_relations=self.revalidate_relations,
        )
        return rows

    def _require_keys(self) -> List[str]:
        if not self.primary_keys:
            raise ValueError(f"{type(self).__name__} needs primary_keys")
        return self.primary_keys

    def _identity_filter(self, query: ExecutableQuery, row: Row) -> ExecutableQuery:
        for column in self._require_keys():
            value = get_path(row, column)
            if value is None:
                raise ValueError(f"Missing primary key '{column}' in {row!r}")
            query = query.eq(column, value)
        return query


class InsertFetcher(MutationFetcher):
    """Inserts one row or a list of rows."""

    kind = OperationKind.INSERT

    def prepare(self, query: ExecutableQuery, payload: Any) -> ExecutableQuery:
        return query.insert(payload)


class UpsertFetcher(MutationFetcher):
    """Inserts rows, updating those whose primary key already exists."""

    kind = OperationKind.UPSERT

    def prepare(self, query: ExecutableQuery, payload: Any) -> ExecutableQuery:
        on_conflict = ','.join(self.primary_keys) if self.primary_keys else None
        return query.upsert(payload, on_conflict=on_conflict)


class UpdateFetcher(MutationFetcher):
    """
    Updates one row identified by its primary key values in ``payload``.

    The remaining payload columns are the new values.
    """

    kind = OperationKind.UPDATE

    def prepare(self, query: ExecutableQuery, payload: Any) -> ExecutableQuery:
        keys = self._require_keys()
        values = {k: v for k, v in payload.items() if k not in keys}
        return self._identity_filter(query.update(values), payload)

    def fallback_rows(self, payload: Any) -> List[Row]:
        return [payload]


class DeleteFetcher(MutationFetcher):
    """
    Deletes rows identified by primary key values.

    ``payload`` is one identity dict or a list of them. When the server
    returns no rows, the payload itself is applied to the cache.
    """

    kind = OperationKind.DELETE

    def prepare(self, query: ExecutableQuery, payload: Any) -> ExecutableQuery:
        keys = self._require_keys()
        rows = _as_rows(payload)
        if not rows:
            raise ValueError("DeleteFetcher needs at least one row identity")

        builder = query.delete()
        if len(rows) == 1:
            return self._identity_filter(builder, rows[0])
        if len(keys) == 1:
            return builder.in_(keys[0], [row[keys[0]] for row in rows])
        clauses = [
            "and(" + ",".join(f"{k}.eq.{encode_value(row[k])}" for k in keys) + ")"
            for row in rows
        ]
        return builder.or_(",".join(clauses))

    def fallback_rows(self, payload: Any) -> List[Row]:
        return _as_rows(payload)
