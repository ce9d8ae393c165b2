"""
Cache mutation engine.

Applies the rows returned by a write (insert, update, upsert, delete) to
every cached query over the same table, so cached results stay correct
without a refetch:

- insert: a row enters every cached query whose filters it satisfies, at
  its sorted position; bounded pages drop their last row to keep size.
- update/upsert: the cached copy (found by identity) is merged with the
  new values, then re-sorted, or removed if it no longer matches.
- delete: rows are removed by identity, regardless of filters.

Filters and order of each cached query are recovered from its key's query
segment. The engine only writes through the store's ``mutate``/``delete``
and never touches the network.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from pgcache.constants import DEFAULT_IDENTITY_COLUMN
from pgcache.errors import MalformedFilterError
from pgcache.query.ast import Filter, FilterNode, FilterOp, OperationKind, ParsedQuery
from pgcache.query.filters import FilterEvaluator, build_comparator, get_path, has_path
from pgcache.query.key import CacheKey, DecodedKey, decode_key, encode_key
from pgcache.query.parser import QueryParser, parse_query_string
from pgcache.query.source import is_query_source
from pgcache.results import CachedValue, InfiniteResponse, QueryResponse
from pgcache.store import CacheStore

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
Comparator = Callable[[Row, Row], int]


# =============================================================================
# Plan
# =============================================================================

class UpdateAction(Enum):
    """What a mutation did to one cache entry."""
    INSERTED = "inserted"
    UPDATED = "updated"
    REMOVED = "removed"
    UNCHANGED = "unchanged"
    INVALIDATED = "invalidated"


@dataclass
class CacheUpdate:
    """One cache entry touched by a mutation."""
    key: CacheKey
    action: UpdateAction
    before: Optional[CachedValue] = None
    after: Optional[CachedValue] = None


@dataclass
class CacheUpdatePlan:
    """
    Result of applying one mutation.

    Lists every cache entry over the mutated table, including the ones the
    mutation left unchanged.
    """
    kind: OperationKind
    schema: str
    table: str
    identity: Optional[List[str]] = None
    updates: List[CacheUpdate] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.updates)

    def __iter__(self) -> Iterator[CacheUpdate]:
        return iter(self.updates)

    @property
    def changed(self) -> List[CacheUpdate]:
        return [u for u in self.updates if u.action is not UpdateAction.UNCHANGED]

    def keys(self, action: Optional[UpdateAction] = None) -> List[CacheKey]:
        return [u.key for u in self.updates if action is None or u.action is action]

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for update in self.updates:
            counts[update.action.value] = counts.get(update.action.value, 0) + 1
        return counts


@dataclass(frozen=True)
class RelationRevalidation:
    """
    Invalidate cached queries over a related table.

    After a write to ``posts``, ``RelationRevalidation('comments', 'id',
    'post_id')`` drops every cached ``comments`` query filtered with
    ``post_id=eq.<row id>``.
    """
    relation: str
    relation_id_column: str
    fkey_column: str
    schema: Optional[str] = None


# =============================================================================
# Row helpers
# =============================================================================

def find_index_ordered(rows: Sequence[Row], row: Row, comparator: Comparator) -> int:
    """
    Position at which ``row`` keeps ``rows`` sorted.

    Binary search; a row equal to existing rows goes after them.
    """
    lo, hi = 0, len(rows)
    while lo < hi:
        mid = (lo + hi) // 2
        if comparator(row, rows[mid]) < 0:
            hi = mid
        else:
            lo = mid + 1
    return lo


def merge_rows(old: Row, new: Row) -> Row:
    """Overlay ``new`` on ``old``; nested objects are merged, not replaced."""
    merged = dict(old)
    for key, value in new.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_rows(merged[key], value)
        else:
            merged[key] = value
    return merged


def _summarize(events: List[UpdateAction]) -> UpdateAction:
    if not events:
        return UpdateAction.UNCHANGED
    if len(set(events)) == 1:
        return events[0]
    return UpdateAction.UPDATED


def _chunk(rows: List[Row], page_size: int, page_count: int) -> List[List[Row]]:
    pages = [rows[i:i + page_size] for i in range(0, page_size * page_count, page_size)]
    while len(pages) > 1 and not pages[-1]:
        pages.pop()
    return pages


class _Invalidate(Exception):
    """Raised inside an updater when an entry cannot be patched locally."""


# =============================================================================
# Mutation Engine
# =============================================================================

class MutationEngine:
    """
    Applies write results to cached query results.

    Args:
        store: Cache store holding the query results
        config: Optional CacheConfig (identity columns, default schema)
        evaluator: Filter evaluator (a default one is created)
    """

    def __init__(self, store: CacheStore, config: Any = None,
                 evaluator: Optional[FilterEvaluator] = None):
        self.store = store
        self.config = config
        self.evaluator = evaluator or FilterEvaluator()
        self.parser = QueryParser(config.schema) if config is not None else QueryParser()

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    def identity_columns(self, schema: str, table: str, rows: Sequence[Row],
                         primary_keys: Optional[Sequence[str]] = None) -> Optional[List[str]]:
        """
        Resolve the columns that identify a row of ``schema.table``.

        Explicit ``primary_keys`` win, then configured keys, then ``id`` when
        every row carries it. None means rows are matched by deep equality.
        """
        if primary_keys:
            return list(primary_keys)
        if self.config is not None:
            configured = self.config.identity_columns(schema, table)
            if configured:
                return list(configured)
        infer = self.config.infer_identity if self.config is not None else True
        if infer and rows and all(isinstance(r, dict) and DEFAULT_IDENTITY_COLUMN in r for r in rows):
            logger.debug(f"Inferred identity column '{DEFAULT_IDENTITY_COLUMN}' for {schema}.{table}")
            return [DEFAULT_IDENTITY_COLUMN]
        logger.warning(f"No identity columns for {schema}.{table}; matching rows by deep equality")
        return None

    @staticmethod
    def same_row(cached: Row, row: Row, identity: Optional[List[str]]) -> bool:
        """Check whether ``cached`` is the cached copy of ``row``."""
        if not isinstance(cached, dict) or not isinstance(row, dict):
            return False
        if identity is None or not all(has_path(row, c) for c in identity):
            return cached == row
        return all(has_path(cached, c) and get_path(cached, c) == get_path(row, c) for c in identity)

    def _find(self, rows: Sequence[Row], row: Row, identity: Optional[List[str]]) -> Optional[int]:
        for i, cached in enumerate(rows):
            if self.same_row(cached, row, identity):
                return i
        return None

    # -------------------------------------------------------------------------
    # Apply
    # -------------------------------------------------------------------------

    def apply(self, kind: Any, rows: Sequence[Row], query: Any,
              primary_keys: Optional[Sequence[str]] = None,
              revalidate_tables: Optional[Sequence[Tuple[str, str]]] = None,
              revalidate_relations: Optional[Sequence[RelationRevalidation]] = None) -> CacheUpdatePlan:
        """
        Apply affected rows to every cached query over the query's table.

        Args:
            kind: OperationKind (or its value, e.g. ``"insert"``)
            rows: Rows returned by the write (or identity values for deletes)
            query: The write's ParsedQuery or query source
            primary_keys: Identity columns, overriding configuration
            revalidate_tables: ``(schema, table)`` pairs to invalidate afterwards
            revalidate_relations: Related-table invalidations

        Returns:
            CacheUpdatePlan describing every entry over the table
        """
        if not isinstance(kind, OperationKind):
            kind = OperationKind(kind)
        if kind is OperationKind.SELECT:
            raise ValueError("Cannot apply a select as a mutation")
        if is_query_source(query):
            query = self.parser.parse(query)
        if not isinstance(query, ParsedQuery):
            raise TypeError(f"Expected a ParsedQuery or query source, got {type(query).__name__}")

        rows = [r for r in (rows or []) if isinstance(r, dict)]
        identity = self.identity_columns(query.schema, query.table, rows, primary_keys)
        plan = CacheUpdatePlan(kind=kind, schema=query.schema, table=query.table, identity=identity)

        if rows:
            origin = encode_key(query)
            keys = self.store.find_keys(
                lambda d: d.schema == query.schema and d.table == query.table,
                schema=query.schema, table=query.table,
            )
            for key in keys:
                if key == origin:
                    continue
                update = self._apply_to_key(kind, rows, key, identity)
                if update is not None:
                    plan.updates.append(update)

        for schema, table in revalidate_tables or []:
            self._invalidate_into(plan, lambda d, s=schema, t=table: d.schema == s and d.table == t,
                                  schema, table)

        for relation in revalidate_relations or []:
            self._revalidate_relation(plan, relation, rows, query.schema)

        logger.info(f"Applied {kind.value} of {len(rows)} row(s) to {query.schema}.{query.table}: "
                    f"{plan.summary() or 'no cached queries'}")
        return plan

    def _invalidate_into(self, plan: CacheUpdatePlan, predicate: Callable[[DecodedKey], bool],
                         schema: Optional[str], table: Optional[str]) -> None:
        for key in self.store.find_keys(predicate, schema=schema, table=table):
            before = self.store.get(key)
            if self.store.delete(key):
                plan.updates.append(CacheUpdate(key, UpdateAction.INVALIDATED, before=before))

    def _revalidate_relation(self, plan: CacheUpdatePlan, relation: RelationRevalidation,
                             rows: Sequence[Row], default_schema: str) -> None:
        schema = relation.schema or default_schema
        ids = {str(row[relation.relation_id_column]) for row in rows
               if row.get(relation.relation_id_column) is not None}
        if not ids:
            return

        def references(decoded: DecodedKey) -> bool:
            if decoded.schema != schema or decoded.table != relation.relation:
                return False
            filters = self._filters_for(decoded)
            if filters is None:
                return False
            return any(isinstance(f, Filter) and f.column == relation.fkey_column
                       and f.op is FilterOp.EQ and not f.negate and str(f.value) in ids
                       for f in filters)

        self._invalidate_into(plan, references, schema, relation.relation)

    @staticmethod
    def _filters_for(decoded: DecodedKey) -> Optional[List[FilterNode]]:
        try:
            return parse_query_string(decoded.query_string).filters
        except MalformedFilterError as e:
            logger.debug(f"Skipping key with unparseable query {decoded.query_string!r}: {e}")
            return None

    def _apply_to_key(self, kind: OperationKind, rows: Sequence[Row], key: CacheKey,
                      identity: Optional[List[str]]) -> Optional[CacheUpdate]:
        decoded = decode_key(key)
        if decoded is None or decoded.body_key is not None:
            return None

        try:
            params = parse_query_string(decoded.query_string)
        except MalformedFilterError as e:
            logger.debug(f"Leaving {decoded.table} entry untouched, cannot parse its query: {e}")
            return None

        comparator = build_comparator(params.order)
        outcome: Dict[str, Any] = {'action': UpdateAction.UNCHANGED, 'before': None}

        def updater(value: CachedValue) -> Optional[CachedValue]:
            outcome['before'] = value
            try:
                new_value, action = self._mutate_value(kind, rows, value, decoded, params.filters,
                                                       comparator, identity)
            except _Invalidate as e:
                logger.warning(f"Invalidating {decoded.schema}.{decoded.table} entry: {e}")
                outcome['action'] = UpdateAction.INVALIDATED
                return None
            outcome['action'] = action
            return new_value

        after = self.store.mutate(decoded.key, updater)
        if outcome['before'] is None:
            return None
        logger.debug(f"{kind.value} -> {outcome['action'].value}: {decoded.key.query or '<all rows>'}")
        return CacheUpdate(decoded.key, outcome['action'], before=outcome['before'], after=after)

    # -------------------------------------------------------------------------
    # Value updates
    # -------------------------------------------------------------------------

    def _mutate_value(self, kind: OperationKind, rows: Sequence[Row], value: CachedValue,
                      decoded: DecodedKey, filters: List[FilterNode], comparator: Comparator,
                      identity: Optional[List[str]]) -> Tuple[CachedValue, UpdateAction]:
        if isinstance(value, InfiniteResponse):
            return self._mutate_infinite(kind, rows, value, filters, comparator, identity)
        if not isinstance(value, QueryResponse):
            logger.debug(f"Unknown cached value type {type(value).__name__}, leaving it untouched")
            return value, UpdateAction.UNCHANGED
        if decoded.is_head:
            return self._mutate_head(kind, rows, value, filters)
        if value.is_single:
            return self._mutate_single(kind, rows, value, filters, identity)
        if value.data is None:
            return value, UpdateAction.UNCHANGED

        new_rows, action, delta = self.mutate_rows(
            kind, value.data, rows, filters, comparator, identity,
            limit=decoded.limit, offset=decoded.offset,
        )
        if action is UpdateAction.UNCHANGED:
            return value, action
        count = value.count
        if count is not None:
            count = max(0, count + delta)
        return QueryResponse(data=new_rows, count=count, status=value.status), action

    def mutate_rows(self, kind: OperationKind, cached: Sequence[Row], rows: Sequence[Row],
                    filters: List[FilterNode], comparator: Comparator,
                    identity: Optional[List[str]], limit: Optional[int] = None,
                    offset: Optional[int] = None) -> Tuple[List[Row], UpdateAction, int]:
        """
        Apply affected rows to one cached row list.

        Returns the new list, the resulting action and the change in the
        number of matching rows.
        """
        result = list(cached)
        events: List[UpdateAction] = []
        delta = 0

        for row in rows:
            index = self._find(result, row, identity)

            if kind is OperationKind.DELETE:
                if index is not None:
                    result.pop(index)
                    delta -= 1
                    events.append(UpdateAction.REMOVED)
                continue

            if index is not None:
                candidate = merge_rows(result.pop(index), row)
                if self.evaluator.matches(candidate, filters):
                    self._insert_sorted(result, candidate, comparator, offset, in_window=True)
                    events.append(UpdateAction.UPDATED)
                else:
                    delta -= 1
                    events.append(UpdateAction.REMOVED)
                continue

            if not self.evaluator.matches(row, filters):
                continue
            self._insert_sorted(result, dict(row), comparator, offset)
            delta += 1
            events.append(UpdateAction.INSERTED)

        if limit is not None and len(result) > limit:
            result = result[:limit]
        return result, _summarize(events), delta

    @staticmethod
    def _insert_sorted(rows: List[Row], row: Row, comparator: Comparator, offset: Optional[int],
                       in_window: bool = False) -> None:
        # A row already on the page may stay first; a new row there belongs to an earlier page
        position = find_index_ordered(rows, row, comparator)
        if offset and position == 0 and not in_window:
            raise _Invalidate(f"row would open a window starting at offset {offset}")
        rows.insert(position, row)

    def _mutate_head(self, kind: OperationKind, rows: Sequence[Row], value: QueryResponse,
                     filters: List[FilterNode]) -> Tuple[CachedValue, UpdateAction]:
        if kind in (OperationKind.UPDATE, OperationKind.UPSERT):
            raise _Invalidate("count-only entry cannot tell whether an update changed membership")
        if value.count is None:
            return value, UpdateAction.UNCHANGED
        matching = sum(1 for row in rows if self.evaluator.matches(row, filters))
        if not matching:
            return value, UpdateAction.UNCHANGED
        if kind is OperationKind.INSERT:
            return QueryResponse(data=value.data, count=value.count + matching,
                                 status=value.status), UpdateAction.INSERTED
        return QueryResponse(data=value.data, count=max(0, value.count - matching),
                             status=value.status), UpdateAction.REMOVED

    def _mutate_single(self, kind: OperationKind, rows: Sequence[Row], value: QueryResponse,
                       filters: List[FilterNode],
                       identity: Optional[List[str]]) -> Tuple[CachedValue, UpdateAction]:
        if kind is OperationKind.INSERT:
            return value, UpdateAction.UNCHANGED
        for row in rows:
            if not self.same_row(value.data, row, identity):
                continue
            if kind is OperationKind.DELETE:
                return QueryResponse(data=None, count=value.count, status=value.status), UpdateAction.REMOVED
            merged = merge_rows(value.data, row)
            if self.evaluator.matches(merged, filters):
                return QueryResponse(data=merged, count=value.count, status=value.status), UpdateAction.UPDATED
            return QueryResponse(data=None, count=value.count, status=value.status), UpdateAction.REMOVED
        return value, UpdateAction.UNCHANGED

    def _mutate_infinite(self, kind: OperationKind, rows: Sequence[Row], value: InfiniteResponse,
                         filters: List[FilterNode], comparator: Comparator,
                         identity: Optional[List[str]]) -> Tuple[CachedValue, UpdateAction]:
        if not value.pages:
            return value, UpdateAction.UNCHANGED
        page_size = value.page_size or max(len(p) for p in value.pages) or 1
        flat, action, _ = self.mutate_rows(kind, value.rows, rows, filters, comparator, identity)
        if action is UpdateAction.UNCHANGED:
            return value, action
        pages = _chunk(flat, page_size, len(value.pages))
        return InfiniteResponse(
            pages=pages,
            page_params=list(value.page_params[:len(pages)]),
            page_size=value.page_size,
            has_more=value.has_more,
        ), action
