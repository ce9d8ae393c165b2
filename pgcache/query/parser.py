"""
Parser for PostgREST query builders.

Turns the recorded state of a query source into a ParsedQuery. The same
parameter parser also re-reads the canonical query string stored in a
cache key, which is how the mutation engine recovers the filters and
order of every cached query.

Example:

    select=id,title,author:profiles(name)
    status=eq.open
    or=(priority.gt.2,pinned.is.true)
    order=created_at.desc.nullslast,id
    limit=20&offset=40
"""

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import parse_qsl, urlencode

from pgcache.constants import DEFAULT_SCHEMA, WRITE_METHODS
from pgcache.errors import MalformedFilterError, NotABuilderError
from pgcache.query.ast import (
    CountMode, Filter, FilterGroup, FilterNode, FilterOp,
    OperationKind, OrderItem, ParsedQuery, SelectedColumn,
)
from pgcache.query.source import QuerySource, is_query_source
from pgcache.query.values import decode_value, encode_value

logger = logging.getLogger(__name__)

_FTS_RE = re.compile(r'^(fts|plfts|phfts|wfts)\((\w+)\)$')
_GROUP_RE = re.compile(r'^(not\.)?(and|or)\((.*)\)$', re.S)
_RESERVED_SUFFIXES = ('order', 'limit', 'offset', 'or', 'and')

# Characters left unescaped in encoded query strings
_SAFE_CHARS = ',.:()*!{}[]'


# =============================================================================
# Low-level splitting
# =============================================================================

def _split_top_level(s: str, sep: str = ',') -> List[str]:
    """
    Split on ``sep`` outside of brackets and double quotes.

    Quotes and escapes are kept so the value decoder sees them.
    """
    parts: List[str] = []
    current: List[str] = []
    depth = 0
    in_quotes = False
    escape = False

    for char in s:
        if escape:
            current.append(char)
            escape = False
            continue
        if char == '\\' and in_quotes:
            current.append(char)
            escape = True
            continue
        if char == '"':
            in_quotes = not in_quotes
        elif not in_quotes:
            if char in '([{':
                depth += 1
            elif char in ')]}':
                depth -= 1
            elif char == sep and depth == 0:
                parts.append(''.join(current))
                current = []
                continue
        current.append(char)

    if current:
        parts.append(''.join(current))
    return parts


# =============================================================================
# Select
# =============================================================================

def parse_select(select: str, prefix: str = '') -> List[SelectedColumn]:
    """
    Parse a select list into column paths.

    Embedded resources keep their dot path (``author.name``); aliases replace
    the name the response uses. Casts and join hints are dropped from the path.
    """
    columns: List[SelectedColumn] = []
    for raw in _split_top_level(select):
        item = raw.strip()
        if not item:
            continue

        paren = item.find('(')
        if paren != -1 and item.endswith(')'):
            head = item[:paren]
            inner = item[paren + 1:-1]
            spread = head.startswith('...')
            if spread:
                head = head[3:]
            alias, _, relation = head.rpartition(':')
            relation = relation.split('!')[0]
            name = alias or relation
            child_prefix = prefix if spread else f"{prefix}{name}."
            for child in parse_select(inner, child_prefix):
                columns.append(SelectedColumn(path=child.path, alias=child.alias, declaration=item))
            continue

        # alias:column::cast
        base = item.split('::')[0]
        alias, _, column = base.rpartition(':')
        output = column
        if '->' in column:
            output = re.split(r'->>?', column)[-1]
        name = alias or output
        columns.append(SelectedColumn(path=f"{prefix}{name}", alias=alias or None, declaration=item))

    return columns


# =============================================================================
# Order
# =============================================================================

def parse_order(value: str, referenced_table: Optional[str] = None) -> List[OrderItem]:
    """
    Parse an order parameter such as ``created_at.desc.nullslast,author(name).asc``.
    """
    items: List[OrderItem] = []
    for raw in _split_top_level(value):
        spec = raw.strip()
        if not spec:
            continue

        close = spec.rfind(')')
        split_at = spec.find('.', close + 1 if close != -1 else 0)
        if split_at == -1:
            column, modifiers = spec, []
        else:
            column, modifiers = spec[:split_at], spec[split_at + 1:].split('.')

        if '(' in column and column.endswith(')'):
            relation, _, inner = column[:-1].partition('(')
            column = f"{relation}.{inner}"

        ascending = True
        nulls_first: Optional[bool] = None
        for mod in modifiers:
            mod = mod.lower()
            if mod == 'asc':
                ascending = True
            elif mod == 'desc':
                ascending = False
            elif mod == 'nullsfirst':
                nulls_first = True
            elif mod == 'nullslast':
                nulls_first = False
            else:
                raise MalformedFilterError(f"Invalid order modifier '{mod}' in {value}", column=column)

        items.append(OrderItem(column=column, ascending=ascending,
                               nulls_first=nulls_first, referenced_table=referenced_table))
    return items


# =============================================================================
# Filters
# =============================================================================

def parse_filter(column: str, expression: str) -> Filter:
    """
    Parse one filter parameter value, e.g. ``not.in.(1,2)`` for ``column``.

    Raises:
        MalformedFilterError: unknown operator or a value that does not fit it
    """
    negate = False
    rest = expression
    if rest.startswith('not.'):
        negate = True
        rest = rest[4:]

    token, dot, raw_value = rest.partition('.')
    if not dot:
        raise MalformedFilterError(f"Filter on {column} has no operator: {expression}", column=column)

    config = None
    fts = _FTS_RE.match(token)
    if fts:
        token, config = fts.group(1), fts.group(2)

    try:
        op = FilterOp(token)
    except ValueError:
        raise MalformedFilterError(f"Unknown operator '{token}' in filter on {column}",
                                   column=column, operator=token)

    return Filter(column=column, op=op, value=decode_value(raw_value, op), negate=negate, config=config)


def parse_logic_tree(op: str, inner: str, negate: bool = False, prefix: str = '') -> FilterGroup:
    """
    Parse the body of an ``or=(...)`` / ``and=(...)`` parameter.
    """
    body = inner.strip()
    if body.startswith('(') and body.endswith(')'):
        body = body[1:-1]

    nodes: List[FilterNode] = []
    for raw in _split_top_level(body):
        item = raw.strip()
        if not item:
            continue
        group = _GROUP_RE.match(item)
        if group:
            nodes.append(parse_logic_tree(group.group(2), group.group(3),
                                          negate=bool(group.group(1)), prefix=prefix))
            continue
        column, dot, expression = item.partition('.')
        if not dot:
            raise MalformedFilterError(f"Invalid logical filter item: {item}")
        nodes.append(parse_filter(f"{prefix}{column}", expression))

    return FilterGroup(op=op, filters=nodes, negate=negate)


# =============================================================================
# Query string
# =============================================================================

@dataclass(frozen=True)
class ParsedParams:
    """Directives recovered from a list of query parameters."""
    select: List[SelectedColumn] = field(default_factory=list)
    filters: List[FilterNode] = field(default_factory=list)
    order: List[OrderItem] = field(default_factory=list)
    limit: Optional[int] = None
    offset: Optional[int] = None
    on_conflict: Optional[List[str]] = None
    referenced_limits: Dict[str, int] = field(default_factory=dict)


def _to_int(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise MalformedFilterError(f"'{name}' must be an integer, got {value!r}", column=name, value=value)


def parse_params(params: Sequence[Tuple[str, str]]) -> ParsedParams:
    """Classify query parameters into select, filters, order and pagination."""
    select: List[SelectedColumn] = []
    filters: List[FilterNode] = []
    order: List[OrderItem] = []
    limit = None
    offset = None
    on_conflict = None
    referenced_limits: Dict[str, int] = {}

    for name, value in params:
        negated = name.startswith('not.')
        base = name[4:] if negated else name
        relation, _, suffix = base.rpartition('.')

        if name == 'select':
            select = parse_select(value)
        elif name == 'order':
            order.extend(parse_order(value))
        elif name == 'limit':
            limit = _to_int(name, value)
        elif name == 'offset':
            offset = _to_int(name, value)
        elif name == 'on_conflict':
            on_conflict = [c.strip() for c in value.split(',') if c.strip()]
        elif name == 'columns':
            continue
        elif base in ('or', 'and'):
            filters.append(parse_logic_tree(base, value, negate=negated))
        elif relation and suffix in ('or', 'and'):
            filters.append(parse_logic_tree(suffix, value, negate=negated, prefix=f"{relation}."))
        elif relation and suffix == 'order':
            order.extend(parse_order(value, referenced_table=relation))
        elif relation and suffix in ('limit', 'offset'):
            if suffix == 'limit':
                referenced_limits[relation] = _to_int(name, value)
        else:
            filters.append(parse_filter(name, value))

    return ParsedParams(
        select=select,
        filters=filters,
        order=order,
        limit=limit,
        offset=offset,
        on_conflict=on_conflict,
        referenced_limits=referenced_limits,
    )


@lru_cache(maxsize=1024)
def parse_query_string(query_string: str) -> ParsedParams:
    """
    Parse an encoded query string (memoized).

    Used to recover filters and order from a cache key's query segment.
    """
    return parse_params(parse_qsl(query_string, keep_blank_values=True))


def encode_query_string(params: Sequence[Tuple[str, str]]) -> str:
    """
    Encode parameters canonically.

    Parameters are stable-sorted by name, so repeated filters on one column
    keep their relative order.
    """
    return urlencode(sorted(params, key=lambda p: p[0]), safe=_SAFE_CHARS)


def _flatten(obj: Any, prefix: str = '') -> List[Tuple[str, str]]:
    if isinstance(obj, dict):
        pairs: List[Tuple[str, str]] = []
        for key, value in obj.items():
            pairs.extend(_flatten(value, f"{prefix}.{key}" if prefix else str(key)))
        return pairs
    if isinstance(obj, (list, tuple)):
        pairs = []
        for i, value in enumerate(obj):
            pairs.extend(_flatten(value, f"{prefix}.{i}" if prefix else str(i)))
        return pairs
    return [(prefix, encode_value(obj))]


def encode_body(body: Any) -> Optional[str]:
    """Encode a request body as a sorted, flattened query string."""
    if body is None:
        return None
    return urlencode(sorted(_flatten(body)), safe=_SAFE_CHARS)


# =============================================================================
# Query Parser
# =============================================================================

def _parse_prefer(header: Optional[str]) -> Dict[str, str]:
    prefs: Dict[str, str] = {}
    if not header:
        return prefs
    for part in header.split(','):
        key, _, value = part.strip().partition('=')
        if key:
            prefs[key.strip()] = value.strip()
    return prefs


class QueryParser:
    """
    Parser for query sources.

    Converts a builder's recorded state into a ParsedQuery.
    """

    def __init__(self, default_schema: str = DEFAULT_SCHEMA):
        """
        Initialize parser.

        Args:
            default_schema: Schema assumed when the source names none
        """
        self.default_schema = default_schema

    def parse(self, source: Any, is_infinite: bool = False) -> ParsedQuery:
        """
        Parse a query source.

        Args:
            source: Object implementing QuerySource
            is_infinite: Whether the query backs an infinite (paged) cache entry

        Returns:
            Parsed Query object

        Raises:
            NotABuilderError: if ``source`` is not a query source
            MalformedFilterError: if any filter is malformed
        """
        if not is_query_source(source):
            raise NotABuilderError(source)

        method = (source.method or 'GET').upper()
        headers = {k.lower(): v for k, v in (source.headers or {}).items()}
        prefer = _parse_prefer(headers.get('prefer'))
        params = list(source.params or [])
        parsed = parse_params(params)

        operation = self._operation(method, prefer)
        schema = (source.schema
                  or headers.get('accept-profile')
                  or headers.get('content-profile')
                  or self.default_schema)

        body = source.body if method in WRITE_METHODS else None
        query = ParsedQuery(
            schema=schema,
            table=source.table,
            select=parsed.select,
            filters=parsed.filters,
            order=parsed.order,
            limit=parsed.limit,
            offset=parsed.offset,
            count=CountMode.from_string(prefer.get('count')),
            head=method == 'HEAD',
            body=body,
            operation=operation,
            on_conflict=parsed.on_conflict,
            ignore_duplicates=prefer.get('resolution') == 'ignore-duplicates',
            single='vnd.pgrst.object' in headers.get('accept', ''),
            is_infinite=is_infinite,
            method=method,
            query_string=encode_query_string(params),
            body_key=encode_body(body),
        )
        logger.debug(f"Parsed {query!r}")
        return query

    @staticmethod
    def _operation(method: str, prefer: Dict[str, str]) -> OperationKind:
        if method in ('GET', 'HEAD'):
            return OperationKind.SELECT
        if method == 'POST':
            if prefer.get('resolution') in ('merge-duplicates', 'ignore-duplicates'):
                return OperationKind.UPSERT
            return OperationKind.INSERT
        if method == 'PUT':
            return OperationKind.UPSERT
        if method == 'PATCH':
            return OperationKind.UPDATE
        if method == 'DELETE':
            return OperationKind.DELETE
        raise ValueError(f"Unsupported HTTP method: {method}")


def parse_query(source: QuerySource, is_infinite: bool = False) -> ParsedQuery:
    """
    Parse a single query source.

    Convenience function that creates a parser and parses.
    """
    return QueryParser().parse(source, is_infinite=is_infinite)
