"""
Minimal PostgREST client.

A fluent, copy-on-write query builder plus a requests-based transport.
The builder records its state as PostgREST query parameters and headers,
which is exactly what the query parser reads, so any builder from this
module can be parsed, keyed and cached.

    client = PostgrestClient('http://localhost:3000', api_key='...')
    tasks = (client.from_('tasks')
             .select('id,title,status', count='exact')
             .eq('status', 'open')
             .order('created_at', desc=True)
             .range(0, 19)
             .execute())
"""

import copy as _copy
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import requests

from pgcache.constants import DEFAULT_REQUEST_TIMEOUT, DEFAULT_SCHEMA
from pgcache.errors import PostgrestError
from pgcache.query.ast import FilterOp
from pgcache.query.parser import encode_query_string
from pgcache.query.source import ExecutableQuery
from pgcache.query.values import Range, encode_filter_value
from pgcache.results import QueryResponse

logger = logging.getLogger(__name__)

_CONTENT_RANGE_RE = re.compile(r'^\s*(?:\*|\d+-\d+)/(\d+|\*)\s*$')
_SINGLE_ACCEPT = 'application/vnd.pgrst.object+json'


@dataclass
class PostgrestResponse:
    """Decoded response of one request."""
    data: Any = None
    count: Optional[int] = None
    status: Optional[int] = None

    def to_result(self) -> QueryResponse:
        return QueryResponse(data=self.data, count=self.count, status=self.status)


def parse_content_range(header: Optional[str]) -> Optional[int]:
    """Total row count from a ``Content-Range`` header (``0-24/3573``)."""
    if not header:
        return None
    m = _CONTENT_RANGE_RE.match(header)
    if not m or m.group(1) == '*':
        return None
    return int(m.group(1))


# =============================================================================
# Transport
# =============================================================================

class RequestsTransport:
    """Performs builder requests over HTTP with a ``requests.Session``."""

    def __init__(self, session: Optional[requests.Session] = None,
                 timeout: int = DEFAULT_REQUEST_TIMEOUT):
        """
        Initialize the transport.

        Args:
            session: Session to reuse (a new one is created otherwise)
            timeout: Request timeout in seconds
        """
        self.session = session or requests.Session()
        self.timeout = timeout

    def request(self, base_url: str, query: "PostgrestBuilder") -> PostgrestResponse:
        """
        Send the request recorded in ``query``.

        Raises:
            PostgrestError: on a non-2xx response
            requests.RequestException: on transport failure (unchanged)
        """
        url = f"{base_url.rstrip('/')}/{query.table}"
        query_string = encode_query_string(query.params)
        if query_string:
            url = f"{url}?{query_string}"

        logger.debug(f"{query.method} {url}")
        response = self.session.request(
            query.method,
            url,
            headers=query.headers,
            json=query.body,
            timeout=self.timeout,
        )

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = response.text
            raise PostgrestError.from_body(body, status=response.status_code)

        data = None
        if query.method != 'HEAD' and response.content:
            data = response.json()

        return PostgrestResponse(
            data=data,
            count=parse_content_range(response.headers.get('Content-Range')),
            status=response.status_code,
        )


# =============================================================================
# Client
# =============================================================================

class PostgrestClient:
    """Entry point: holds the endpoint, credentials and transport."""

    def __init__(self, base_url: str, api_key: Optional[str] = None,
                 schema: str = DEFAULT_SCHEMA, transport: Any = None,
                 headers: Optional[Dict[str, str]] = None):
        self.base_url = base_url
        self.api_key = api_key
        self.schema = schema
        self.transport = transport or RequestsTransport()
        self.headers: Dict[str, str] = dict(headers or {})
        if api_key:
            self.headers.setdefault('apikey', api_key)
            self.headers.setdefault('Authorization', f"Bearer {api_key}")

    @classmethod
    def from_config(cls, config: Any, transport: Any = None) -> "PostgrestClient":
        if not config.base_url:
            raise ValueError("base_url is not configured")
        return cls(config.base_url, api_key=config.api_key, schema=config.schema,
                   transport=transport or RequestsTransport(timeout=config.timeout))

    def from_(self, table: str) -> "PostgrestBuilder":
        return PostgrestBuilder(self, table, schema=self.schema)

    table = from_


# =============================================================================
# Builder
# =============================================================================

class PostgrestBuilder(ExecutableQuery):
    """
    Fluent PostgREST query builder.

    Every refining method returns a new builder; the receiver is unchanged,
    so a base query can be reused for several pages.
    """

    def __init__(self, client: PostgrestClient, table: str, schema: Optional[str] = None):
        self._client = client
        self._table = table
        self._schema = schema
        self._method = 'GET'
        self._params: List[Tuple[str, str]] = []
        self._prefer: Dict[str, str] = {}
        self._accept: Optional[str] = None
        self._body: Any = None

    # -------------------------------------------------------------------------
    # Query source accessors
    # -------------------------------------------------------------------------

    @property
    def schema(self) -> Optional[str]:
        return self._schema

    @property
    def table(self) -> str:
        return self._table

    @property
    def method(self) -> str:
        return self._method

    @property
    def params(self) -> List[Tuple[str, str]]:
        return list(self._params)

    @property
    def headers(self) -> Dict[str, str]:
        headers = dict(self._client.headers)
        if self._schema and self._schema != DEFAULT_SCHEMA:
            profile = 'Accept-Profile' if self._method in ('GET', 'HEAD') else 'Content-Profile'
            headers[profile] = self._schema
        if self._prefer:
            headers['Prefer'] = ','.join(f"{k}={v}" for k, v in sorted(self._prefer.items()))
        if self._accept:
            headers['Accept'] = self._accept
        return headers

    @property
    def body(self) -> Any:
        return self._body

    def __repr__(self):
        return f"<PostgrestBuilder {self._method} {self._table}?{encode_query_string(self._params)}>"

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def copy(self) -> "PostgrestBuilder":
        clone = _copy.copy(self)
        clone._params = list(self._params)
        clone._prefer = dict(self._prefer)
        clone._body = _copy.deepcopy(self._body)
        return clone

    def _with_param(self, name: str, value: str, replace: bool = False) -> "PostgrestBuilder":
        clone = self.copy()
        if replace:
            clone._params = [(n, v) for n, v in clone._params if n != name]
        clone._params.append((name, value))
        return clone

    def _filter(self, column: str, op: FilterOp, value: Any, negate: bool = False,
                config: Optional[str] = None) -> "PostgrestBuilder":
        token = f"{op.value}({config})" if config else op.value
        prefix = "not." if negate else ""
        return self._with_param(column, f"{prefix}{token}.{encode_filter_value(op, value)}")

    # -------------------------------------------------------------------------
    # Select / write operations
    # -------------------------------------------------------------------------

    def select(self, columns: str = '*', count: Optional[str] = None,
               head: bool = False) -> "PostgrestBuilder":
        """
        Choose columns; on a write, ask for the written rows back.

        Args:
            columns: PostgREST select list, e.g. ``id,author:profiles(name)``
            count: ``exact``, ``planned`` or ``estimated``
            head: Only fetch the count (HTTP HEAD)
        """
        cleaned = re.sub(r'\s+(?=(?:[^"]*"[^"]*")*[^"]*$)', '', columns)
        clone = self._with_param('select', cleaned, replace=True)
        if clone._method in ('GET', 'HEAD'):
            clone._method = 'HEAD' if head else 'GET'
        else:
            clone._prefer['return'] = 'representation'
        if count:
            clone._prefer['count'] = count
        return clone

    def insert(self, rows: Union[Dict[str, Any], List[Dict[str, Any]]],
               count: Optional[str] = None) -> "PostgrestBuilder":
        clone = self.copy()
        clone._method = 'POST'
        clone._body = rows
        clone._prefer['return'] = 'representation'
        if count:
            clone._prefer['count'] = count
        return clone

    def upsert(self, rows: Union[Dict[str, Any], List[Dict[str, Any]]],
               on_conflict: Optional[str] = None, ignore_duplicates: bool = False,
               count: Optional[str] = None) -> "PostgrestBuilder":
        clone = self.insert(rows, count=count)
        clone._prefer['resolution'] = 'ignore-duplicates' if ignore_duplicates else 'merge-duplicates'
        if on_conflict:
            clone = clone._with_param('on_conflict', on_conflict, replace=True)
        return clone

    def update(self, values: Dict[str, Any], count: Optional[str] = None) -> "PostgrestBuilder":
        clone = self.copy()
        clone._method = 'PATCH'
        clone._body = values
        clone._prefer['return'] = 'representation'
        if count:
            clone._prefer['count'] = count
        return clone

    def delete(self, count: Optional[str] = None) -> "PostgrestBuilder":
        clone = self.copy()
        clone._method = 'DELETE'
        clone._body = None
        clone._prefer['return'] = 'representation'
        if count:
            clone._prefer['count'] = count
        return clone

    # -------------------------------------------------------------------------
    # Filters
    # -------------------------------------------------------------------------

    def eq(self, column: str, value: Any) -> "PostgrestBuilder":
        return self._filter(column, FilterOp.EQ, value)

    def neq(self, column: str, value: Any) -> "PostgrestBuilder":
        return self._filter(column, FilterOp.NEQ, value)

    def gt(self, column: str, value: Any) -> "PostgrestBuilder":
        return self._filter(column, FilterOp.GT, value)

    def gte(self, column: str, value: Any) -> "PostgrestBuilder":
        return self._filter(column, FilterOp.GTE, value)

    def lt(self, column: str, value: Any) -> "PostgrestBuilder":
        return self._filter(column, FilterOp.LT, value)

    def lte(self, column: str, value: Any) -> "PostgrestBuilder":
        return self._filter(column, FilterOp.LTE, value)

    def like(self, column: str, pattern: str) -> "PostgrestBuilder":
        return self._filter(column, FilterOp.LIKE, pattern)

    def ilike(self, column: str, pattern: str) -> "PostgrestBuilder":
        return self._filter(column, FilterOp.ILIKE, pattern)

    def is_(self, column: str, value: Optional[bool]) -> "PostgrestBuilder":
        return self._filter(column, FilterOp.IS, value)

    def in_(self, column: str, values: Sequence[Any]) -> "PostgrestBuilder":
        return self._filter(column, FilterOp.IN, list(values))

    def contains(self, column: str, value: Any) -> "PostgrestBuilder":
        return self._filter(column, FilterOp.CONTAINS, value)

    def contained_by(self, column: str, value: Any) -> "PostgrestBuilder":
        return self._filter(column, FilterOp.CONTAINED_BY, value)

    def overlaps(self, column: str, value: Any) -> "PostgrestBuilder":
        return self._filter(column, FilterOp.OVERLAPS, value)

    def range_gt(self, column: str, value: Union[str, Range]) -> "PostgrestBuilder":
        return self._filter(column, FilterOp.RANGE_GT, _as_range(value))

    def range_gte(self, column: str, value: Union[str, Range]) -> "PostgrestBuilder":
        return self._filter(column, FilterOp.RANGE_GTE, _as_range(value))

    def range_lt(self, column: str, value: Union[str, Range]) -> "PostgrestBuilder":
        return self._filter(column, FilterOp.RANGE_LT, _as_range(value))

    def range_lte(self, column: str, value: Union[str, Range]) -> "PostgrestBuilder":
        return self._filter(column, FilterOp.RANGE_LTE, _as_range(value))

    def range_adjacent(self, column: str, value: Union[str, Range]) -> "PostgrestBuilder":
        return self._filter(column, FilterOp.RANGE_ADJACENT, _as_range(value))

    def text_search(self, column: str, query: str, config: Optional[str] = None,
                    type: Optional[str] = None) -> "PostgrestBuilder":
        """Full text search; ``type`` is ``plain``, ``phrase`` or ``websearch``."""
        op = {
            'plain': FilterOp.PLFTS,
            'phrase': FilterOp.PHFTS,
            'websearch': FilterOp.WFTS,
        }.get(type or '', FilterOp.FTS)
        return self._filter(column, op, query, config=config)

    def match(self, query: Dict[str, Any]) -> "PostgrestBuilder":
        """Shorthand for one ``eq`` filter per key."""
        builder = self
        for column, value in query.items():
            builder = builder.eq(column, value)
        return builder

    def not_(self, column: str, operator: str, value: Any) -> "PostgrestBuilder":
        op = FilterOp.from_string(operator)
        if op.is_range:
            value = _as_range(value)
        return self._filter(column, op, value, negate=True)

    def or_(self, filters: str, referenced_table: Optional[str] = None) -> "PostgrestBuilder":
        """Add ``or=(...)`` from a PostgREST filter list, e.g. ``a.eq.1,b.gt.2``."""
        name = f"{referenced_table}.or" if referenced_table else 'or'
        return self._with_param(name, f"({filters})")

    def filter(self, column: str, operator: str, value: str) -> "PostgrestBuilder":
        """Add a filter with a raw wire value (no encoding)."""
        return self._with_param(column, f"{operator}.{value}")

    # -------------------------------------------------------------------------
    # Modifiers
    # -------------------------------------------------------------------------

    def order(self, column: str, desc: bool = False, nulls_first: Optional[bool] = None,
              referenced_table: Optional[str] = None) -> "PostgrestBuilder":
        name = f"{referenced_table}.order" if referenced_table else 'order'
        item = f"{column}.{'desc' if desc else 'asc'}"
        if nulls_first is not None:
            item += '.nullsfirst' if nulls_first else '.nullslast'
        existing = [v for n, v in self._params if n == name]
        value = f"{existing[-1]},{item}" if existing else item
        return self._with_param(name, value, replace=True)

    def limit(self, count: int, referenced_table: Optional[str] = None) -> "PostgrestBuilder":
        name = f"{referenced_table}.limit" if referenced_table else 'limit'
        return self._with_param(name, str(count), replace=True)

    def offset(self, count: int, referenced_table: Optional[str] = None) -> "PostgrestBuilder":
        name = f"{referenced_table}.offset" if referenced_table else 'offset'
        return self._with_param(name, str(count), replace=True)

    def range(self, start: int, end: int, referenced_table: Optional[str] = None) -> "PostgrestBuilder":
        """Rows ``start`` through ``end``, both inclusive."""
        return self.offset(start, referenced_table).limit(end - start + 1, referenced_table)

    def single(self) -> "PostgrestBuilder":
        clone = self.copy()
        clone._accept = _SINGLE_ACCEPT
        return clone

    def execute(self) -> PostgrestResponse:
        return self._client.transport.request(self._client.base_url, self)


def _as_range(value: Union[str, Range]) -> Range:
    return value if isinstance(value, Range) else Range.parse(value)
