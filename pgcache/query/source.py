"""
Query source contract.

The parser never depends on a concrete client. It reads the recorded state
of any object implementing ``QuerySource``: schema, table, HTTP method, the
query parameters in the order the builder applied them, headers, and body.

Objects that do not subclass ``QuerySource`` are still accepted when they
carry the ``is_query_source`` marker and expose every accessor.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING
from urllib.parse import parse_qsl

if TYPE_CHECKING:
    from pgcache.client import PostgrestResponse


_ACCESSORS = ('schema', 'table', 'method', 'params', 'headers', 'body')


class QuerySource(ABC):
    """
    Recorded state of a PostgREST query builder.

    Attributes:
        schema: Schema name, or None for the server default
        table: Table (or view / function) name
        method: HTTP method (GET, HEAD, POST, PATCH, DELETE)
        params: Query parameters as (name, value) pairs in application order,
            values in PostgREST wire syntax (``eq.5``, ``in.(1,2)``)
        headers: Request headers; ``Prefer`` carries count and upsert options
        body: Request body for writes
    """

    is_query_source = True

    @property
    @abstractmethod
    def schema(self) -> Optional[str]:
        pass

    @property
    @abstractmethod
    def table(self) -> str:
        pass

    @property
    @abstractmethod
    def method(self) -> str:
        pass

    @property
    @abstractmethod
    def params(self) -> List[Tuple[str, str]]:
        pass

    @property
    @abstractmethod
    def headers(self) -> Dict[str, str]:
        pass

    @property
    @abstractmethod
    def body(self) -> Any:
        pass

    @classmethod
    def __subclasshook__(cls, C):
        if cls is QuerySource:
            marked = any(B.__dict__.get('is_query_source') is True for B in C.__mro__)
            if marked and all(any(name in B.__dict__ for B in C.__mro__) for name in _ACCESSORS):
                return True
        return NotImplemented


class ExecutableQuery(QuerySource):
    """
    A query source that can also be refined and executed.

    Fetchers use these methods; the parser only needs ``QuerySource``.
    Refining methods return a new query and leave the receiver untouched.
    """

    @abstractmethod
    def copy(self) -> "ExecutableQuery":
        pass

    @abstractmethod
    def range(self, start: int, end: int) -> "ExecutableQuery":
        pass

    @abstractmethod
    def limit(self, count: int) -> "ExecutableQuery":
        pass

    @abstractmethod
    def gt(self, column: str, value: Any) -> "ExecutableQuery":
        pass

    @abstractmethod
    def lt(self, column: str, value: Any) -> "ExecutableQuery":
        pass

    @abstractmethod
    def execute(self) -> "PostgrestResponse":
        pass


class RecordedQuery(QuerySource):
    """
    A query source built from already-encoded parts.

    Useful where no live builder exists, e.g. re-keying a query string read
    from a log or the command line.
    """

    def __init__(self, table: str, params: Optional[List[Tuple[str, str]]] = None,
                 schema: Optional[str] = None, method: str = 'GET',
                 headers: Optional[Dict[str, str]] = None, body: Any = None):
        self._table = table
        self._params = list(params or [])
        self._schema = schema
        self._method = method
        self._headers = dict(headers or {})
        self._body = body

    @classmethod
    def from_query_string(cls, table: str, query_string: str, **kwargs) -> "RecordedQuery":
        return cls(table, parse_qsl(query_string.lstrip('?'), keep_blank_values=True), **kwargs)

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
        return dict(self._headers)

    @property
    def body(self) -> Any:
        return self._body


def is_query_source(obj: Any) -> bool:
    """Check whether ``obj`` exposes the query source capability set."""
    return isinstance(obj, QuerySource)
