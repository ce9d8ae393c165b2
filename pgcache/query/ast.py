"""
Query AST for PostgREST queries.

A ParsedQuery is the canonical, structured form of a query builder's
recorded state. It is what the key codec encodes and what the filter
evaluator and mutation engine reason about.

Example structure:
    ParsedQuery(
        schema='public',
        table='tasks',
        select=[SelectedColumn('id'), SelectedColumn('owner.name', declaration='owner(name)')],
        filters=[
            Filter(column='status', op=FilterOp.EQ, value='open'),
            FilterGroup('or', [Filter('priority', FilterOp.GT, 2), Filter('pinned', FilterOp.IS, True)]),
        ],
        order=[OrderItem('created_at', ascending=False)],
        limit=20,
        offset=0,
    )
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Union

from pgcache.errors import MalformedFilterError


# =============================================================================
# Operators
# =============================================================================

class FilterOp(Enum):
    """
    Filter operators, valued by their PostgREST wire token.
    """
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    LIKE = "like"
    ILIKE = "ilike"
    MATCH = "match"          # POSIX regex, case sensitive
    IMATCH = "imatch"        # POSIX regex, case insensitive
    IS = "is"
    ISDISTINCT = "isdistinct"
    IN = "in"
    CONTAINS = "cs"
    CONTAINED_BY = "cd"
    OVERLAPS = "ov"
    RANGE_LT = "sl"
    RANGE_GT = "sr"
    RANGE_GTE = "nxl"
    RANGE_LTE = "nxr"
    RANGE_ADJACENT = "adj"
    FTS = "fts"
    PLFTS = "plfts"
    PHFTS = "phfts"
    WFTS = "wfts"

    @classmethod
    def from_string(cls, s: str) -> "FilterOp":
        """Parse an operator from its wire token or client method name."""
        key = s.strip()
        try:
            return cls(key)
        except ValueError:
            pass
        aliases = {
            'contains': cls.CONTAINS,
            'containedBy': cls.CONTAINED_BY,
            'contained_by': cls.CONTAINED_BY,
            'overlaps': cls.OVERLAPS,
            'rangeLt': cls.RANGE_LT,
            'range_lt': cls.RANGE_LT,
            'rangeGt': cls.RANGE_GT,
            'range_gt': cls.RANGE_GT,
            'rangeGte': cls.RANGE_GTE,
            'range_gte': cls.RANGE_GTE,
            'rangeLte': cls.RANGE_LTE,
            'range_lte': cls.RANGE_LTE,
            'rangeAdjacent': cls.RANGE_ADJACENT,
            'range_adjacent': cls.RANGE_ADJACENT,
            'textSearch': cls.FTS,
            'text_search': cls.FTS,
        }
        if key in aliases:
            return aliases[key]
        raise MalformedFilterError(f"Unknown filter operator: {s}", operator=s)

    @property
    def takes_list(self) -> bool:
        """Operators whose value is a list (or, for cs/cd, a JSON object)."""
        return self in (FilterOp.IN, FilterOp.CONTAINS, FilterOp.CONTAINED_BY, FilterOp.OVERLAPS)

    @property
    def is_range(self) -> bool:
        return self in (FilterOp.RANGE_LT, FilterOp.RANGE_GT, FilterOp.RANGE_GTE,
                        FilterOp.RANGE_LTE, FilterOp.RANGE_ADJACENT)

    @property
    def is_text_search(self) -> bool:
        return self in (FilterOp.FTS, FilterOp.PLFTS, FilterOp.PHFTS, FilterOp.WFTS)


class CountMode(Enum):
    """Row count algorithm requested through the Prefer header."""
    EXACT = "exact"
    PLANNED = "planned"
    ESTIMATED = "estimated"
    NONE = "none"

    @classmethod
    def from_string(cls, s: Optional[str]) -> "CountMode":
        if s is None or s in ('', 'null', 'none'):
            return cls.NONE
        return cls(s)

    @property
    def key_value(self) -> str:
        """Value used in the cache key; absent counts use the null sentinel."""
        return "null" if self is CountMode.NONE else self.value


class OperationKind(Enum):
    """What a query does to the table."""
    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    UPSERT = "upsert"
    DELETE = "delete"

    @property
    def is_write(self) -> bool:
        return self is not OperationKind.SELECT


# =============================================================================
# Filters
# =============================================================================

_IS_VALUES = (None, True, False)


@dataclass(frozen=True)
class Filter:
    """
    A single column/operator/value constraint.

    Attributes:
        column: Dot-separated column path; embedded resources keep their prefix
        op: The operator
        value: Decoded value (scalar, list, dict or Range)
        negate: True for ``not.<op>`` filters
        config: Text search configuration, e.g. ``english`` in ``fts(english)``
    """
    column: str
    op: FilterOp
    value: Any
    negate: bool = False
    config: Optional[str] = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise MalformedFilterError if operator and value do not fit."""
        if self.op is FilterOp.IS:
            if self.value not in _IS_VALUES or isinstance(self.value, (int, float)) and not isinstance(self.value, bool):
                raise MalformedFilterError(
                    f"'is' filter on {self.column} needs null, true, false or unknown, got {self.value!r}",
                    column=self.column, operator=self.op.value, value=self.value)
        elif self.op is FilterOp.IN or self.op is FilterOp.OVERLAPS:
            if not isinstance(self.value, (list, tuple)) and not _is_range(self.value):
                raise MalformedFilterError(
                    f"'{self.op.value}' filter on {self.column} needs a list, got {self.value!r}",
                    column=self.column, operator=self.op.value, value=self.value)
        elif self.op in (FilterOp.CONTAINS, FilterOp.CONTAINED_BY):
            if not isinstance(self.value, (list, tuple, dict)) and not _is_range(self.value):
                raise MalformedFilterError(
                    f"'{self.op.value}' filter on {self.column} needs a list, object or range, got {self.value!r}",
                    column=self.column, operator=self.op.value, value=self.value)
        elif self.op.is_range:
            if not _is_range(self.value):
                raise MalformedFilterError(
                    f"'{self.op.value}' filter on {self.column} needs a range, got {self.value!r}",
                    column=self.column, operator=self.op.value, value=self.value)
        elif self.op in (FilterOp.LIKE, FilterOp.ILIKE, FilterOp.MATCH, FilterOp.IMATCH) or self.op.is_text_search:
            if not isinstance(self.value, str):
                raise MalformedFilterError(
                    f"'{self.op.value}' filter on {self.column} needs a string pattern, got {self.value!r}",
                    column=self.column, operator=self.op.value, value=self.value)
        elif isinstance(self.value, (list, tuple, dict)):
            raise MalformedFilterError(
                f"'{self.op.value}' filter on {self.column} needs a scalar, got {self.value!r}",
                column=self.column, operator=self.op.value, value=self.value)

    @property
    def path(self) -> List[str]:
        return self.column.split('.')

    @property
    def is_relation(self) -> bool:
        """Check if this filter targets an embedded resource."""
        return '.' in self.column

    def columns(self) -> Iterator[str]:
        yield self.column

    def __repr__(self):
        prefix = "not." if self.negate else ""
        return f"Filter({self.column} {prefix}{self.op.value} {self.value!r})"


@dataclass(frozen=True)
class FilterGroup:
    """
    Logical group of filters: ``or=(...)`` / ``and=(...)``, possibly negated.
    """
    op: str  # 'and', 'or'
    filters: List[Union[Filter, "FilterGroup"]] = field(default_factory=list)
    negate: bool = False

    def __post_init__(self):
        if self.op not in ('and', 'or'):
            raise MalformedFilterError(f"Unknown logical operator: {self.op}", operator=self.op)

    def columns(self) -> Iterator[str]:
        for f in self.filters:
            yield from f.columns()

    def __repr__(self):
        prefix = "not." if self.negate else ""
        return f"FilterGroup({prefix}{self.op} {self.filters})"


FilterNode = Union[Filter, FilterGroup]


def _is_range(value: Any) -> bool:
    from pgcache.query.values import Range
    return isinstance(value, Range)


# =============================================================================
# Ordering and selection
# =============================================================================

@dataclass(frozen=True)
class OrderItem:
    """
    Sort specification.

    Attributes:
        column: Column path (``author.name`` for ``author(name)``)
        ascending: Sort direction
        nulls_first: Null placement; None means the PostgreSQL default
            (nulls last when ascending, first when descending)
        referenced_table: Set for ``rel.order=...``, which orders an embedded
            resource rather than the top-level rows
    """
    column: str
    ascending: bool = True
    nulls_first: Optional[bool] = None
    referenced_table: Optional[str] = None

    @property
    def nulls_placed_first(self) -> bool:
        if self.nulls_first is None:
            return not self.ascending
        return self.nulls_first

    def key(self) -> str:
        """Fragment used in the cache key's order segment."""
        prefix = f"{self.referenced_table}." if self.referenced_table else ""
        direction = "asc" if self.ascending else "desc"
        nulls = "nullsFirst" if self.nulls_placed_first else "nullsLast"
        return f"{prefix}{self.column}:{direction}.{nulls}"

    def __repr__(self):
        return f"OrderItem({self.key()})"


@dataclass(frozen=True)
class SelectedColumn:
    """
    A selected column path.

    Embedded relations keep their dot path (``author.name``); ``alias`` holds a
    renamed output key and ``declaration`` the verbatim select fragment.
    """
    path: str
    alias: Optional[str] = None
    declaration: Optional[str] = None

    @property
    def is_wildcard(self) -> bool:
        return self.path == '*' or self.path.endswith('.*')

    @property
    def is_relation(self) -> bool:
        return '.' in self.path


# =============================================================================
# Parsed Query
# =============================================================================

@dataclass(frozen=True)
class ParsedQuery:
    """
    Canonical representation of one query builder.

    Filters keep builder application order and are AND-ed together.
    ``query_string`` is the canonical encoded query string and ``body_key``
    the encoded body; both feed the cache key.
    """
    schema: str
    table: str
    select: List[SelectedColumn] = field(default_factory=list)
    filters: List[FilterNode] = field(default_factory=list)
    order: List[OrderItem] = field(default_factory=list)
    limit: Optional[int] = None
    offset: Optional[int] = None
    count: CountMode = CountMode.NONE
    head: bool = False
    body: Any = None
    operation: OperationKind = OperationKind.SELECT
    on_conflict: Optional[List[str]] = None
    ignore_duplicates: bool = False
    single: bool = False
    is_infinite: bool = False
    method: str = "GET"
    query_string: str = ""
    body_key: Optional[str] = None

    @property
    def order_key(self) -> str:
        return "|".join(item.key() for item in self.order)

    @property
    def row_order(self) -> List[OrderItem]:
        """Order items that sort top-level rows."""
        return [item for item in self.order if item.referenced_table is None]

    @property
    def paths(self) -> List[str]:
        return [c.path for c in self.select]

    @property
    def has_wildcard(self) -> bool:
        return not self.select or any(c.path == '*' for c in self.select)

    @property
    def is_bounded(self) -> bool:
        return self.limit is not None

    def filter_columns(self) -> List[str]:
        cols: List[str] = []
        for f in self.filters:
            for c in f.columns():
                if c not in cols:
                    cols.append(c)
        return cols

    def to_dict(self) -> Dict[str, Any]:
        return {
            'schema': self.schema,
            'table': self.table,
            'select': self.paths,
            'filters': [repr(f) for f in self.filters],
            'order': self.order_key,
            'limit': self.limit,
            'offset': self.offset,
            'count': self.count.value,
            'head': self.head,
            'operation': self.operation.value,
            'on_conflict': self.on_conflict,
            'is_infinite': self.is_infinite,
        }

    def __repr__(self):
        parts = [f"{self.schema}.{self.table}", self.operation.value]
        if self.filters:
            parts.append(f"filters={len(self.filters)}")
        if self.order:
            parts.append(f"order={self.order_key}")
        if self.limit is not None:
            parts.append(f"limit={self.limit}")
        if self.offset:
            parts.append(f"offset={self.offset}")
        return f"ParsedQuery({', '.join(parts)})"
