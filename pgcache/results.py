"""
Cached value types.

These are the values stored under cache keys:

- QueryResponse: one response. ``data`` is a list of rows, a single row
  (``single()`` queries), or None (head requests / no row).
- InfiniteResponse: the pages of an infinite query plus the page
  parameter (offset index or cursor value) used to fetch each page.

Both serialize to plain dicts for persistent stores.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Union

Row = Dict[str, Any]


# =============================================================================
# Single response
# =============================================================================

@dataclass
class QueryResponse:
    """
    Result of one query.

    Supports iteration and length over the rows it holds.
    """
    data: Union[List[Row], Row, None] = None
    count: Optional[int] = None
    status: Optional[int] = None

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[Row]:
        return iter(self.rows)

    @property
    def rows(self) -> List[Row]:
        """Rows as a list regardless of response shape."""
        if self.data is None:
            return []
        if isinstance(self.data, list):
            return self.data
        return [self.data]

    @property
    def is_single(self) -> bool:
        return isinstance(self.data, dict)

    def first(self) -> Optional[Row]:
        rows = self.rows
        return rows[0] if rows else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': 'response',
            'data': self.data,
            'count': self.count,
            'status': self.status,
        }

    @classmethod
    def empty(cls) -> "QueryResponse":
        return cls(data=[], count=0)


# =============================================================================
# Infinite response
# =============================================================================

@dataclass
class InfiniteResponse:
    """
    Pages of an infinite query.

    ``page_params[i]`` is the parameter that fetched ``pages[i]``: the page
    index for offset pagination, the cursor value for cursor pagination.
    """
    pages: List[List[Row]] = field(default_factory=list)
    page_params: List[Any] = field(default_factory=list)
    page_size: Optional[int] = None
    has_more: Optional[bool] = None

    def __len__(self) -> int:
        return len(self.pages)

    def __iter__(self) -> Iterator[List[Row]]:
        return iter(self.pages)

    @property
    def rows(self) -> List[Row]:
        """All rows across pages, in page order."""
        return [row for page in self.pages for row in page]

    def truncated(self, size: int) -> "InfiniteResponse":
        """Copy keeping only the first ``size`` pages."""
        return InfiniteResponse(
            pages=[list(p) for p in self.pages[:size]],
            page_params=list(self.page_params[:size]),
            page_size=self.page_size,
            has_more=True if size < len(self.pages) else self.has_more,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': 'infinite',
            'pages': self.pages,
            'page_params': self.page_params,
            'page_size': self.page_size,
            'has_more': self.has_more,
        }


CachedValue = Union[QueryResponse, InfiniteResponse]


def result_from_dict(data: Optional[Dict[str, Any]]) -> Optional[CachedValue]:
    """Rebuild a cached value from its ``to_dict()`` form."""
    if data is None:
        return None
    kind = data.get('type')
    if kind == 'infinite':
        return InfiniteResponse(
            pages=data.get('pages') or [],
            page_params=data.get('page_params') or [],
            page_size=data.get('page_size'),
            has_more=data.get('has_more'),
        )
    if kind == 'response':
        return QueryResponse(
            data=data.get('data'),
            count=data.get('count'),
            status=data.get('status'),
        )
    raise ValueError(f"Unknown cached value type: {kind}")
