"""
Infinite (paged) query fetchers.

Pages of one query are cached together under a single infinite key as an
InfiniteResponse. Offset pagination keys pages by index, cursor
pagination by the cursor value that ended the previous page.

Changing the query's filters or order (anything but limit/offset) starts
a new page list. Shrinking the number of pages evicts the pages beyond
the new size unless ``shrink_evicts`` is turned off, in which case they
stay cached and are only hidden.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple, Union

from pgcache.constants import DEFAULT_PAGE_SIZE
from pgcache.query.filters import get_path
from pgcache.query.key import CacheKey, encode_key, strip_pagination
from pgcache.query.parser import QueryParser
from pgcache.query.source import ExecutableQuery
from pgcache.results import InfiniteResponse, Row
from pgcache.store import CacheStore

logger = logging.getLogger(__name__)

SizeArg = Union[int, Callable[[int], int]]


@dataclass
class PageDescriptor:
    """
    Page bookkeeping for one infinite query.

    Attributes:
        base_key: Infinite cache key, without limit/offset
        page_size: Rows per page
        page_params: Parameter that fetched each page (index or cursor)
        size: Number of pages exposed
    """
    base_key: CacheKey
    page_size: int
    page_params: List[Any] = field(default_factory=list)
    size: int = 0


class PaginationFetcher(ABC):
    """
    Shared page management for the offset and cursor fetchers.

    Call ``use(query)`` (or ``fetch(query)``) before paging; the other
    methods work on the query last passed in.
    """

    def __init__(self, store: CacheStore, page_size: Optional[int] = None,
                 config: Any = None, parser: Optional[QueryParser] = None):
        self.store = store
        self.config = config
        if page_size is None:
            page_size = config.page_size if config is not None else DEFAULT_PAGE_SIZE
        if page_size < 1:
            raise ValueError(f"page_size must be positive, got {page_size}")
        self.page_size = page_size
        self.shrink_evicts = config.shrink_evicts if config is not None else True
        self.parser = parser or (QueryParser(config.schema) if config is not None else QueryParser())
        self.query: Optional[ExecutableQuery] = None
        self.descriptor: Optional[PageDescriptor] = None

    # -------------------------------------------------------------------------
    # Query binding
    # -------------------------------------------------------------------------

    def key_for(self, query: ExecutableQuery) -> CacheKey:
        """Infinite key of ``query``, ignoring any limit/offset it carries."""
        key = encode_key(self.parser.parse(query, is_infinite=True))
        return key._replace(query=strip_pagination(key.query))

    def use(self, query: ExecutableQuery) -> PageDescriptor:
        """
        Bind the fetcher to ``query``.

        A query whose key differs from the current one gets a fresh page
        list, picking up pages already cached under its key.
        """
        key = self.key_for(query)
        self.query = query
        if self.descriptor is not None and self.descriptor.base_key == key:
            return self.descriptor

        if self.descriptor is not None:
            logger.debug(f"Query changed, resetting pages for {key.table}")
        cached = self.store.get(key)
        if isinstance(cached, InfiniteResponse):
            self.descriptor = PageDescriptor(key, self.page_size, list(cached.page_params), len(cached.pages))
        else:
            self.descriptor = PageDescriptor(key, self.page_size)
        return self.descriptor

    def _require_query(self) -> ExecutableQuery:
        if self.query is None or self.descriptor is None:
            raise RuntimeError("No query bound; call use(query) or fetch(query) first")
        return self.query

    def _cached(self) -> InfiniteResponse:
        cached = self.store.get(self.descriptor.base_key)
        if isinstance(cached, InfiniteResponse):
            return cached
        return InfiniteResponse(page_size=self.page_size)

    # -------------------------------------------------------------------------
    # Pages
    # -------------------------------------------------------------------------

    @property
    def size(self) -> int:
        return self.descriptor.size if self.descriptor else 0

    @property
    def pages(self) -> List[List[Row]]:
        """Pages exposed by the current size."""
        if self.descriptor is None:
            return []
        return self._cached().pages[:self.descriptor.size]

    @property
    def rows(self) -> List[Row]:
        return [row for page in self.pages for row in page]

    @property
    def has_more(self) -> bool:
        """Whether another page may exist after the last fetched one."""
        if self.descriptor is None:
            return True
        cached = self._cached()
        if not cached.pages:
            return True
        if cached.has_more is not None:
            return cached.has_more
        return len(cached.pages[-1]) >= self.page_size

    def fetch(self, query: ExecutableQuery) -> List[List[Row]]:
        """Bind ``query`` and make sure its first page is loaded."""
        self.use(query)
        if self.descriptor.size == 0:
            self.fetch_page(0)
        return self.pages

    def fetch_next_page(self) -> List[Row]:
        """Fetch the page after the last exposed one."""
        self._require_query()
        return self.fetch_page(self.descriptor.size)

    def fetch_page(self, index: int) -> List[Row]:
        """
        Fetch page ``index`` and store it.

        Pages are fetched in order: ``index`` may refetch an existing page
        or append the next one.
        """
        query = self._require_query()
        cached = self._cached()
        if index < 0 or index > len(cached.pages):
            raise IndexError(f"Cannot fetch page {index}; {len(cached.pages)} page(s) cached")

        param = self.page_param(index, cached)
        rows, has_more = self.load_page(query, index, param)

        pages = [list(p) for p in cached.pages]
        params = list(cached.page_params)
        if index == len(pages):
            pages.append(rows)
            params.append(param)
        else:
            pages[index] = rows
            params[index] = param

        self.store.set(self.descriptor.base_key, InfiniteResponse(
            pages=pages,
            page_params=params,
            page_size=self.page_size,
            has_more=has_more if index == len(pages) - 1 else cached.has_more,
        ))
        self.descriptor.page_params = params
        self.descriptor.size = max(self.descriptor.size, index + 1)
        logger.info(f"Fetched page {index} of {self.descriptor.base_key.table} ({len(rows)} rows)")
        return rows

    def set_size(self, size: SizeArg) -> List[List[Row]]:
        """
        Change the number of exposed pages.

        Growing fetches missing pages in order. Shrinking evicts the pages
        beyond ``size`` when ``shrink_evicts`` is set, else only hides them.
        ``size`` may be a callable receiving the current size.
        """
        self._require_query()
        target = size(self.descriptor.size) if callable(size) else size
        if target < 0:
            raise ValueError(f"size must not be negative, got {target}")

        current = self.descriptor.size
        if target > current:
            for index in range(current, target):
                if index < len(self._cached().pages):
                    self.descriptor.size = index + 1
                    continue
                if index > 0 and not self.has_more:
                    break
                self.fetch_page(index)
        elif target < current:
            if self.shrink_evicts:
                cached = self._cached()
                self.store.set(self.descriptor.base_key, cached.truncated(target))
                self.descriptor.page_params = self.descriptor.page_params[:target]
                logger.debug(f"Evicted {current - target} page(s) of {self.descriptor.base_key.table}")
            self.descriptor.size = target
        return self.pages

    def refresh(self) -> List[List[Row]]:
        """Refetch every exposed page."""
        self._require_query()
        for index in range(self.descriptor.size):
            self.fetch_page(index)
        return self.pages

    @abstractmethod
    def page_param(self, index: int, cached: InfiniteResponse) -> Any:
        """Parameter identifying page ``index``."""
        pass

    @abstractmethod
    def load_page(self, query: ExecutableQuery, index: int, param: Any) -> Tuple[List[Row], bool]:
        """Execute the request for one page; returns ``(rows, has_more)``."""
        pass


# =============================================================================
# Offset pagination
# =============================================================================

class OffsetPaginationFetcher(PaginationFetcher):
    """
    Pages by offset: page ``i`` holds rows ``i*page_size`` to
    ``(i+1)*page_size - 1``.

    With ``fetch_extra=True`` one extra row is requested per page to tell
    whether another page exists; the extra row is not stored.
    """

    def __init__(self, store: CacheStore, page_size: Optional[int] = None,
                 config: Any = None, parser: Optional[QueryParser] = None,
                 fetch_extra: bool = False):
        super().__init__(store, page_size=page_size, config=config, parser=parser)
        self.fetch_extra = fetch_extra

    def page_param(self, index: int, cached: InfiniteResponse) -> int:
        return index

    def fetch_page(self, index: int) -> List[Row]:
        # A delete can leave the last cached page short; reload it so the next offset lines up
        self._require_query()
        cached = self._cached()
        if 0 < index == len(cached.pages) and len(cached.pages[-1]) < self.page_size:
            logger.debug(f"Reloading short page {index - 1} of {self.descriptor.base_key.table}")
            super().fetch_page(index - 1)
        return super().fetch_page(index)

    def page_range(self, index: int):
        start = index * self.page_size
        end = (index + 1) * self.page_size - 1
        return start, end + 1 if self.fetch_extra else end

    def load_page(self, query: ExecutableQuery, index: int, param: Any):
        start, end = self.page_range(index)
        rows = query.range(start, end).execute().data or []
        if self.fetch_extra:
            return rows[:self.page_size], len(rows) > self.page_size
        return rows, len(rows) >= self.page_size


# =============================================================================
# Cursor pagination
# =============================================================================

class CursorPaginationFetcher(PaginationFetcher):
    """
    Pages by cursor: each page continues after the ``cursor_column`` value
    of the previous page's last row.

    The query must be ordered by ``cursor_column`` in the same direction.
    """

    def __init__(self, store: CacheStore, cursor_column: str, ascending: bool = True,
                 page_size: Optional[int] = None, config: Any = None,
                 parser: Optional[QueryParser] = None):
        super().__init__(store, page_size=page_size, config=config, parser=parser)
        self.cursor_column = cursor_column
        self.ascending = ascending

    def page_param(self, index: int, cached: InfiniteResponse) -> Any:
        if index == 0:
            return None
        previous = cached.pages[index - 1]
        if not previous:
            return None
        return get_path(previous[-1], self.cursor_column)

    def load_page(self, query: ExecutableQuery, index: int, param: Any):
        if index > 0 and param is None:
            return [], False
        if param is not None:
            query = query.gt(self.cursor_column, param) if self.ascending else query.lt(self.cursor_column, param)
        rows = query.limit(self.page_size).execute().data or []
        return rows, len(rows) >= self.page_size
