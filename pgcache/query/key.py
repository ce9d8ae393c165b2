"""
Cache key codec.

A cache key is a tuple of nine strings:

    ('postgrest', 'page' | 'null', schema, table, query_string,
     body_key | 'null', 'count=<mode>', 'head=<bool>', order_key)

The first segment identifies the key family. ``decode_key`` returns None
for anything outside the family so a store-wide sweep can skip unrelated
entries. Decoding recovers routing data (schema, table, count, head,
limit, offset); filters and order stay in their encoded form and are
re-parsed from the query segment when needed.
"""

from dataclasses import dataclass
from typing import Any, NamedTuple, Optional
from urllib.parse import parse_qsl, urlencode

from pgcache.constants import INFINITE_KEY_PREFIX, KEY_PREFIX, KEY_VERSION, NULL_SEGMENT
from pgcache.query.ast import CountMode, ParsedQuery
from pgcache.query.parser import QueryParser


# =============================================================================
# Key family
# =============================================================================

@dataclass(frozen=True)
class KeyFamily:
    """
    Identifies one key encoding.

    An incompatible change to the encoding gets a new prefix and version so
    old and new keys can live in the same store.
    """
    prefix: str = KEY_PREFIX
    infinite_tag: str = INFINITE_KEY_PREFIX
    version: int = KEY_VERSION


KEY_FAMILY = KeyFamily()


class CacheKey(NamedTuple):
    """Ordered key segments. Hashable, and serializes as a plain list."""
    prefix: str
    pagination: str
    schema: str
    table: str
    query: str
    body: str
    count: str
    head: str
    order: str

    @property
    def family(self) -> KeyFamily:
        return KEY_FAMILY

    @property
    def is_infinite(self) -> bool:
        return self.pagination == KEY_FAMILY.infinite_tag

    def __str__(self):
        return "|".join(self)


@dataclass(frozen=True)
class DecodedKey:
    """Routing information recovered from a cache key."""
    key: CacheKey
    schema: str
    table: str
    query_string: str
    body_key: Optional[str]
    count: CountMode
    is_head: bool
    is_infinite: bool
    order_key: str
    limit: Optional[int] = None
    offset: Optional[int] = None

    @property
    def filter_key(self) -> str:
        """Query segment without pagination parameters."""
        return strip_pagination(self.query_string)


def strip_pagination(query_string: str) -> str:
    """Remove top-level limit/offset from an encoded query string."""
    kept = [(k, v) for k, v in parse_qsl(query_string, keep_blank_values=True)
            if k not in ('limit', 'offset')]
    return urlencode(kept, safe=',.:()*!{}[]')


# =============================================================================
# Encoding / decoding
# =============================================================================

def encode_key(query: ParsedQuery, is_infinite: Optional[bool] = None) -> CacheKey:
    """
    Encode a parsed query as a cache key.

    Args:
        query: The parsed query
        is_infinite: Overrides ``query.is_infinite`` when given
    """
    infinite = query.is_infinite if is_infinite is None else is_infinite
    return CacheKey(
        prefix=KEY_FAMILY.prefix,
        pagination=KEY_FAMILY.infinite_tag if infinite else NULL_SEGMENT,
        schema=query.schema,
        table=query.table,
        query=query.query_string,
        body=query.body_key if query.body_key is not None else NULL_SEGMENT,
        count=f"count={query.count.key_value}",
        head=f"head={'true' if query.head else 'false'}",
        order=query.order_key,
    )


def encode(source: Any, is_infinite: bool = False,
           parser: Optional[QueryParser] = None) -> CacheKey:
    """
    Parse a query source and encode its key.

    Raises:
        NotABuilderError: if ``source`` is not a query source
    """
    parser = parser or QueryParser()
    return encode_key(parser.parse(source, is_infinite=is_infinite))


def _to_int(value: Optional[str]) -> Optional[int]:
    if value is None or value == '':
        return None
    try:
        return int(value)
    except ValueError:
        return None


def decode_key(key: Any) -> Optional[DecodedKey]:
    """
    Decode a cache key.

    Returns None for keys that do not belong to this key family.
    """
    if not isinstance(key, (list, tuple)) or len(key) != len(CacheKey._fields):
        return None
    if key[0] != KEY_FAMILY.prefix:
        return None
    if not all(isinstance(segment, str) for segment in key):
        return None

    cache_key = key if isinstance(key, CacheKey) else CacheKey(*key)
    params = dict(parse_qsl(cache_key.query, keep_blank_values=True))
    count = cache_key.count[len('count='):] if cache_key.count.startswith('count=') else cache_key.count
    try:
        count_mode = CountMode.from_string(count)
    except ValueError:
        return None

    return DecodedKey(
        key=cache_key,
        schema=cache_key.schema,
        table=cache_key.table,
        query_string=cache_key.query,
        body_key=None if cache_key.body == NULL_SEGMENT else cache_key.body,
        count=count_mode,
        is_head=cache_key.head == 'head=true',
        is_infinite=cache_key.pagination == KEY_FAMILY.infinite_tag,
        order_key=cache_key.order,
        limit=_to_int(params.get('limit')),
        offset=_to_int(params.get('offset')),
    )
