"""
Query layer for pgcache.

Parses PostgREST query builders into a canonical ParsedQuery, encodes
cache keys, and evaluates filters and ordering locally.

Example usage:

    from pgcache.client import PostgrestClient
    from pgcache.query import QueryParser, encode_key, decode_key, matches

    client = PostgrestClient('https://example.supabase.co/rest/v1')
    builder = (client.from_('tasks')
        .select('id,title,status,created_at')
        .eq('status', 'open')
        .order('created_at', desc=True)
        .range(0, 19))

    q = QueryParser().parse(builder)
    key = encode_key(q)
    decoded = decode_key(key)      # schema, table, limit=20, offset=0 ...

    matches({'status': 'open'}, q.filters)   # True
"""

# Query AST
from .ast import (
    FilterOp,
    CountMode,
    OperationKind,
    Filter,
    FilterGroup,
    FilterNode,
    OrderItem,
    SelectedColumn,
    ParsedQuery,
)

# Value codec
from .values import (
    Range,
    encode_value,
    encode_filter_value,
    decode_value,
    split_list,
)

# Source contract
from .source import (
    QuerySource,
    ExecutableQuery,
    RecordedQuery,
    is_query_source,
)

# Parser
from .parser import (
    QueryParser,
    ParsedParams,
    parse_query,
    parse_params,
    parse_query_string,
    parse_select,
    parse_order,
    parse_filter,
    encode_query_string,
    encode_body,
)

# Key codec
from .key import (
    KeyFamily,
    KEY_FAMILY,
    CacheKey,
    DecodedKey,
    encode,
    encode_key,
    decode_key,
    strip_pagination,
)

# Evaluation
from .filters import (
    FilterEvaluator,
    matches,
    build_comparator,
    sort_rows,
    get_path,
    has_path,
)

__all__ = [
    # AST
    'FilterOp',
    'CountMode',
    'OperationKind',
    'Filter',
    'FilterGroup',
    'FilterNode',
    'OrderItem',
    'SelectedColumn',
    'ParsedQuery',

    # Values
    'Range',
    'encode_value',
    'encode_filter_value',
    'decode_value',
    'split_list',

    # Source
    'QuerySource',
    'ExecutableQuery',
    'RecordedQuery',
    'is_query_source',

    # Parser
    'QueryParser',
    'ParsedParams',
    'parse_query',
    'parse_params',
    'parse_query_string',
    'parse_select',
    'parse_order',
    'parse_filter',
    'encode_query_string',
    'encode_body',

    # Keys
    'KeyFamily',
    'KEY_FAMILY',
    'CacheKey',
    'DecodedKey',
    'encode',
    'encode_key',
    'decode_key',
    'strip_pagination',

    # Evaluation
    'FilterEvaluator',
    'matches',
    'build_comparator',
    'sort_rows',
    'get_path',
    'has_path',
]
