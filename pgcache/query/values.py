"""
Filter value codec.

Converts filter values between Python objects and the PostgREST query
parameter syntax:

    eq.5                 -> 5
    in.(1,2,"a,b")       -> [1, 2, 'a,b']
    cs.{a,b}             -> ['a', 'b']
    cs.{"k":"v"}         -> {'k': 'v'}
    sl.[1,10)            -> Range(1, 10, lower_inc=True, upper_inc=False)
    is.null              -> None

Encoding is deterministic: set-like lists are emitted in sorted order and
no whitespace is added, so semantically equal filters encode identically.
"""

import json
import re
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, List, Optional, Tuple

from pgcache.errors import MalformedFilterError
from pgcache.query.ast import FilterOp


_NUMBER_RE = re.compile(r'^-?\d+(\.\d+)?([eE][+-]?\d+)?$')
_NEEDS_QUOTES_RE = re.compile(r'[,()"\\{}]|^\s|\s$')


# =============================================================================
# Range literals
# =============================================================================

@dataclass(frozen=True)
class Range:
    """
    A PostgreSQL range literal such as ``[1,10)``.

    ``None`` bounds are unbounded. An empty range has ``empty=True``.
    """
    lower: Any = None
    upper: Any = None
    lower_inc: bool = True
    upper_inc: bool = False
    empty: bool = False

    @classmethod
    def parse(cls, s: str) -> "Range":
        """Parse a range literal."""
        text = s.strip()
        if text.lower() == 'empty':
            return cls(empty=True)
        if len(text) < 3 or text[0] not in '[(' or text[-1] not in '])':
            raise MalformedFilterError(f"Invalid range literal: {s}", value=s)
        items = _split_items(text[1:-1])
        if len(items) != 2:
            raise MalformedFilterError(f"Invalid range literal: {s}", value=s)
        (lo, lo_quoted), (hi, hi_quoted) = items
        lower = None if lo == '' and not lo_quoted else (lo if lo_quoted else parse_scalar(lo))
        upper = None if hi == '' and not hi_quoted else (hi if hi_quoted else parse_scalar(hi))
        return cls(lower=lower, upper=upper, lower_inc=text[0] == '[', upper_inc=text[-1] == ']')

    def __str__(self):
        if self.empty:
            return 'empty'
        lo = '' if self.lower is None else _quote_item(encode_value(self.lower))
        hi = '' if self.upper is None else _quote_item(encode_value(self.upper))
        return f"{'[' if self.lower_inc else '('}{lo},{hi}{']' if self.upper_inc else ')'}"


# =============================================================================
# Encoding
# =============================================================================

def encode_value(value: Any) -> str:
    """Encode a scalar (or composite) value to its wire form."""
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, 'f')
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, Range):
        return str(value)
    if isinstance(value, dict):
        return json.dumps(value, separators=(',', ':'), sort_keys=True, default=str)
    if isinstance(value, (list, tuple, set, frozenset)):
        return '{' + ','.join(_quote_item(encode_value(v)) for v in value) + '}'
    return str(value)


def encode_filter_value(op: FilterOp, value: Any) -> str:
    """
    Encode a filter value for the given operator.

    Set operators (in/cs/cd/ov) emit their items sorted so the encoding
    does not depend on the order the caller listed them.
    """
    if op is FilterOp.IN:
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise MalformedFilterError(f"'in' needs a list, got {value!r}", operator=op.value, value=value)
        return '(' + ','.join(sorted(_quote_item(encode_value(v)) for v in value)) + ')'

    if op in (FilterOp.CONTAINS, FilterOp.CONTAINED_BY, FilterOp.OVERLAPS):
        if isinstance(value, (list, tuple, set, frozenset)):
            return '{' + ','.join(sorted(_quote_item(encode_value(v)) for v in value)) + '}'
        return encode_value(value)

    if op is FilterOp.IS:
        if value is None or isinstance(value, bool):
            return encode_value(value)
        raise MalformedFilterError(f"'is' needs null, true or false, got {value!r}", operator=op.value, value=value)

    return encode_value(value)


def _quote_item(s: str) -> str:
    """Quote a list item if it contains reserved characters."""
    if s == '' or _NEEDS_QUOTES_RE.search(s):
        escaped = s.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'
    return s


# =============================================================================
# Decoding
# =============================================================================

def parse_scalar(s: str) -> Any:
    """Parse a bare scalar: null, booleans and numbers; anything else stays text."""
    if s == 'null':
        return None
    if s == 'true':
        return True
    if s == 'false':
        return False
    if _NUMBER_RE.match(s):
        if '.' in s or 'e' in s or 'E' in s:
            return float(s)
        return int(s)
    return s


def _split_items(s: str) -> List[Tuple[str, bool]]:
    """
    Split a comma-separated list, respecting double quotes, backslash
    escapes and nested brackets.

    Returns (text, was_quoted) pairs with quotes removed.
    """
    items: List[Tuple[str, bool]] = []
    current: List[str] = []
    quoted = False
    in_quotes = False
    depth = 0
    escape = False

    for char in s:
        if escape:
            current.append(char)
            escape = False
        elif char == '\\' and in_quotes:
            escape = True
        elif char == '"':
            in_quotes = not in_quotes
            quoted = True
        elif in_quotes:
            current.append(char)
        elif char in '([{':
            depth += 1
            current.append(char)
        elif char in ')]}':
            depth -= 1
            current.append(char)
        elif char == ',' and depth == 0:
            items.append((''.join(current) if quoted else ''.join(current).strip(), quoted))
            current = []
            quoted = False
        else:
            current.append(char)

    if in_quotes:
        raise MalformedFilterError(f"Unterminated quote in list: {s}", value=s)
    if current or quoted or items:
        items.append((''.join(current) if quoted else ''.join(current).strip(), quoted))
    return items


def split_list(s: str) -> List[str]:
    """Split a comma-separated list into its unquoted items."""
    return [text for text, _ in _split_items(s)]


def _decode_items(inner: str) -> List[Any]:
    return [text if quoted else parse_scalar(text) for text, quoted in _split_items(inner)]


def _decode_array_or_json(text: str, op: FilterOp) -> Any:
    if text.startswith('{'):
        if text.startswith('{"') and ':' in text:
            try:
                decoded = json.loads(text)
            except ValueError:
                decoded = None
            if isinstance(decoded, dict):
                return decoded
        if not text.endswith('}'):
            raise MalformedFilterError(f"Invalid array literal: {text}", operator=op.value, value=text)
        return _decode_items(text[1:-1])
    # ov.[1,10] is a range; cs.[1,2] / cd.[1,2] are jsonb arrays
    if text.startswith('[') and text.endswith(']') and op is not FilterOp.OVERLAPS:
        try:
            decoded = json.loads(text)
        except ValueError:
            decoded = None
        if isinstance(decoded, list):
            return decoded
    if text == 'empty' or (text and text[0] in '[(' and text[-1] in '])'):
        return Range.parse(text)
    raise MalformedFilterError(
        f"'{op.value}' needs an array, object or range literal, got {text!r}",
        operator=op.value, value=text)


def decode_value(text: str, op: Optional[FilterOp] = None) -> Any:
    """
    Decode a wire value for the given operator.

    Raises:
        MalformedFilterError: if the text cannot be a value for ``op``
    """
    if op is None or op in (FilterOp.EQ, FilterOp.NEQ, FilterOp.GT, FilterOp.GTE,
                            FilterOp.LT, FilterOp.LTE, FilterOp.ISDISTINCT):
        if len(text) >= 2 and text.startswith('"') and text.endswith('"'):
            return text[1:-1].replace('\\"', '"').replace('\\\\', '\\')
        return parse_scalar(text)

    if op is FilterOp.IN:
        if not (text.startswith('(') and text.endswith(')')):
            raise MalformedFilterError(f"'in' needs a parenthesized list, got {text!r}",
                                       operator=op.value, value=text)
        return _decode_items(text[1:-1])

    if op in (FilterOp.CONTAINS, FilterOp.CONTAINED_BY, FilterOp.OVERLAPS):
        return _decode_array_or_json(text, op)

    if op.is_range:
        return Range.parse(text)

    if op is FilterOp.IS:
        lowered = text.lower()
        if lowered in ('null', 'unknown'):
            return None
        if lowered == 'true':
            return True
        if lowered == 'false':
            return False
        raise MalformedFilterError(f"'is' needs null, true, false or unknown, got {text!r}",
                                   operator=op.value, value=text)

    # like/ilike/match/imatch/full text search keep the raw pattern
    return text
