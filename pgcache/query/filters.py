"""
Local evaluation of PostgREST filters and ordering.

Mirrors the server's comparison rules closely enough to decide, without a
network round trip, whether a row belongs to a cached result and where it
sorts:

- SQL three-valued logic: comparisons against null are unknown, and an
  unknown filter excludes the row. ``not.`` inverts true/false only.
- ``is`` and ``isdistinct`` never yield unknown.
- ``in``/``cs``/``cd``/``ov`` use set semantics on array columns, JSON
  containment on objects and bound comparison on ranges.
- ``like``/``ilike`` support ``%`` (or ``*``) and ``_`` wildcards.
- Full text search is approximated on word tokens (no stemming).
"""

import functools
import logging
import re
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, List, Optional, Sequence

from pgcache.query.ast import Filter, FilterGroup, FilterNode, FilterOp, OrderItem
from pgcache.query.values import Range

logger = logging.getLogger(__name__)

_ISO_RE = re.compile(r'^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?)?(Z|[+-]\d{2}(:?\d{2})?)?$')
_WORD_RE = re.compile(r'\w+', re.UNICODE)

Row = dict


# =============================================================================
# Path access
# =============================================================================

def _resolve(value: Any, parts: Sequence[str]) -> List[Any]:
    """
    Collect the values at ``parts`` below ``value``.

    Lists of embedded rows met before the last path part fan out, so a
    filter on ``comments.author`` sees every comment's author.
    """
    if not parts:
        return [value]
    if value is None:
        return [None]
    if isinstance(value, list):
        found: List[Any] = []
        for item in value:
            found.extend(_resolve(item, parts))
        return found
    if isinstance(value, dict):
        return _resolve(value.get(parts[0]), parts[1:])
    return [getattr(value, parts[0], None)] if len(parts) == 1 else _resolve(getattr(value, parts[0], None), parts[1:])


def get_path(row: Any, path: str) -> Any:
    """
    Get the value at a dot path.

    Returns a list when the path fans out through embedded arrays.
    """
    if isinstance(row, dict) and path in row:
        return row[path]
    values = _resolve(row, path.split('.'))
    if len(values) == 1:
        return values[0]
    return values


def has_path(row: Any, path: str) -> bool:
    """Check whether a row carries a value (possibly null) at ``path``."""
    current = row
    for part in path.split('.'):
        if isinstance(current, list):
            return all(has_path(item, part) for item in current) if current else False
        if not isinstance(current, dict) or part not in current:
            return False
        current = current[part]
    return True


# =============================================================================
# Coercion
# =============================================================================

def _parse_datetime(s: str) -> Optional[datetime]:
    if not _ISO_RE.match(s):
        return None
    try:
        parsed = datetime.fromisoformat(s.replace('Z', '+00:00'))
    except ValueError:
        return None
    return parsed


def _normalize_dt(v: Any) -> Any:
    if isinstance(v, datetime):
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)
    if isinstance(v, date):
        return datetime(v.year, v.month, v.day, tzinfo=timezone.utc)
    return v


def coerce_pair(a: Any, b: Any):
    """
    Bring two values into a comparable form.

    Numbers compare numerically (numeric strings are converted), ISO
    date/time strings compare as timezone-aware datetimes.
    """
    a_num = isinstance(a, (int, float)) and not isinstance(a, bool)
    b_num = isinstance(b, (int, float)) and not isinstance(b, bool)
    if a_num and b_num:
        return a, b
    if a_num and isinstance(b, str):
        try:
            return a, float(b)
        except ValueError:
            return str(a), b
    if b_num and isinstance(a, str):
        try:
            return float(a), b
        except ValueError:
            return a, str(b)

    if isinstance(a, (datetime, date)) or isinstance(b, (datetime, date)) or (
            isinstance(a, str) and isinstance(b, str)):
        da = _parse_datetime(a) if isinstance(a, str) else a
        db = _parse_datetime(b) if isinstance(b, str) else b
        if isinstance(da, (datetime, date)) and isinstance(db, (datetime, date)):
            return _normalize_dt(da), _normalize_dt(db)

    return a, b


def _equal(a: Any, b: Any) -> bool:
    ca, cb = coerce_pair(a, b)
    return ca == cb


def compare_values(a: Any, b: Any) -> Optional[int]:
    """Three-way compare; None if the values cannot be ordered."""
    ca, cb = coerce_pair(a, b)
    try:
        if ca < cb:
            return -1
        if ca > cb:
            return 1
        return 0
    except TypeError:
        return None


# =============================================================================
# Pattern matching
# =============================================================================

@functools.lru_cache(maxsize=256)
def like_to_regex(pattern: str, case_insensitive: bool = False) -> "re.Pattern":
    """Translate a LIKE pattern (``%``/``*`` and ``_``) into a compiled regex."""
    out: List[str] = []
    escape = False
    for char in pattern:
        if escape:
            out.append(re.escape(char))
            escape = False
        elif char == '\\':
            escape = True
        elif char in '%*':
            out.append('.*')
        elif char == '_':
            out.append('.')
        else:
            out.append(re.escape(char))
    flags = re.S | (re.IGNORECASE if case_insensitive else 0)
    return re.compile(''.join(out), flags)


# =============================================================================
# Ranges
# =============================================================================

def _as_range(v: Any) -> Optional[Range]:
    if isinstance(v, Range):
        return v
    if isinstance(v, str):
        text = v.strip()
        if text == 'empty' or (len(text) >= 3 and text[0] in '[(' and text[-1] in '])' and ',' in text):
            try:
                return Range.parse(text)
            except ValueError:
                return None
    if v is None or isinstance(v, (list, dict)):
        return None
    return Range(lower=v, upper=v, lower_inc=True, upper_inc=True)


def _strictly_left(a: Range, b: Range) -> bool:
    if a.upper is None or b.lower is None:
        return False
    cmp = compare_values(a.upper, b.lower)
    if cmp is None:
        return False
    return cmp < 0 or (cmp == 0 and not (a.upper_inc and b.lower_inc))


def _not_extend_right(a: Range, b: Range) -> bool:
    if b.upper is None:
        return True
    if a.upper is None:
        return False
    cmp = compare_values(a.upper, b.upper)
    if cmp is None:
        return False
    return cmp < 0 or (cmp == 0 and not (a.upper_inc and not b.upper_inc))


def _not_extend_left(a: Range, b: Range) -> bool:
    if b.lower is None:
        return True
    if a.lower is None:
        return False
    cmp = compare_values(a.lower, b.lower)
    if cmp is None:
        return False
    return cmp > 0 or (cmp == 0 and not (a.lower_inc and not b.lower_inc))


def _adjacent(a: Range, b: Range) -> bool:
    def touches(x: Range, y: Range) -> bool:
        if x.upper is None or y.lower is None:
            return False
        return compare_values(x.upper, y.lower) == 0 and x.upper_inc != y.lower_inc
    return touches(a, b) or touches(b, a)


def _range_op(op: FilterOp, a: Range, b: Range) -> bool:
    if a.empty or b.empty:
        # empty ranges are contained by everything and relate to nothing
        return op is FilterOp.CONTAINED_BY and a.empty or op is FilterOp.CONTAINS and b.empty
    if op is FilterOp.RANGE_LT:
        return _strictly_left(a, b)
    if op is FilterOp.RANGE_GT:
        return _strictly_left(b, a)
    if op is FilterOp.RANGE_LTE:
        return _not_extend_right(a, b)
    if op is FilterOp.RANGE_GTE:
        return _not_extend_left(a, b)
    if op is FilterOp.RANGE_ADJACENT:
        return _adjacent(a, b)
    if op is FilterOp.OVERLAPS:
        return not (_strictly_left(a, b) or _strictly_left(b, a))
    if op is FilterOp.CONTAINS:
        return _not_extend_left(b, a) and _not_extend_right(b, a)
    if op is FilterOp.CONTAINED_BY:
        return _not_extend_left(a, b) and _not_extend_right(a, b)
    return False


# =============================================================================
# Containment
# =============================================================================

def _json_contains(outer: Any, inner: Any) -> bool:
    """jsonb @> semantics."""
    if isinstance(inner, dict):
        if not isinstance(outer, dict):
            return False
        return all(k in outer and _json_contains(outer[k], v) for k, v in inner.items())
    if isinstance(inner, list):
        if not isinstance(outer, list):
            return False
        return all(any(_json_contains(o, i) for o in outer) for i in inner)
    if isinstance(outer, list):
        return any(_json_contains(o, inner) for o in outer)
    return _equal(outer, inner)


def _set_contains(outer: Iterable[Any], inner: Iterable[Any]) -> bool:
    outer = list(outer)
    return all(any(_equal(o, i) for o in outer) for i in inner)


# =============================================================================
# Text search
# =============================================================================

def _tokens(value: Any) -> List[str]:
    return [t.lower() for t in _WORD_RE.findall(str(value))]


def _has_term(tokens: List[str], term: str) -> bool:
    term = term.lower()
    if term.endswith(':*'):
        prefix = term[:-2]
        return any(t.startswith(prefix) for t in tokens)
    return term in tokens


def _has_phrase(tokens: List[str], phrase: List[str]) -> bool:
    if not phrase:
        return True
    n = len(phrase)
    return any(tokens[i:i + n] == phrase for i in range(len(tokens) - n + 1))


class _TsQuery:
    """Recursive-descent evaluator for to_tsquery syntax: & | ! ( ) <-> :*"""

    _TOKEN_RE = re.compile(r'\s*(<\d*>|<->|[&|!()]|[^\s&|!()<]+)')

    def __init__(self, query: str):
        self.tokens = [t for t in self._TOKEN_RE.findall(query) if t.strip()]
        self.pos = 0

    def _peek(self) -> Optional[str]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> Optional[str]:
        tok = self._peek()
        self.pos += 1
        return tok

    def evaluate(self, doc: List[str]) -> bool:
        if not self.tokens:
            return False
        self.pos = 0
        return self._or(doc)

    def _or(self, doc: List[str]) -> bool:
        result = self._and(doc)
        while self._peek() == '|':
            self._next()
            right = self._and(doc)
            result = result or right
        return result

    def _and(self, doc: List[str]) -> bool:
        result = self._not(doc)
        while self._peek() is not None and (self._peek() == '&' or self._peek().startswith('<')):
            self._next()
            right = self._not(doc)
            result = result and right
        return result

    def _not(self, doc: List[str]) -> bool:
        if self._peek() == '!':
            self._next()
            return not self._not(doc)
        return self._atom(doc)

    def _atom(self, doc: List[str]) -> bool:
        tok = self._next()
        if tok == '(':
            result = self._or(doc)
            if self._peek() == ')':
                self._next()
            return result
        if tok is None:
            return False
        words = _tokens(tok.replace(':*', '')) if not tok.endswith(':*') else [tok.lower()]
        return all(_has_term(doc, w) for w in words)


def _websearch(doc: List[str], query: str) -> bool:
    """websearch_to_tsquery: quoted phrases, ``or``, ``-negation``, default AND."""
    clauses: List[List[tuple]] = [[]]
    for match in re.finditer(r'(-?)"([^"]*)"|(\S+)', query):
        negated, phrase, word = match.group(1), match.group(2), match.group(3)
        if word is not None and word.lower() == 'or':
            clauses.append([])
            continue
        if phrase is not None:
            clauses[-1].append((bool(negated), _tokens(phrase)))
        else:
            neg = word.startswith('-')
            clauses[-1].append((neg, _tokens(word.lstrip('-'))))

    def clause_ok(clause: List[tuple]) -> bool:
        if not clause:
            return False
        for neg, words in clause:
            found = _has_phrase(doc, words)
            if found == neg:
                return False
        return True

    return any(clause_ok(c) for c in clauses)


def text_search(op: FilterOp, value: Any, query: str) -> bool:
    doc = _tokens(value)
    if op is FilterOp.PLFTS:
        words = _tokens(query)
        return bool(words) and all(w in doc for w in words)
    if op is FilterOp.PHFTS:
        words = _tokens(query)
        return bool(words) and _has_phrase(doc, words)
    if op is FilterOp.WFTS:
        return _websearch(doc, query)
    return _TsQuery(query).evaluate(doc)


# =============================================================================
# Filter Evaluator
# =============================================================================

class FilterEvaluator:
    """
    Evaluates parsed filters against rows.

    ``evaluate`` returns True, False or None (unknown); ``matches`` is the
    set-membership answer, where unknown counts as not matching.
    """

    def matches(self, row: Row, filters: Sequence[FilterNode]) -> bool:
        """Check whether ``row`` satisfies every filter (short-circuits)."""
        for node in filters:
            if self.evaluate(node, row) is not True:
                return False
        return True

    def evaluate(self, node: FilterNode, row: Row) -> Optional[bool]:
        if isinstance(node, FilterGroup):
            result = self._evaluate_group(node, row)
        else:
            result = self._evaluate_filter(node, row)
        if node.negate and result is not None:
            return not result
        return result

    def _evaluate_group(self, group: FilterGroup, row: Row) -> Optional[bool]:
        unknown = False
        for child in group.filters:
            result = self.evaluate(child, row)
            if group.op == 'or' and result is True:
                return True
            if group.op == 'and' and result is False:
                return False
            if result is None:
                unknown = True
        if unknown:
            return None
        return group.op == 'and'

    def _evaluate_filter(self, f: Filter, row: Row) -> Optional[bool]:
        if isinstance(row, dict) and f.column in row:
            candidates = [row[f.column]]
        else:
            candidates = _resolve(row, f.path)
        if not candidates:
            return False

        unknown = False
        for value in candidates:
            result = self.apply_operator(f, value)
            if result is True:
                return True
            if result is None:
                unknown = True
        return None if unknown else False

    def apply_operator(self, f: Filter, value: Any) -> Optional[bool]:
        """Apply ``f``'s operator (ignoring negation) to a column value."""
        op = f.op
        target = f.value

        if op is FilterOp.IS:
            if target is None:
                return value is None
            return value is target
        if op is FilterOp.ISDISTINCT:
            if value is None or target is None:
                return not (value is None and target is None)
            return not _equal(value, target)

        if value is None:
            return None

        if op is FilterOp.EQ:
            return _equal(value, target) if target is not None else None
        if op is FilterOp.NEQ:
            return not _equal(value, target) if target is not None else None
        if op in (FilterOp.GT, FilterOp.GTE, FilterOp.LT, FilterOp.LTE):
            if target is None:
                return None
            cmp = compare_values(value, target)
            if cmp is None:
                logger.debug(f"Cannot compare {value!r} with {target!r} on {f.column}")
                return None
            return {
                FilterOp.GT: cmp > 0,
                FilterOp.GTE: cmp >= 0,
                FilterOp.LT: cmp < 0,
                FilterOp.LTE: cmp <= 0,
            }[op]

        if op in (FilterOp.LIKE, FilterOp.ILIKE):
            regex = like_to_regex(target, op is FilterOp.ILIKE)
            return regex.fullmatch(str(value)) is not None
        if op in (FilterOp.MATCH, FilterOp.IMATCH):
            flags = re.IGNORECASE if op is FilterOp.IMATCH else 0
            try:
                return re.search(target, str(value), flags) is not None
            except re.error:
                return None

        if op is FilterOp.IN:
            if any(item is not None and _equal(value, item) for item in target):
                return True
            return None if any(item is None for item in target) else False

        if op in (FilterOp.CONTAINS, FilterOp.CONTAINED_BY, FilterOp.OVERLAPS):
            return self._containment(op, value, target)

        if op.is_range:
            a = _as_range(value)
            b = _as_range(target)
            if a is None or b is None:
                return None
            return _range_op(op, a, b)

        if op.is_text_search:
            return text_search(op, value, target)

        return None

    @staticmethod
    def _containment(op: FilterOp, value: Any, target: Any) -> Optional[bool]:
        if isinstance(target, Range):
            a = _as_range(value)
            b = _as_range(target)
            if a is None or b is None:
                return None
            return _range_op(op, a, b)

        if isinstance(target, dict) or isinstance(value, dict):
            if op is FilterOp.CONTAINS:
                return _json_contains(value, target)
            if op is FilterOp.CONTAINED_BY:
                return _json_contains(target, value)
            return None

        if not isinstance(value, (list, tuple, set)):
            return None
        if op is FilterOp.CONTAINS:
            return _set_contains(value, target)
        if op is FilterOp.CONTAINED_BY:
            return _set_contains(target, value)
        return any(_equal(v, t) for v in value for t in target)


_default_evaluator = FilterEvaluator()


def matches(row: Row, filters: Sequence[FilterNode]) -> bool:
    """Check whether ``row`` satisfies every filter."""
    return _default_evaluator.matches(row, filters)


# =============================================================================
# Ordering
# =============================================================================

def build_comparator(order: Sequence[OrderItem]) -> Callable[[Row, Row], int]:
    """
    Build a comparator from order items.

    Items ordering an embedded resource (``referenced_table`` set) do not
    affect top-level rows and are skipped. Ties compare equal, so a stable
    sort keeps the original relative order.
    """
    items = [item for item in order if item.referenced_table is None]

    def compare(a: Row, b: Row) -> int:
        for item in items:
            va = get_path(a, item.column)
            vb = get_path(b, item.column)
            if va is None and vb is None:
                continue
            if va is None:
                return -1 if item.nulls_placed_first else 1
            if vb is None:
                return 1 if item.nulls_placed_first else -1
            cmp = compare_values(va, vb)
            if cmp is None:
                cmp = compare_values(str(va), str(vb)) or 0
            if cmp != 0:
                return cmp if item.ascending else -cmp
        return 0

    return compare


def sort_rows(rows: Iterable[Row], order: Sequence[OrderItem]) -> List[Row]:
    """Return rows sorted by ``order`` (stable)."""
    return sorted(rows, key=functools.cmp_to_key(build_comparator(order)))
