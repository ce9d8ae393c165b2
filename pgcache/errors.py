"""
Exception types for pgcache.

Parsing and encoding errors are raised at the point where bad input is
detected and are never swallowed. Transport errors from ``requests`` pass
through unchanged; HTTP error responses become ``PostgrestError``.
"""

from typing import Any, Dict, Optional


class PgCacheError(Exception):
    """Base class for all pgcache errors."""
    pass


class NotABuilderError(PgCacheError, TypeError):
    """Input does not implement the query source contract."""

    def __init__(self, obj: Any):
        self.obj = obj
        super().__init__(f"Key is not a PostgREST query source: {type(obj).__name__}")


class MalformedFilterError(PgCacheError, ValueError):
    """
    A filter whose operator and value do not fit together.

    Examples: ``in`` with a scalar, ``is`` with anything but null/true/false/unknown,
    an unknown operator token.
    """

    def __init__(self, message: str, column: Optional[str] = None,
                 operator: Optional[str] = None, value: Any = None):
        self.column = column
        self.operator = operator
        self.value = value
        super().__init__(message)


class PostgrestError(PgCacheError):
    """Error response returned by the REST API."""

    def __init__(self, message: str, code: Optional[str] = None,
                 details: Optional[str] = None, hint: Optional[str] = None,
                 status: Optional[int] = None):
        self.message = message
        self.code = code
        self.details = details
        self.hint = hint
        self.status = status
        super().__init__(message)

    @classmethod
    def from_body(cls, body: Any, status: Optional[int] = None) -> "PostgrestError":
        """Build an error from a decoded PostgREST error body."""
        if isinstance(body, dict):
            return cls(
                message=str(body.get('message') or body.get('error') or 'Request failed'),
                code=body.get('code'),
                details=body.get('details'),
                hint=body.get('hint'),
                status=status,
            )
        return cls(message=str(body) if body else 'Request failed', status=status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'message': self.message,
            'code': self.code,
            'details': self.details,
            'hint': self.hint,
            'status': self.status,
        }
