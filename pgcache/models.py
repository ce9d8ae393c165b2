"""
SQLAlchemy models for the persistent cache store.

One table holds every cache entry. The key is stored as its JSON-encoded
segment list; schema and table are copied out of the key so lookups by
table do not have to scan every entry.
"""
from datetime import datetime, timezone
from typing import Any, Optional
from sqlalchemy import Boolean, DateTime, Index, JSON, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class CacheEntry(Base):
    """
    A cached query result.

    Attributes:
        key: JSON array of key segments (primary key)
        prefix: First key segment (key family)
        schema_name: Schema segment, None for foreign keys
        table_name: Table segment, None for foreign keys
        is_infinite: Whether the entry holds pages
        value: Serialized cached value (``to_dict()`` form)
        updated_at: Last write time
    """
    __tablename__ = 'cache_entries'

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    prefix: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    schema_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    table_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    is_infinite: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index('ix_cache_entries_schema_table', 'schema_name', 'table_name'),
    )

    def __repr__(self):
        return f"<CacheEntry(schema={self.schema_name!r}, table={self.table_name!r})>"
