"""Database column type helpers."""
from __future__ import annotations

from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import JSON, TypeDecorator


class JSONList(TypeDecorator):
    """JSON array column: JSONB on Postgres, plain JSON on SQLite (tests).

    ``None`` is stored and loaded as an empty list so callers never branch on it.
    Values must be reassigned, not mutated in place, for changes to be flushed.
    """

    impl = JSONB
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":  # pragma: no cover - dialect specific
            return dialect.type_descriptor(JSON())
        return dialect.type_descriptor(JSONB())

    def process_bind_param(self, value, dialect):
        if value is None:
            return []
        return list(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return []
        return value
