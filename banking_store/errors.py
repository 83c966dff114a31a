"""
Exception hierarchy for the banking stage results store.

Every error raised by the writer, the read API or the migration layer derives
from StoreError so callers can handle store failures per operation. Transient
driver errors (psycopg.OperationalError and friends) are not wrapped.
"""

from __future__ import annotations

from typing import Any, Optional


class StoreError(Exception):
    """Base class for store errors."""


class ValidationError(StoreError):
    """An observation or lookup key was rejected before touching the database."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class ConflictError(StoreError):
    """An immutable field would have changed to a different value."""

    def __init__(self, key: tuple[Any, ...], field: str, stored: Any, incoming: Any) -> None:
        super().__init__(
            f"Conflicting value for immutable field '{field}' on key {key}: "
            f"stored={stored!r} incoming={incoming!r}"
        )
        self.key = key
        self.field = field
        self.stored = stored
        self.incoming = incoming


class NotFoundError(StoreError):
    """A point lookup found no record where the caller required one."""

    def __init__(self, entity: str, key: tuple[Any, ...]) -> None:
        super().__init__(f"{entity} not found for key {key}")
        self.entity = entity
        self.key = key


class SchemaError(StoreError):
    """Schema migration failed or the migration list is inconsistent."""


__all__ = [
    "StoreError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "SchemaError",
]
