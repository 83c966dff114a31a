from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

import psycopg
import pytest

from banking_store.errors import SchemaError
from banking_store.infrastructure import migrations
from banking_store.infrastructure.migrations import MIGRATIONS, Migration, apply_migrations

SCHEMA = "banking_stage_results"


class _FakeCursor:
    def __init__(self, conn: "_FakeConnection") -> None:
        self._conn = conn
        self._row: tuple[Any, ...] | None = None

    def execute(self, query: Any, params: tuple[Any, ...] | None = None) -> None:
        text = query if isinstance(query, str) else repr(query)
        if self._conn.fail_on and self._conn.fail_on in text:
            raise psycopg.errors.SyntaxError("boom")
        self._conn.statements.append((text, params))
        if "MAX(version)" in text:
            self._row = (self._conn.version,)
        elif "INSERT INTO" in text and params is not None:
            self._conn.version = params[0]

    def fetchone(self) -> tuple[Any, ...] | None:
        return self._row

    def __enter__(self) -> "_FakeCursor":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        del exc_type, exc, tb
        return False


class _FakeConnection:
    def __init__(self, version: int = 0, fail_on: str | None = None) -> None:
        self.version = version
        self.fail_on = fail_on
        self.statements: list[tuple[str, Any]] = []
        self.committed = False
        self.rolled_back = False
        self.closed = False

    @contextmanager
    def transaction(self) -> Iterator[None]:
        try:
            yield
        except Exception:
            self.rolled_back = True
            raise
        self.committed = True

    def cursor(self) -> _FakeCursor:
        return _FakeCursor(self)

    def close(self) -> None:
        self.closed = True


def test_fresh_database_gets_every_migration():
    conn = _FakeConnection(version=0)

    applied = apply_migrations(conn=conn, schema=SCHEMA)

    assert applied == [m.version for m in MIGRATIONS]
    assert conn.version == MIGRATIONS[-1].version
    assert conn.committed is True
    assert conn.closed is False  # caller-owned connection stays open
    assert "pg_advisory_xact_lock" in conn.statements[0][0]


def test_up_to_date_database_is_a_no_op():
    conn = _FakeConnection(version=MIGRATIONS[-1].version)

    applied = apply_migrations(conn=conn, schema=SCHEMA)

    assert applied == []
    assert not any("CREATE INDEX" in text for text, _ in conn.statements)


def test_partially_migrated_database_gets_remaining_versions():
    conn = _FakeConnection(version=1)

    applied = apply_migrations(conn=conn, schema=SCHEMA)

    assert applied == [2]
    assert not any("slot BIGINT PRIMARY KEY" in text for text, _ in conn.statements)
    assert any("idx_blocks_slot_errors" in text for text, _ in conn.statements)


def test_failing_statement_raises_schema_error_and_rolls_back():
    conn = _FakeConnection(version=0, fail_on="idx_transaction_infos_timestamp")

    with pytest.raises(SchemaError):
        apply_migrations(conn=conn, schema=SCHEMA)

    assert conn.rolled_back is True
    assert conn.committed is False


def test_owned_connection_is_closed(monkeypatch):
    conn = _FakeConnection(version=MIGRATIONS[-1].version)
    monkeypatch.setattr(migrations, "get_sync_connection", lambda: conn)

    apply_migrations(schema=SCHEMA)

    assert conn.closed is True


def test_non_contiguous_migrations_are_rejected():
    broken = (Migration(1, "a", ("SELECT 1",)), Migration(3, "c", ("SELECT 1",)))
    with pytest.raises(SchemaError):
        apply_migrations(conn=_FakeConnection(), schema=SCHEMA, migrations=broken)


def test_migrations_define_the_required_indexes():
    statements = " ".join(stmt for m in MIGRATIONS for stmt in m.statements)
    assert "idx_transaction_infos_timestamp" in statements
    assert "idx_blocks_slot ON" in statements
    assert "WHERE banking_stage_errors > 0" in statements
    assert "PRIMARY KEY (signature, first_notification_slot)" in statements
