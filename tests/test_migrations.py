# tests/test_migrations.py

import sqlite3

import pytest

from portfolio_ledger.ledger.exceptions import LedgerSchemaError
from portfolio_ledger.ledger.migrations import run_migrations
from portfolio_ledger.ledger.store import (
    CURRENT_SCHEMA_VERSION,
    SQLiteLedgerStore,
    ensure_ledger_schema,
)


def _columns(conn, table):
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}


def _seed_version(db_path, version):
    with sqlite3.connect(db_path) as conn:
        conn.execute("CREATE TABLE meta (key TEXT PRIMARY KEY, value TEXT)")
        conn.execute("INSERT INTO meta (key, value) VALUES ('schema_version', ?)", (str(version),))
        conn.commit()


def test_fresh_database_is_initialized_at_current_version(tmp_path):
    with sqlite3.connect(tmp_path / "ledger.db") as conn:
        status = ensure_ledger_schema(conn)

    assert status.initialized is True
    assert status.migrated is False
    assert status.version == CURRENT_SCHEMA_VERSION
    assert status.changed is True


def test_version_one_database_is_migrated(tmp_path):
    db_path = tmp_path / "ledger.db"
    _seed_version(db_path, 1)

    with sqlite3.connect(db_path) as conn:
        status = ensure_ledger_schema(conn)
        columns = _columns(conn, "transactions")

    assert status.migrated is True
    assert status.version == CURRENT_SCHEMA_VERSION
    assert {"description", "metadata_json", "seq", "status"} <= columns


def test_migration_skipped_when_disabled(tmp_path):
    db_path = tmp_path / "ledger.db"
    _seed_version(db_path, 1)

    with sqlite3.connect(db_path) as conn:
        status = ensure_ledger_schema(conn, migrate=False)

    assert status.version == 1
    assert status.migrated is False


def test_newer_schema_is_rejected(tmp_path):
    db_path = tmp_path / "ledger.db"
    _seed_version(db_path, CURRENT_SCHEMA_VERSION + 1)

    with pytest.raises(LedgerSchemaError) as excinfo:
        SQLiteLedgerStore(str(db_path))

    assert excinfo.value.found == CURRENT_SCHEMA_VERSION + 1


def test_non_integer_schema_version_is_logged_and_rejected(tmp_path, caplog):
    db_path = tmp_path / "ledger.db"
    _seed_version(db_path, "banana")

    with sqlite3.connect(db_path) as conn, pytest.raises(LedgerSchemaError):
        ensure_ledger_schema(conn)

    events = [getattr(record, "event", None) for record in caplog.records]
    assert "ledger_schema_invalid" in events


def test_version_two_adds_missing_columns_only(tmp_path):
    db_path = tmp_path / "ledger.db"
    with sqlite3.connect(db_path) as conn:
        run_migrations(conn, 1, 2)
        assert "description" not in _columns(conn, "transactions")

        run_migrations(conn, 2, 3)
        assert "description" in _columns(conn, "transactions")


def test_run_migrations_rejects_downgrade(tmp_path):
    with sqlite3.connect(tmp_path / "ledger.db") as conn, pytest.raises(ValueError):
        run_migrations(conn, 3, 1)
