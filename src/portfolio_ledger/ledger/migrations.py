"""Database migrations for the ledger SQLite backend."""

from __future__ import annotations

import sqlite3
from typing import Callable, Dict


Migration = Callable[[sqlite3.Connection], None]


def _ensure_meta_table(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT
        )
        """
    )
    conn.commit()


def _ensure_schema_version_row(conn: sqlite3.Connection, version: int) -> None:
    cursor = conn.cursor()
    cursor.execute(
        "INSERT OR IGNORE INTO meta (key, value) VALUES ('schema_version', ?)",
        (str(version),),
    )
    conn.commit()


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    cursor = conn.cursor()
    cursor.execute(
        """
        INSERT INTO meta (key, value)
        VALUES ('schema_version', ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value
        """,
        (str(version),),
    )
    conn.commit()


def _column_names(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def migrate_1_to_2(conn: sqlite3.Connection) -> None:
    """Initial balance and transaction storage."""
    cursor = conn.cursor()
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS balances (
            user_id TEXT NOT NULL,
            asset TEXT NOT NULL,
            available TEXT NOT NULL,
            locked TEXT NOT NULL,
            average_cost TEXT,
            realized_pnl TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (user_id, asset)
        )
        """
    )
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS transactions (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            user_id TEXT NOT NULL,
            asset TEXT NOT NULL,
            kind TEXT NOT NULL,
            amount TEXT NOT NULL,
            price TEXT,
            fee TEXT,
            status TEXT NOT NULL,
            external_ref TEXT,
            created_at TEXT NOT NULL
        )
        """
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_transactions_user_created ON transactions(user_id, created_at)"
    )


def migrate_2_to_3(conn: sqlite3.Connection) -> None:
    """Add free-form description and metadata to transactions."""
    cursor = conn.cursor()
    columns = _column_names(conn, "transactions")
    if "description" not in columns:
        cursor.execute("ALTER TABLE transactions ADD COLUMN description TEXT")
    if "metadata_json" not in columns:
        cursor.execute("ALTER TABLE transactions ADD COLUMN metadata_json TEXT")
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_transactions_user_asset_status "
        "ON transactions(user_id, asset, status)"
    )


def run_migrations(conn: sqlite3.Connection, from_version: int, to_version: int) -> None:
    """Run ledger schema migrations sequentially."""
    if from_version == to_version:
        return

    if from_version > to_version:
        raise ValueError("from_version cannot be greater than to_version")

    _ensure_meta_table(conn)
    _ensure_schema_version_row(conn, from_version)

    migrations: Dict[int, Migration] = {
        1: migrate_1_to_2,
        2: migrate_2_to_3,
    }

    for version in range(from_version, to_version):
        migrate = migrations.get(version)
        if migrate is None:
            raise ValueError(f"No migration path from version {version} to {version + 1}")

        migrate(conn)
        _set_schema_version(conn, version + 1)
