# src/portfolio_ledger/ledger/store.py

import abc
import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, ContextManager, Iterator, List, Optional, Tuple

from portfolio_ledger.logging_config import structured_log_extra

from .exceptions import (
    ConcurrencyConflictError,
    LedgerIntegrityError,
    LedgerSchemaError,
    StoreUnavailableError,
)
from .migrations import _ensure_meta_table, _set_schema_version, run_migrations
from .models import Balance, Transaction, TransactionKind, TransactionStatus
from .numeric import decimal_str, to_decimal, to_optional_decimal

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 3
DEFAULT_BUSY_TIMEOUT_SECONDS = 5.0


@dataclass
class SchemaStatus:
    version: int
    migrated: bool
    initialized: bool

    @property
    def changed(self) -> bool:
        return self.migrated or self.initialized


def ensure_ledger_schema(
    conn: sqlite3.Connection, target_version: int = CURRENT_SCHEMA_VERSION, migrate: bool = True
) -> SchemaStatus:
    """Ensure the ledger DB matches the expected schema version.

    Missing schema metadata initializes the DB to ``target_version``.
    If ``migrate`` is True, migrations will be applied when the stored
    version is behind. A schema ahead of ``target_version`` raises
    :class:`LedgerSchemaError`.
    """

    _ensure_meta_table(conn)
    cursor = conn.cursor()
    row = cursor.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()

    initialized = False
    if row is None:
        _set_schema_version(conn, target_version)
        initialized = True
        return SchemaStatus(version=target_version, migrated=False, initialized=initialized)

    try:
        stored_version = int(row[0])
    except (TypeError, ValueError) as exc:
        logger.exception(
            "Invalid schema version stored in ledger DB",
            extra=structured_log_extra(event="ledger_schema_invalid"),
        )
        raise LedgerSchemaError(found=row[0], expected=target_version) from exc

    if stored_version > target_version:
        raise LedgerSchemaError(found=stored_version, expected=target_version)

    migrated = False
    if migrate and stored_version < target_version:
        try:
            run_migrations(conn, stored_version, target_version)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "Failed to run ledger migrations from v%s to v%s", stored_version, target_version,
                extra=structured_log_extra(
                    event="ledger_migration_failed", from_version=stored_version, to_version=target_version
                ),
            )
            raise LedgerSchemaError(found=stored_version, expected=target_version) from exc
        migrated = True
        stored_version = target_version

    return SchemaStatus(version=stored_version, migrated=migrated, initialized=initialized)


def ensure_ledger_tables(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()

    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT
        )
        """
    )

    # Balances Table
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

    # Transactions Table; seq breaks created_at ties in insertion order
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
            created_at TEXT NOT NULL,
            description TEXT,
            metadata_json TEXT
        )
        """
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_transactions_user_created ON transactions(user_id, created_at)"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_transactions_user_asset_status "
        "ON transactions(user_id, asset, status)"
    )

    conn.commit()


def _format_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


_TRANSACTION_COLUMNS = (
    "id, user_id, asset, kind, amount, price, fee, status, external_ref, created_at, description, metadata_json"
)
_BALANCE_COLUMNS = "user_id, asset, available, locked, average_cost, realized_pnl, created_at, updated_at"


def _row_to_transaction(row: Tuple[Any, ...]) -> Transaction:
    return Transaction(
        id=row[0],
        user_id=row[1],
        asset=row[2],
        kind=TransactionKind(row[3]),
        amount=to_decimal(row[4]),
        price=to_optional_decimal(row[5]),
        fee=to_optional_decimal(row[6]),
        status=TransactionStatus(row[7]),
        external_ref=row[8],
        created_at=_parse_ts(row[9]),
        description=row[10],
        metadata=json.loads(row[11]) if row[11] else {},
    )


def _row_to_balance(row: Tuple[Any, ...]) -> Balance:
    return Balance(
        user_id=row[0],
        asset=row[1],
        available=to_decimal(row[2]),
        locked=to_decimal(row[3]),
        average_cost=to_optional_decimal(row[4]),
        realized_pnl=to_optional_decimal(row[5]),
        created_at=_parse_ts(row[6]),
        updated_at=_parse_ts(row[7]),
    )


def _translate_operational_error(exc: sqlite3.OperationalError) -> Exception:
    message = str(exc).lower()
    if "locked" in message or "busy" in message:
        return ConcurrencyConflictError(f"Ledger store is busy: {exc}")
    return StoreUnavailableError(f"Ledger store unavailable: {exc}")


def _build_transaction_filters(
    user_id: str,
    asset: Optional[str],
    kind: Optional[TransactionKind],
    status: Optional[TransactionStatus],
    since: Optional[datetime],
    until: Optional[datetime],
) -> Tuple[str, List[Any]]:
    clause = " WHERE user_id = ?"
    params: List[Any] = [user_id]

    if asset:
        clause += " AND asset = ?"
        params.append(asset)

    if kind is not None:
        clause += " AND kind = ?"
        params.append(TransactionKind(kind).value)

    if status is not None:
        clause += " AND status = ?"
        params.append(TransactionStatus(status).value)

    if since is not None:
        clause += " AND created_at >= ?"
        params.append(_format_ts(since))

    if until is not None:
        clause += " AND created_at <= ?"
        params.append(_format_ts(until))

    return clause, params


class LedgerUnitOfWork(abc.ABC):
    """Read-modify-write access to balances and transactions inside one store transaction."""

    @abc.abstractmethod
    def get_balance(self, user_id: str, asset: str) -> Optional[Balance]:
        pass

    @abc.abstractmethod
    def save_balance(self, balance: Balance):
        """Insert or replace the balance row for ``(user_id, asset)``."""
        pass

    @abc.abstractmethod
    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        pass

    @abc.abstractmethod
    def insert_transaction(self, transaction: Transaction):
        pass

    @abc.abstractmethod
    def update_transaction_status(self, transaction_id: str, status: TransactionStatus):
        pass

    @abc.abstractmethod
    def get_completed_transactions(self, user_id: str, asset: str) -> List[Transaction]:
        """Completed history for one (user, asset), oldest first."""
        pass


class LedgerStore(abc.ABC):
    @abc.abstractmethod
    def unit_of_work(self) -> ContextManager[LedgerUnitOfWork]:
        """Open a write transaction that commits on success and rolls back on any error."""
        pass

    @abc.abstractmethod
    def get_balance(self, user_id: str, asset: str) -> Optional[Balance]:
        pass

    @abc.abstractmethod
    def get_balances(self, user_id: str) -> List[Balance]:
        """Returns every balance for a user ordered by asset."""
        pass

    @abc.abstractmethod
    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        pass

    @abc.abstractmethod
    def get_transactions(
        self,
        user_id: str,
        asset: Optional[str] = None,
        kind: Optional[TransactionKind] = None,
        status: Optional[TransactionStatus] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        ascending: bool = False,
    ) -> List[Transaction]:
        """Retrieves transactions with optional filtering and ordering."""
        pass

    @abc.abstractmethod
    def count_transactions(
        self,
        user_id: str,
        asset: Optional[str] = None,
        kind: Optional[TransactionKind] = None,
        status: Optional[TransactionStatus] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        pass

    def get_schema_version(self) -> Optional[int]:
        """Return the stored schema version if available."""

        return None


class _SQLiteUnitOfWork(LedgerUnitOfWork):
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get_balance(self, user_id: str, asset: str) -> Optional[Balance]:
        row = self.conn.execute(
            f"SELECT {_BALANCE_COLUMNS} FROM balances WHERE user_id = ? AND asset = ?",
            (user_id, asset),
        ).fetchone()
        return _row_to_balance(row) if row else None

    def save_balance(self, balance: Balance):
        self.conn.execute(
            """
            INSERT INTO balances (
                user_id, asset, available, locked, average_cost, realized_pnl, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, asset) DO UPDATE SET
                available=excluded.available,
                locked=excluded.locked,
                average_cost=excluded.average_cost,
                realized_pnl=excluded.realized_pnl,
                updated_at=excluded.updated_at
            """,
            (
                balance.user_id,
                balance.asset,
                str(balance.available),
                str(balance.locked),
                decimal_str(balance.average_cost),
                decimal_str(balance.realized_pnl),
                _format_ts(balance.created_at or balance.updated_at),
                _format_ts(balance.updated_at or balance.created_at),
            ),
        )

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        row = self.conn.execute(
            f"SELECT {_TRANSACTION_COLUMNS} FROM transactions WHERE id = ?", (transaction_id,)
        ).fetchone()
        return _row_to_transaction(row) if row else None

    def insert_transaction(self, transaction: Transaction):
        try:
            self.conn.execute(
                f"""
                INSERT INTO transactions ({_TRANSACTION_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    transaction.id,
                    transaction.user_id,
                    transaction.asset,
                    transaction.kind.value,
                    str(transaction.amount),
                    decimal_str(transaction.price),
                    decimal_str(transaction.fee),
                    transaction.status.value,
                    transaction.external_ref,
                    _format_ts(transaction.created_at),
                    transaction.description,
                    json.dumps(transaction.metadata) if transaction.metadata else None,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise LedgerIntegrityError(f"Could not insert transaction {transaction.id}: {exc}") from exc

    def update_transaction_status(self, transaction_id: str, status: TransactionStatus):
        self.conn.execute(
            "UPDATE transactions SET status = ? WHERE id = ?",
            (TransactionStatus(status).value, transaction_id),
        )

    def get_completed_transactions(self, user_id: str, asset: str) -> List[Transaction]:
        rows = self.conn.execute(
            f"""
            SELECT {_TRANSACTION_COLUMNS} FROM transactions
            WHERE user_id = ? AND asset = ? AND status = ?
            ORDER BY created_at ASC, seq ASC
            """,
            (user_id, asset, TransactionStatus.COMPLETED.value),
        ).fetchall()
        return [_row_to_transaction(row) for row in rows]


class SQLiteLedgerStore(LedgerStore):
    def __init__(
        self,
        db_path: str = "ledger.db",
        busy_timeout_seconds: float = DEFAULT_BUSY_TIMEOUT_SECONDS,
        auto_migrate_schema: bool = True,
    ):
        self.db_path = db_path
        self.busy_timeout_seconds = busy_timeout_seconds
        self.auto_migrate_schema = auto_migrate_schema
        self._init_db()

    def _init_db(self):
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout_seconds)
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Unable to open ledger DB at {self.db_path}: {exc}") from exc

        try:
            ensure_ledger_schema(conn, CURRENT_SCHEMA_VERSION, migrate=self.auto_migrate_schema)
            ensure_ledger_tables(conn)
        except sqlite3.OperationalError as exc:
            raise _translate_operational_error(exc) from exc
        finally:
            conn.close()

    def _get_conn(self) -> sqlite3.Connection:
        try:
            return sqlite3.connect(
                self.db_path, timeout=self.busy_timeout_seconds, isolation_level=None
            )
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Unable to open ledger DB at {self.db_path}: {exc}") from exc

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_conn()
        try:
            yield conn
        except sqlite3.OperationalError as exc:
            raise _translate_operational_error(exc) from exc
        finally:
            conn.close()

    @contextmanager
    def unit_of_work(self) -> Iterator[LedgerUnitOfWork]:
        conn = self._get_conn()
        try:
            try:
                # Reserved write lock up front so concurrent writers serialize here.
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                raise _translate_operational_error(exc) from exc

            try:
                yield _SQLiteUnitOfWork(conn)
                conn.execute("COMMIT")
            except sqlite3.OperationalError as exc:
                conn.execute("ROLLBACK")
                raise _translate_operational_error(exc) from exc
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def get_schema_version(self) -> Optional[int]:
        conn = None
        try:
            conn = self._get_conn()
            cursor = conn.cursor()
            row = cursor.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
            if row is None:
                return None

            try:
                return int(row[0])
            except (TypeError, ValueError):
                logger.warning(
                    "Non-integer schema version stored in ledger DB",
                    extra=structured_log_extra(event="ledger_schema_unknown"),
                )
                return None
        except (sqlite3.Error, StoreUnavailableError) as exc:
            logger.warning("Unable to read ledger schema version: %s", exc)
            return None
        finally:
            if conn is not None:
                conn.close()

    def get_balance(self, user_id: str, asset: str) -> Optional[Balance]:
        with self._read() as conn:
            return _SQLiteUnitOfWork(conn).get_balance(user_id, asset)

    def get_balances(self, user_id: str) -> List[Balance]:
        with self._read() as conn:
            rows = conn.execute(
                f"SELECT {_BALANCE_COLUMNS} FROM balances WHERE user_id = ? ORDER BY asset ASC",
                (user_id,),
            ).fetchall()
        return [_row_to_balance(row) for row in rows]

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self._read() as conn:
            return _SQLiteUnitOfWork(conn).get_transaction(transaction_id)

    def get_transactions(
        self,
        user_id: str,
        asset: Optional[str] = None,
        kind: Optional[TransactionKind] = None,
        status: Optional[TransactionStatus] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        ascending: bool = False,
    ) -> List[Transaction]:
        where, params = _build_transaction_filters(user_id, asset, kind, status, since, until)
        query = f"SELECT {_TRANSACTION_COLUMNS} FROM transactions{where}"

        order = "ASC" if ascending else "DESC"
        query += f" ORDER BY created_at {order}, seq {order}"

        if limit:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, max(offset, 0)])
        elif offset:
            query += " LIMIT -1 OFFSET ?"
            params.append(offset)

        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()

        return [_row_to_transaction(row) for row in rows]

    def count_transactions(
        self,
        user_id: str,
        asset: Optional[str] = None,
        kind: Optional[TransactionKind] = None,
        status: Optional[TransactionStatus] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        where, params = _build_transaction_filters(user_id, asset, kind, status, since, until)
        with self._read() as conn:
            row = conn.execute(f"SELECT COUNT(*) FROM transactions{where}", params).fetchone()
        return int(row[0]) if row else 0
