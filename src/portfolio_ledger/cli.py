"""Command line interface for portfolio_ledger utilities."""

from __future__ import annotations

import argparse
import json
from dataclasses import replace
from datetime import datetime
from pathlib import Path
import sqlite3
import sys
from typing import Any, Callable

from portfolio_ledger.bootstrap import build_portfolio_service
from portfolio_ledger.config import load_config
from portfolio_ledger.connection.exceptions import PricingError
from portfolio_ledger.ledger.exceptions import LedgerError, LedgerSchemaError
from portfolio_ledger.ledger.manager import PortfolioService
from portfolio_ledger.ledger.models import (
    Transaction,
    TransactionFilters,
    TransactionKind,
    TransactionStatus,
)
from portfolio_ledger.ledger.store import (
    CURRENT_SCHEMA_VERSION,
    SchemaStatus,
    ensure_ledger_schema,
    ensure_ledger_tables,
)
from portfolio_ledger.logging_config import LOG_FORMATS, configure_logging

LEDGER_TABLES = ["meta", "balances", "transactions"]


def _add_db_path_argument(subparser: argparse.ArgumentParser) -> None:
    """Attach the standard --db-path argument to a subparser."""

    subparser.add_argument(
        "--db-path",
        default=None,
        help="Path to the SQLite ledger store (defaults to store.db_path from the config)",
    )


def _add_service_arguments(subparser: argparse.ArgumentParser) -> None:
    _add_db_path_argument(subparser)
    subparser.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    subparser.add_argument("--env", default=None, help="Config environment overlay (dev, staging, prod)")
    subparser.add_argument("--user", required=True, help="User identifier")


def _resolve_db_path(args: argparse.Namespace) -> str:
    if args.db_path:
        return args.db_path
    return load_config(getattr(args, "config", None), getattr(args, "env", None)).store.db_path


def _db_path_exists(db_path: str) -> bool:
    """Return whether the given DB path exists on disk."""

    return Path(db_path).expanduser().resolve().exists()


def _print_error(message: str) -> int:
    """Print an error message and return a non-zero exit code."""

    print(message)
    return 1


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _build_service(args: argparse.Namespace) -> PortfolioService:
    config = load_config(args.config, args.env)
    if args.db_path:
        config = replace(config, store=replace(config.store, db_path=args.db_path))
    return build_portfolio_service(config)


def _get_schema_version(db_path: str) -> int | None:
    """Fetch the stored schema version from the ledger meta table, if present."""

    conn = sqlite3.connect(db_path)
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='meta'")
        if cursor.fetchone() is None:
            return None

        cursor.execute("SELECT value FROM meta WHERE key = 'schema_version'")
        row = cursor.fetchone()
    finally:
        conn.close()

    if row is None:
        return None

    try:
        return int(row[0])
    except (TypeError, ValueError):
        raise LedgerSchemaError(found=row[0], expected=CURRENT_SCHEMA_VERSION)


def run_migrate_db(db_path: str) -> SchemaStatus:
    """Run migrations for the SQLite ledger store at ``db_path``."""

    with sqlite3.connect(db_path) as conn:
        status = ensure_ledger_schema(conn, CURRENT_SCHEMA_VERSION, migrate=True)
        ensure_ledger_tables(conn)
        conn.commit()

    return status


def print_schema_version(db_path: str) -> SchemaStatus:
    """Ensure metadata exists and return the stored ledger schema version."""

    with sqlite3.connect(db_path) as conn:
        status = ensure_ledger_schema(conn, CURRENT_SCHEMA_VERSION, migrate=False)
        conn.commit()

    return status


def _migrate_db_command(args: argparse.Namespace) -> int:
    """Run ledger schema migrations for the SQLite store at --db-path."""

    db_path = _resolve_db_path(args)
    print(f"Starting migration for {db_path}")

    try:
        stored_version = _get_schema_version(db_path)
        version_text = stored_version if stored_version is not None else "unknown"
        print(f"Stored schema version: {version_text}; target version: {CURRENT_SCHEMA_VERSION}")
        status = run_migrate_db(db_path)
    except LedgerSchemaError as exc:
        return _print_error(
            "Migration failed: "
            f"stored schema version {exc.found} is incompatible with expected {exc.expected}."
        )
    except Exception as exc:  # noqa: BLE001
        return _print_error(f"Migration failed: {exc}")

    print(f"Migration completed successfully to version {status.version}.")
    return 0


def _schema_version_command(args: argparse.Namespace) -> int:
    """Display the current ledger schema version stored at --db-path."""

    resolved_path = Path(_resolve_db_path(args)).expanduser().resolve()

    try:
        status = print_schema_version(resolved_path.as_posix())
    except LedgerSchemaError as exc:
        return _print_error(
            "Failed to read schema version: "
            f"stored value {exc.found} is incompatible with expected {exc.expected}."
        )
    except Exception as exc:  # noqa: BLE001
        return _print_error(f"Failed to read schema version: {exc}")

    if status.initialized:
        print("Schema version not set; meta table or schema_version row is missing.")
        return 0

    print(f"Schema version: {status.version}")
    return 0


def _db_info_command(args: argparse.Namespace) -> int:
    """Display schema version and row counts for the ledger database at --db-path."""

    resolved_path = Path(_resolve_db_path(args)).expanduser().resolve()

    if not _db_path_exists(resolved_path.as_posix()):
        return _print_error(f"DB file not found: {resolved_path}")

    try:
        schema_version = _get_schema_version(resolved_path.as_posix())
    except LedgerSchemaError as exc:
        return _print_error(
            "Failed to read schema version: "
            f"stored value {exc.found} is incompatible with expected {exc.expected}."
        )
    except Exception as exc:  # noqa: BLE001
        return _print_error(f"Failed to read schema version: {exc}")

    try:
        with sqlite3.connect(resolved_path.as_posix()) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in cursor.fetchall()}

            version_text = schema_version if schema_version is not None else "unknown"
            print(f"DB path: {resolved_path}")
            print(f"Schema version: {version_text}")

            for table in LEDGER_TABLES:
                if table not in existing_tables:
                    print(f"{table}: (missing)")
                    continue

                cursor.execute(f"SELECT COUNT(*) FROM {table}")
                count = cursor.fetchone()[0]
                print(f"{table}: {count} rows")

        return 0
    except Exception as exc:  # noqa: BLE001
        return _print_error(f"Failed to read DB info: {exc}")


def _db_check_command(args: argparse.Namespace) -> int:
    """Run PRAGMA integrity_check plus a negative-balance scan against --db-path."""

    resolved_path = Path(_resolve_db_path(args)).expanduser().resolve()

    if not _db_path_exists(resolved_path.as_posix()):
        return _print_error(f"DB file not found: {resolved_path}")

    try:
        with sqlite3.connect(resolved_path.as_posix()) as conn:
            cursor = conn.cursor()
            cursor.execute("PRAGMA integrity_check")
            row = cursor.fetchone()
            cursor.execute(
                "SELECT user_id, asset, available, locked FROM balances "
                "WHERE CAST(available AS REAL) + CAST(locked AS REAL) < 0"
            )
            negative = cursor.fetchall()
    except Exception as exc:  # noqa: BLE001
        return _print_error(f"Failed to run integrity check: {exc}")

    result = row[0] if row else None
    print(f"PRAGMA integrity_check: {result}")

    for user_id, asset, available, locked in negative:
        print(f"Negative balance: user={user_id} asset={asset} available={available} locked={locked}")

    return 0 if result == "ok" and not negative else 1


def _record_command(args: argparse.Namespace) -> int:
    """Apply a completed transaction for --user and print the resulting balance."""

    try:
        fields: dict = dict(
            user_id=args.user,
            asset=args.asset.upper(),
            kind=TransactionKind(args.kind.upper()),
            amount=args.amount,
            price=args.price,
            fee=args.fee,
            status=TransactionStatus.COMPLETED,
            external_ref=args.external_ref,
            description=args.description,
        )
        if args.id:
            fields["id"] = args.id
        if args.created_at:
            fields["created_at"] = datetime.fromisoformat(args.created_at)

        service = _build_service(args)
        balance = service.record_completed_transaction(args.user, Transaction(**fields))
    except (LedgerError, PricingError, ValueError) as exc:
        return _print_error(f"Failed to record transaction: {exc}")

    _print_json(balance.to_dict())
    return 0


def _balances_command(args: argparse.Namespace) -> int:
    try:
        views = _build_service(args).get_asset_balances(args.user)
    except (LedgerError, PricingError) as exc:
        return _print_error(f"Failed to load balances: {exc}")

    _print_json([view.to_dict() for view in views])
    return 0


def _summary_command(args: argparse.Namespace) -> int:
    try:
        summary = _build_service(args).get_portfolio_summary(args.user)
    except (LedgerError, PricingError) as exc:
        return _print_error(f"Failed to build summary: {exc}")

    _print_json(summary.to_dict())
    return 0


def _history_command(args: argparse.Namespace) -> int:
    filters = TransactionFilters(
        asset=args.asset.upper() if args.asset else None,
        kind=TransactionKind(args.kind.upper()) if args.kind else None,
        status=TransactionStatus(args.status.upper()) if args.status else None,
        limit=args.limit,
        offset=args.offset,
    )
    try:
        page = _build_service(args).get_transaction_history(args.user, filters)
    except LedgerError as exc:
        return _print_error(f"Failed to load transactions: {exc}")

    _print_json(
        {
            "total": page.total,
            "limit": page.limit,
            "offset": page.offset,
            "transactions": [tx.to_dict() for tx in page.items],
        }
    )
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="portfolio-ledger", description="Portfolio ledger utilities")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default WARNING)")
    parser.add_argument(
        "--log-format", choices=LOG_FORMATS, default="json", help="Log rendering (default json)"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    migrate_parser = subparsers.add_parser(
        "migrate-db",
        help="Run ledger DB migrations against the SQLite store",
    )
    _add_db_path_argument(migrate_parser)
    migrate_parser.set_defaults(func=_migrate_db_command)

    version_parser = subparsers.add_parser(
        "db-schema-version",
        help="Show the stored schema version for the SQLite ledger DB",
    )
    _add_db_path_argument(version_parser)
    version_parser.set_defaults(func=_schema_version_command)

    db_info_parser = subparsers.add_parser(
        "db-info",
        help="Show schema version and row counts for the SQLite ledger DB",
    )
    _add_db_path_argument(db_info_parser)
    db_info_parser.set_defaults(func=_db_info_command)

    db_check_parser = subparsers.add_parser(
        "db-check",
        help="Run integrity checks against the SQLite ledger DB",
    )
    _add_db_path_argument(db_check_parser)
    db_check_parser.set_defaults(func=_db_check_command)

    kinds = [kind.value for kind in TransactionKind]
    statuses = [status.value for status in TransactionStatus]

    record_parser = subparsers.add_parser("record", help="Apply a completed transaction to a balance")
    _add_service_arguments(record_parser)
    record_parser.add_argument("--asset", required=True)
    record_parser.add_argument("--kind", required=True, type=str.upper, choices=kinds)
    record_parser.add_argument("--amount", required=True)
    record_parser.add_argument("--price", default=None)
    record_parser.add_argument("--fee", default=None)
    record_parser.add_argument("--id", default=None, help="Transaction id (generated when omitted)")
    record_parser.add_argument("--external-ref", default=None, help="External reference such as a chain tx hash")
    record_parser.add_argument("--description", default=None)
    record_parser.add_argument("--created-at", default=None, help="ISO-8601 timestamp (defaults to now)")
    record_parser.set_defaults(func=_record_command)

    balances_parser = subparsers.add_parser("balances", help="Show valued balances for a user")
    _add_service_arguments(balances_parser)
    balances_parser.set_defaults(func=_balances_command)

    summary_parser = subparsers.add_parser("summary", help="Show the portfolio summary for a user")
    _add_service_arguments(summary_parser)
    summary_parser.set_defaults(func=_summary_command)

    history_parser = subparsers.add_parser("history", help="List a user's transactions, newest first")
    _add_service_arguments(history_parser)
    history_parser.add_argument("--asset", default=None)
    history_parser.add_argument("--kind", default=None, type=str.upper, choices=kinds)
    history_parser.add_argument("--status", default=None, type=str.upper, choices=statuses)
    history_parser.add_argument("--limit", type=int, default=50)
    history_parser.add_argument("--offset", type=int, default=0)
    history_parser.set_defaults(func=_history_command)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for the `portfolio-ledger` console script."""

    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(level=args.log_level.upper(), fmt=args.log_format)
    command: Callable[[argparse.Namespace], int] = getattr(args, "func")
    return command(args)


if __name__ == "__main__":
    sys.exit(main())
