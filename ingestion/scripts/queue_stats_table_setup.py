"""Create and validate the QueueIntervalStats table in the target database."""

from __future__ import annotations

import argparse
import json
import os

from dotenv import load_dotenv
from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine

from ingestion.tasks.ingest_queue_interval_stats import (
    KEY_COLUMNS,
    QUEUE_STATS_COLUMNS,
    QUEUE_STATS_TABLE,
    QUEUE_STATS_TABLE_NAME,
    build_database_url,
    prepare_table,
)


def _create_table(engine: Engine, *, drop_existing: bool) -> None:
    if drop_existing:
        print(f"Dropping {QUEUE_STATS_TABLE_NAME} ...")
        QUEUE_STATS_TABLE.drop(engine, checkfirst=True)
    print(f"Creating {QUEUE_STATS_TABLE_NAME} if missing ...")
    prepare_table(engine)


def _has_unique_key(inspector, table_name: str) -> bool:
    expected = [name.lower() for name in KEY_COLUMNS]
    for index in inspector.get_indexes(table_name):
        columns = [str(name).lower() for name in index.get("column_names", []) if name]
        if index.get("unique") and columns == expected:
            return True
    for constraint in inspector.get_unique_constraints(table_name):
        columns = [str(name).lower() for name in constraint.get("column_names", []) if name]
        if columns == expected:
            return True
    pk = inspector.get_pk_constraint(table_name) or {}
    return [str(name).lower() for name in pk.get("constrained_columns", []) or []] == expected


def _validate_table_contract(engine: Engine) -> None:
    inspector = inspect(engine)
    if not inspector.has_table(QUEUE_STATS_TABLE_NAME):
        raise RuntimeError(
            f"Required table not found: {QUEUE_STATS_TABLE_NAME}. "
            "Run queue_stats_table_setup.py --action create first."
        )

    print(f"Checking column contract of {QUEUE_STATS_TABLE_NAME} ...")
    existing = {str(col["name"]).lower() for col in inspector.get_columns(QUEUE_STATS_TABLE_NAME)}
    errors = [
        f"Missing column: {QUEUE_STATS_TABLE_NAME}.{name}"
        for name in QUEUE_STATS_COLUMNS
        if name.lower() not in existing
    ]

    print("Checking composite key index ...")
    if not _has_unique_key(inspector, QUEUE_STATS_TABLE_NAME):
        errors.append(
            f"Missing unique index on {QUEUE_STATS_TABLE_NAME} ({', '.join(KEY_COLUMNS)})"
        )

    if errors:
        msg = "\n".join([f" - {e}" for e in errors])
        raise RuntimeError(f"{QUEUE_STATS_TABLE_NAME} contract validation failed:\n{msg}")

    print(f"{QUEUE_STATS_TABLE_NAME} contract validation passed.")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create or validate the QueueIntervalStats table.")
    parser.add_argument(
        "--action",
        choices=["create", "validate", "all"],
        default="all",
        help="Choose which setup action to run.",
    )
    parser.add_argument("--database-url", default=os.getenv("QUEUE_STATS_DATABASE_URL", ""))
    parser.add_argument("--odbc-dsn", default=os.getenv("QUEUE_STATS_ODBC_DSN", ""))
    parser.add_argument("--odbc-dialect", default=os.getenv("QUEUE_STATS_ODBC_DIALECT", ""))
    parser.add_argument(
        "--drop-existing",
        action="store_true",
        help="Drop the table before creating it. Existing rows are lost.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    args = _parse_args(argv)
    database_url = build_database_url(
        database_url=args.database_url,
        odbc_dsn=args.odbc_dsn,
        odbc_dialect=args.odbc_dialect,
    )
    if not database_url:
        raise ValueError("database-url or odbc-dsn is required. Provide arg or set it in .env.")

    engine = create_engine(database_url, future=True)
    try:
        if args.action in {"create", "all"}:
            _create_table(engine, drop_existing=args.drop_existing)
        if args.action in {"validate", "all"}:
            _validate_table_contract(engine)
    finally:
        engine.dispose()

    print(json.dumps({"status": "ok", "action": args.action, "table": QUEUE_STATS_TABLE_NAME}, indent=2))


if __name__ == "__main__":
    main()
