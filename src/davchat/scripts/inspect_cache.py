"""Utility script to dump the tables of a local DavChat cache."""
from __future__ import annotations

import argparse
import sys

from sqlalchemy import MetaData, inspect, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from davchat.core.settings import Settings
from davchat.db.session import create_db_engine


def _resolve_url(url: str | None) -> str:
    if url:
        return url
    # Only the database URL is needed here; the secret is not.
    return Settings(encryption_secret="").database_url


def describe_tables(engine: Engine, limit: int = 10) -> list[str]:
    """Return printable lines describing every table and its first rows."""
    lines: list[str] = []
    inspector = inspect(engine)
    metadata = MetaData()
    metadata.reflect(bind=engine)
    with engine.connect() as conn:
        for table_name in inspector.get_table_names():
            columns = inspector.get_columns(table_name)
            lines.append(f"== {table_name} ==")
            lines.append("columns: " + ", ".join(f"{col['name']} {col['type']}" for col in columns))
            table = metadata.tables[table_name]
            rows = conn.execute(select(table).limit(limit)).all()
            lines.append(f"rows (first {limit}): {len(rows)}")
            for row in rows:
                lines.append("  " + repr(tuple(_shorten(value) for value in row)))
    return lines


def _shorten(value: object) -> object:
    if isinstance(value, bytes):
        return value.hex() if len(value) <= 16 else f"<{len(value)} bytes>"
    return value


def main() -> None:
    parser = argparse.ArgumentParser(description="Print the tables of the local cache")
    parser.add_argument(
        "--url",
        default=None,
        help="Override database URL (defaults to DATABASE_URL from settings)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=10,
        help="Number of rows to show per table.",
    )
    args = parser.parse_args()

    try:
        engine = create_db_engine(_resolve_url(args.url))
        for line in describe_tables(engine, limit=args.limit):
            print(line)
    except SQLAlchemyError as exc:
        print(f"[inspect_cache] ERROR: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
