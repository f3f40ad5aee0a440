#!/usr/bin/env python3
"""Install the account directory schema into Postgres.

Usage:
    # Using environment variables:
    DATABASE_URL=postgresql://localhost:5432/agora python scripts/init_db.py

    # Or with command line args:
    python scripts/init_db.py --dsn postgresql://localhost:5432/agora

    # Print the DDL without connecting:
    python scripts/init_db.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def init_db(dsn: str) -> None:
    # Import here so a --dry-run does not need a reachable database
    from agora.storage.postgres import PostgresDirectory

    directory = PostgresDirectory(dsn, min_size=1, max_size=1, verify_schema=False)
    try:
        directory.ensure_schema()
        directory._verify_required_schema()
    finally:
        directory.close()


def main():
    parser = argparse.ArgumentParser(
        description="Create the Agora users table and indexes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dsn",
        default=os.environ.get("DATABASE_URL"),
        help="Postgres DSN (or set DATABASE_URL env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the schema instead of applying it",
    )

    args = parser.parse_args()

    if args.dry_run:
        from agora.storage.postgres import SCHEMA_SQL

        print(SCHEMA_SQL.strip())
        return

    if not args.dsn:
        print("Error: --dsn or DATABASE_URL environment variable required")
        sys.exit(1)

    try:
        init_db(args.dsn)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print("Schema installed.")


if __name__ == "__main__":
    main()
