#!/usr/bin/env python3
"""Create the lockgate tables and optionally purge expired sessions.

Usage:
    # Using environment variables:
    DATABASE_URL=postgresql://localhost:5432/lockgate python scripts/init_db.py

    # Or with command line args, also deleting expired session rows:
    python scripts/init_db.py --dsn postgresql://localhost:5432/lockgate --sweep

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def init_db(dsn: str, *, sweep: bool = False, dry_run: bool = False) -> dict:
    """Apply the schema and report what was done.

    Returns:
        dict with status ('initialized' or 'dry_run') and the number of
        expired sessions removed
    """
    from lockgate.storage.postgres import SCHEMA_STATEMENTS, PostgresStore

    if dry_run:
        for statement in SCHEMA_STATEMENTS:
            print(f"[DRY RUN] {' '.join(statement.split())}")
        return {"status": "dry_run", "removed": 0}

    store = PostgresStore(dsn, min_size=1, max_size=1, auto_migrate=True)
    try:
        await store.open()
        removed = await store.delete_expired_sessions() if sweep else 0
    finally:
        await store.close()
    return {"status": "initialized", "removed": removed}


def main():
    parser = argparse.ArgumentParser(
        description="Initialize the lockgate database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dsn",
        default=os.environ.get("DATABASE_URL"),
        help="Postgres DSN (or set DATABASE_URL env var)",
    )
    parser.add_argument(
        "--sweep",
        action="store_true",
        help="Delete expired session rows after applying the schema",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the schema statements without connecting",
    )

    args = parser.parse_args()

    if not args.dsn and not args.dry_run:
        print("Error: --dsn or DATABASE_URL environment variable required")
        sys.exit(1)

    try:
        result = asyncio.run(init_db(args.dsn, sweep=args.sweep, dry_run=args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "initialized":
        print("Schema is up to date.")
        if args.sweep:
            print(f"  Expired sessions removed: {result['removed']}")


if __name__ == "__main__":
    main()
