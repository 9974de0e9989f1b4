#!/usr/bin/env python3
"""Install the auth schema into Postgres and run token housekeeping.

Usage:
    # Create tables (idempotent):
    DATABASE_URL=postgresql://localhost:5432/pitchcoach python scripts/init_db.py

    # Print the DDL without touching the database:
    python scripts/init_db.py --dry-run

    # Also drop refresh tokens past their expiry:
    python scripts/init_db.py --purge-expired

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (or pass --database-url)
"""
from __future__ import annotations

import argparse
import sys

from pitchcoach.config import get_settings
from pitchcoach.storage.postgres import SCHEMA_SQL, PostgresStore


def init_db(database_url: str, *, purge_expired: bool = False) -> dict:
    """Create missing tables and optionally purge expired refresh tokens.

    Returns:
        dict with ``schema`` status and ``purged`` token count
    """
    store = PostgresStore(database_url, min_size=1, max_size=1, verify_schema=False)
    try:
        store.ensure_schema()
        purged = store.purge_expired_refresh_tokens() if purge_expired else 0
    finally:
        store.close()
    return {"schema": "ready", "purged": purged}


def main():
    parser = argparse.ArgumentParser(
        description="Install the PitchCoach auth schema",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Postgres DSN (defaults to DATABASE_URL)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the schema DDL and exit",
    )
    parser.add_argument(
        "--purge-expired",
        action="store_true",
        help="Delete refresh tokens past their expiry",
    )

    args = parser.parse_args()

    if args.dry_run:
        print(SCHEMA_SQL.strip())
        return

    database_url = args.database_url or get_settings().database_url

    try:
        result = init_db(database_url, purge_expired=args.purge_expired)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print("Schema installed.")
    if args.purge_expired:
        print(f"  Expired refresh tokens removed: {result['purged']}")


if __name__ == "__main__":
    main()
