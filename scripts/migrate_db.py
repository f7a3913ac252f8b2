#!/usr/bin/env python3
"""
Database Migration — create the chat tables from the SQLAlchemy models.

Usage:
    # Local:
    python scripts/migrate_db.py

    # Another settings file:
    python scripts/migrate_db.py --config config/settings.yaml

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text


def _existing_tables_sql(dialect: str) -> str:
    if dialect == "postgresql":
        return "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
    if dialect == "mysql":
        return "SHOW TABLES"
    return "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"


async def existing_tables(db) -> list[str]:
    async with db.engine.connect() as conn:
        result = await conn.execute(text(_existing_tables_sql(db.engine.dialect.name)))
        return [row[0] for row in result.fetchall()]


async def run_migration(config_path: str = None, check_only: bool = False) -> list[str]:
    """Create missing tables (or only report them). Returns the tables still missing."""
    from config.settings import load_settings
    from database.models import Base
    from database.session import Database

    settings = load_settings(config_path)
    db = Database(settings.database.url)
    defined = list(Base.metadata.tables.keys())

    try:
        if check_only:
            print(f"Database: {db.engine.dialect.name}")
            print(f"Tables defined: {', '.join(defined)}")
            existing = await existing_tables(db)
            print(f"Tables existing: {', '.join(existing) or '(none)'}")
            missing = sorted(set(defined) - set(existing))
            if missing:
                print(f"Tables MISSING: {', '.join(missing)}")
                print("Run without --check to create them.")
            else:
                print("All tables exist. ✓")
            return missing

        print("Running database migration...")
        await db.init()
        existing = await existing_tables(db)
        print(f"Tables created/verified: {', '.join(t for t in existing if t in defined)}")
        print("Migration complete. ✓")
        return sorted(set(defined) - set(existing))
    finally:
        await db.close()


def main(argv: list[str] = None):
    from dotenv import load_dotenv
    load_dotenv()

    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    args = parser.parse_args(argv)

    missing = asyncio.run(run_migration(args.config, check_only=args.check))
    if args.check and missing:
        sys.exit(1)


if __name__ == "__main__":
    main()
