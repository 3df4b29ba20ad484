#!/usr/bin/env python3
"""
Create the call store tables from the SQLAlchemy models.

Usage:
    python scripts/migrate_db.py                 # create missing tables
    python scripts/migrate_db.py --check         # report missing tables, exit 1 if any
    python scripts/migrate_db.py --url sqlite:///./radio_pager.db
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def migrate(url: str, check_only: bool) -> int:
    from database.models import Base
    from database.session import create_engine, create_tables, existing_tables

    engine = create_engine(url)
    try:
        missing = sorted(set(Base.metadata.tables) - set(await existing_tables(engine)))
        print(f"{engine.dialect.name}: {len(Base.metadata.tables)} tables defined, "
              f"missing: {', '.join(missing) or 'none'}")
        if check_only:
            return 1 if missing else 0
        created = await create_tables(engine)
        print(f"created: {', '.join(created) or 'none'}")
        return 0
    finally:
        await engine.dispose()


def main():
    from config.settings import load_settings

    parser = argparse.ArgumentParser(description="Create call store tables")
    parser.add_argument("--check", action="store_true", help="report only, no changes")
    parser.add_argument("--url", default=None, help="database URL (defaults to database.url)")
    args = parser.parse_args()

    url = args.url or load_settings().database.url
    sys.exit(asyncio.run(migrate(url, args.check)))


if __name__ == "__main__":
    main()
