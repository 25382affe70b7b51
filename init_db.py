"""Initialize the database schema for profile ingestion.

Creates the profiles table and its unique username index.
Run this before starting the API server, or rely on the startup hook.
"""

import argparse
import asyncio
import sys
import traceback

from profile_ingest.config import settings
from profile_ingest.db import dispose_engine, get_engine
from profile_ingest.models import Base


async def init_database(drop: bool = False):
    """Create all database tables."""
    print(f"Initializing database: {settings.db.url.split('@')[-1]}")

    async with get_engine().begin() as conn:
        if drop:
            await conn.run_sync(Base.metadata.drop_all)
            print("✓ Dropped existing tables")

        await conn.run_sync(Base.metadata.create_all)
        print("✓ Created all tables")

    await dispose_engine()
    print(f"Tables: {', '.join(Base.metadata.tables.keys())}")


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--drop", action="store_true", help="drop existing tables first")
    args = parser.parse_args()

    try:
        await init_database(drop=args.drop)
    except Exception as e:
        print(f"\n❌ Error initializing database: {e}")
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
