"""Initialize the database schema for the CV reconciliation service.

Creates users, CVs, categories, entries, pending entries, usage records,
import tasks and PubMed subscriptions. Run this before starting the API
server and the worker.

    python init_db.py          # create missing tables
    python init_db.py --reset  # drop everything first
"""

import argparse
import asyncio
import sys

from cvrecon.db import engine
from cvrecon.models import Base
from cvrecon.config import settings


async def init_database(reset: bool = False):
    """Create all database tables."""
    print(f"Initializing database: {settings.db.url.split('@')[-1]}")

    async with engine.begin() as conn:
        if reset:
            await conn.run_sync(Base.metadata.drop_all)
            print("✓ Dropped existing tables")

        await conn.run_sync(Base.metadata.create_all)
        print("✓ Created all tables")

    await engine.dispose()
    print("\n✅ Database initialization complete!")
    print(f"Tables: {', '.join(Base.metadata.tables.keys())}")


async def main(reset: bool):
    """Main entry point."""
    try:
        await init_database(reset=reset)
    except Exception as e:
        print(f"\n❌ Error initializing database: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--reset", action="store_true", help="Drop all tables before creating them")
    args = parser.parse_args()
    asyncio.run(main(args.reset))
