"""
Database initialization script for Contract Hub.

Creates every table registered on Base.metadata for the configured
DATABASE_URL. SQLite (the default) needs no preparation; for PostgreSQL the
database must exist and DATABASE_URL must use the postgresql+asyncpg driver.

Usage:
    python -m contract_hub.db_init

This script is safe to run multiple times (idempotent operation).
"""

import asyncio
import re
import sys

from contract_hub.config import get_settings
from contract_hub.database import Base, build_engine, create_tables


def mask_password(database_url: str) -> str:
    """
    Mask password in database URL for safe display.

    Args:
        database_url: Full database URL with credentials

    Returns:
        Database URL with password replaced by asterisks
    """
    return re.sub(r'://([^:]+):([^@]+)@', r'://\1:****@', database_url)


async def init_database() -> None:
    """
    Create all Contract Hub tables.

    Raises:
        Exception: If the database connection fails or table creation errors occur
    """
    settings = get_settings()
    print("=" * 60)
    print("Contract Hub - Database Initialization")
    print("=" * 60)
    print(f"\nDatabase: {mask_password(settings.database_url)}")

    engine = build_engine(settings.database_url)
    try:
        print("\nCreating database tables...")
        await create_tables(engine)
        print("✓ Database tables created successfully")
        print("\nTables:")
        for table in Base.metadata.sorted_tables:
            print(f"  - {table.name}")
    except Exception as e:
        error_msg = str(e).lower()
        if "could not connect" in error_msg or "connection refused" in error_msg:
            print("\n❌ ERROR: Cannot connect to the database")
            print("\nTroubleshooting:")
            print("  1. Ensure PostgreSQL is running")
            print("  2. Verify DATABASE_URL in .env file")
        elif "does not exist" in error_msg and "database" in error_msg:
            print("\n❌ ERROR: Database does not exist")
            print("  createdb contract_hub")
        else:
            print(f"\n❌ ERROR creating tables: {e}")
        raise
    finally:
        await engine.dispose()

    print("\n" + "=" * 60)
    print("✓ Database initialization completed successfully!")
    print("=" * 60)
    print("\nNext step:")
    print("  python3 -m uvicorn contract_hub.main:app --reload\n")


if __name__ == "__main__":
    try:
        asyncio.run(init_database())
    except Exception:
        # Error details already printed by init_database()
        sys.exit(1)
