"""
Database connection and session management for Contract Hub.

This module provides SQLAlchemy async engine configuration, session factory
construction and the declarative base for ORM models.

Architecture:
- build_engine(): AsyncEngine for the configured database URL
- build_session_factory(): async_sessionmaker bound to an engine
- Base: Declarative base for all ORM models
- create_tables() / drop_tables(): schema management used by db_init and tests

The engine is created explicitly by the application factory (or a test
fixture) rather than at import time, so importing models never opens a
connection.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from contract_hub.config import get_settings


# Declarative base for ORM models using SQLAlchemy 2.0 style
class Base(DeclarativeBase):
    """Base class for all ORM models using SQLAlchemy 2.0 declarative style."""
    pass


def build_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """
    Create the async engine for the configured database.

    SQLite (aiosqlite) is the default for local development and tests; a
    postgresql+asyncpg URL is used in deployment.

    Args:
        database_url: Override for Settings.database_url

    Returns:
        AsyncEngine: Configured engine
    """
    settings = get_settings()
    url = database_url or settings.database_url

    kwargs = {
        "echo": settings.environment == "development" and settings.log_level.upper() == "DEBUG",
        "pool_pre_ping": True,  # Verify connections before using them
    }
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = 5  # Base connection pool size
        kwargs["max_overflow"] = 10  # Additional connections under load

    return create_async_engine(url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create a session factory bound to the engine.

    expire_on_commit is disabled so rows returned by the store stay readable
    after their session is closed.
    """
    return async_sessionmaker(
        bind=engine,
        autoflush=False,  # Control when changes are flushed
        expire_on_commit=False,
    )


async def create_tables(engine: AsyncEngine) -> None:
    """
    Create all tables registered on Base.metadata.

    This operation is idempotent - safe to run multiple times.
    """
    # Import models so they are registered with Base.metadata
    from contract_hub import models  # noqa: F401

    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)


async def drop_tables(engine: AsyncEngine) -> None:
    """Drop all tables registered on Base.metadata."""
    from contract_hub import models  # noqa: F401

    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.drop_all)
