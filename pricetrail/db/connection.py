"""Database connection and session management for PriceTrail.

Provides async SQLAlchemy session management with connection pooling.
Every ingest batch, price insert and maintenance job opens its own session,
so a connection is held for exactly one transaction.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from pricetrail.config import get_config
from pricetrail.db.models import Base

# Global engine instance
_engine: AsyncEngine | None = None
_session_factory: sessionmaker | None = None


def create_engine_for_url(url: str, echo: bool = False, **pool: Any) -> AsyncEngine:
    """Create an async engine, dropping pool settings SQLite does not accept."""
    engine_kwargs: dict[str, Any] = {"echo": echo}

    # SQLite doesn't support connection pooling parameters
    if "sqlite" not in url.lower():
        engine_kwargs.update(pool)
        engine_kwargs.update({
            "pool_pre_ping": True,  # Verify connections before using
            "pool_recycle": 3600,  # Recycle connections after 1 hour
        })

    return create_async_engine(url, **engine_kwargs)


def get_engine() -> AsyncEngine:
    """Get or create singleton async engine.

    Returns:
        AsyncEngine: SQLAlchemy async engine

    Raises:
        KeyError: If database URL is not configured
    """
    global _engine

    if _engine is None:
        db_config = get_config().db
        _engine = create_engine_for_url(
            db_config.url,
            echo=db_config.echo,
            pool_size=db_config.pool_size,
            max_overflow=db_config.pool_max_overflow,
            pool_timeout=db_config.pool_timeout,
        )

    return _engine


def make_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Don't expire objects after commit
    )


def get_session_factory() -> sessionmaker:
    """Get or create session factory.

    Returns:
        sessionmaker: Session factory for creating AsyncSession instances
    """
    global _session_factory

    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())

    return _session_factory


def engine_of(session_factory: sessionmaker) -> AsyncEngine:
    """Engine a session factory is bound to."""
    return session_factory.kw["bind"]


@asynccontextmanager
async def get_session(
    session_factory: sessionmaker | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Get async database session (context manager).

    Commits when the block exits cleanly, rolls back otherwise.

    Usage:
        async with get_session() as session:
            result = await session.execute(query)

    Yields:
        AsyncSession: SQLAlchemy async session

    Raises:
        SQLAlchemyError: If database operation fails
    """
    factory = session_factory or get_session_factory()
    session = factory()

    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Initialize database (create all tables and the latest-rates view).

    Raises:
        SQLAlchemyError: If table creation fails
    """
    engine = engine or get_engine()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database engine and dispose connections.

    Call this on application shutdown.
    """
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
