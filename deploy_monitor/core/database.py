"""
Deploy Monitor - Database Connection
====================================

Async SQLAlchemy engine and session factories.
"""

from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


# ==========================================================================
# Engine Setup
# ==========================================================================

def create_engine(
    database_url: str,
    *,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> AsyncEngine:
    """Create async database engine with connection pooling."""
    # SQLite doesn't support pool_size/max_overflow
    if "sqlite" in database_url:
        options: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url:
            # One shared connection, otherwise every session sees an empty database
            options["poolclass"] = StaticPool
        return create_async_engine(database_url, echo=echo, **options)

    return create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        echo=echo,
        pool_pre_ping=True,  # Verify connections before use
    )


def ensure_sqlite_directory(database_url: str) -> None:
    """Create the parent directory of a file-based SQLite database."""
    url = make_url(database_url)
    if not url.drivername.startswith("sqlite"):
        return
    database = url.database
    if not database or database == ":memory:":
        return
    Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)


# ==========================================================================
# Session Factory
# ==========================================================================

def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to ``engine``."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
