"""
Database Connection Manager
===========================

Handles the async connection to the loop's relational store. By default the
database is a SQLite file stored in .adaptloop/loop.db under a base directory;
any async SQLAlchemy URL (e.g. postgresql+asyncpg://...) may be passed instead.

Each init_db() call returns its own Database; whoever opened it disposes it.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Union

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine

from adaptloop.db.models import Base


@dataclass
class Database:
    """An engine and the session maker bound to it."""
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]

    async def dispose(self) -> None:
        """Close pooled connections."""
        await self.engine.dispose()


def resolve_database_url(target: Union[Path, str]) -> str:
    """Turn a base directory into a SQLite URL; pass URLs through unchanged."""
    if isinstance(target, str) and "://" in target:
        return target

    db_dir = Path(target) / ".adaptloop"
    db_dir.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{db_dir / 'loop.db'}"


async def init_db(target: Union[Path, str], echo: bool = False) -> Database:
    """
    Open the database and create tables if they don't exist.

    Args:
        target: Base directory for the SQLite file, or a full async database URL
        echo: Log emitted SQL

    Returns:
        A Database owning a fresh engine
    """
    engine = create_async_engine(resolve_database_url(target), echo=echo)

    # Create tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return Database(engine=engine, session_maker=async_sessionmaker(engine, expire_on_commit=False))
