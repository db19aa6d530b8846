"""SQLite storage for cache entries and in-flight job records.

One file (or ``":memory:"``) holds every table. All stores share a single
connection through ``StaticPool``, so writers are serialized by the
storage lock rather than by SQLite.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, select

from schoolyard.cache.models import *  # noqa: F401, F403
from schoolyard.cache.models import SchemaInfo

SCHEMA_VERSION = 1
MEMORY = ":memory:"


def database_url(db_path: Path | str) -> str:
    if str(db_path) == MEMORY:
        return "sqlite+aiosqlite:///:memory:"
    return f"sqlite+aiosqlite:///{db_path}"


def _enable_wal(dbapi_conn: Any, connection_record: Any) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


async def _stamp_schema(engine: AsyncEngine) -> None:
    async with AsyncSession(engine) as session:
        if await get_schema_version(session) < SCHEMA_VERSION:
            session.add(SchemaInfo(version=SCHEMA_VERSION))
            await session.commit()


async def init_database(
    db_path: Path | str,
    echo: bool = False,
) -> tuple[AsyncEngine, async_sessionmaker]:
    """Open the database, creating tables and stamping the schema version.

    Returns:
        The engine and a session factory that keeps objects usable after
        commit.
    """
    engine = create_async_engine(
        database_url(db_path),
        echo=echo,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(engine.sync_engine, "connect", _enable_wal)

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    await _stamp_schema(engine)

    return engine, async_sessionmaker(engine, expire_on_commit=False)


async def get_schema_version(session: AsyncSession) -> int:
    """Highest recorded schema version; 0 for a fresh database."""
    result = await session.execute(
        select(SchemaInfo.version)
        .order_by(SchemaInfo.version.desc())  # type: ignore[attr-defined]
        .limit(1)
    )
    row = result.first()
    return row[0] if row else 0
