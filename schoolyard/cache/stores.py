"""Key/value and append-only record stores backed by SQLite.

The cache keeps one CacheEntry per division under ``schools-{code}``.
Record stores are scoped to one crawl job: opened under a unique name,
appended to by concurrent DETAIL completions, drained once and dropped.

All stores opened from one StorageBackend share its engine and its lock,
so every statement on the shared SQLite connection is serialized.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Protocol

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker
from sqlmodel import select
from typing_extensions import Self

from schoolyard.cache.database import init_database
from schoolyard.cache.models import CacheEntryRow, JobRecordRow
from schoolyard.data_types import CacheEntry, SchoolRecord

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Latest cache entry per key."""

    async def get(self, key: str) -> CacheEntry | None: ...

    async def set(self, key: str, entry: CacheEntry) -> None: ...


class RecordStore(Protocol):
    """Append-only store of the records produced by one job."""

    name: str

    async def push(self, record: SchoolRecord) -> None: ...

    async def get_all(self) -> list[SchoolRecord]: ...

    async def drop(self) -> None: ...


class SQLKeyValueStore:
    """KeyValueStore over the ``cache_entries`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        lock: asyncio.Lock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._lock = lock or asyncio.Lock()

    async def get(self, key: str) -> CacheEntry | None:
        async with self._lock, self._session_factory() as session:
            row = await session.get(CacheEntryRow, key)
            if row is None:
                return None
            return CacheEntry(
                division_code=row.division_code,
                fingerprint=row.fingerprint,
                timestamp=row.timestamp,
                data=[
                    SchoolRecord.model_validate(item)
                    for item in json.loads(row.data_json)
                ],
            )

    async def set(self, key: str, entry: CacheEntry) -> None:
        """Insert or overwrite the entry stored under ``key``."""
        data_json = json.dumps([r.to_json_dict() for r in entry.data])
        async with self._lock, self._session_factory() as session:
            row = await session.get(CacheEntryRow, key)
            if row is None:
                row = CacheEntryRow(
                    key=key,
                    division_code=entry.division_code,
                    fingerprint=entry.fingerprint,
                    timestamp=entry.timestamp,
                    data_json=data_json,
                )
            else:
                row.division_code = entry.division_code
                row.fingerprint = entry.fingerprint
                row.timestamp = entry.timestamp
                row.data_json = data_json
            session.add(row)
            await session.commit()
        logger.debug(
            f"Stored cache entry {key} ({len(entry.data)} records, "
            f"timestamp {entry.timestamp})"
        )


class SQLRecordStore:
    """RecordStore over the ``job_records`` table, keyed by store name.

    Example::

        store = await SQLRecordStore.open(session_factory, "schools-7-abc")
        await store.push(record)
        records = await store.get_all()
        await store.drop()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        name: str,
        lock: asyncio.Lock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._lock = lock or asyncio.Lock()
        self.name = name
        self._dropped = False

    @classmethod
    async def open(
        cls,
        session_factory: async_sessionmaker,
        name: str,
        lock: asyncio.Lock | None = None,
    ) -> Self:
        """Open a store, discarding leftovers of an earlier store of this name."""
        store = cls(session_factory, name, lock)
        async with store._lock, session_factory() as session:
            await session.execute(
                delete(JobRecordRow).where(JobRecordRow.store_name == name)  # type: ignore[arg-type]
            )
            await session.commit()
        return store

    def _check_open(self) -> None:
        if self._dropped:
            raise RuntimeError(f"Record store {self.name} has been dropped")

    async def push(self, record: SchoolRecord) -> None:
        self._check_open()
        async with self._lock, self._session_factory() as session:
            session.add(
                JobRecordRow(
                    store_name=self.name,
                    record_json=json.dumps(record.to_json_dict()),
                )
            )
            await session.commit()

    async def get_all(self) -> list[SchoolRecord]:
        """All records pushed so far, in insertion order."""
        self._check_open()
        async with self._lock, self._session_factory() as session:
            result = await session.execute(
                select(JobRecordRow.record_json)
                .where(JobRecordRow.store_name == self.name)
                .order_by(JobRecordRow.id)  # type: ignore[arg-type]
            )
            return [
                SchoolRecord.model_validate(json.loads(raw))
                for (raw,) in result.all()
            ]

    async def drop(self) -> None:
        """Delete every record of this store. Dropping twice is a no-op."""
        if self._dropped:
            return
        async with self._lock, self._session_factory() as session:
            await session.execute(
                delete(JobRecordRow).where(JobRecordRow.store_name == self.name)  # type: ignore[arg-type]
            )
            await session.commit()
        self._dropped = True


class StorageBackend:
    """Owns the database engine and hands out the cache and record stores.

    Example::

        async with StorageBackend.open(db_path) as storage:
            entry = await storage.cache.get("schools-7")
            store = await storage.open_record_store("schools-7-abc")
    """

    def __init__(
        self, engine: AsyncEngine, session_factory: async_sessionmaker
    ) -> None:
        self._engine = engine
        self._session_factory = session_factory
        self._lock = asyncio.Lock()
        self.cache = SQLKeyValueStore(session_factory, self._lock)

    @classmethod
    @asynccontextmanager
    async def open(cls, db_path: Path | str) -> AsyncIterator[StorageBackend]:
        """Initialize the database at ``db_path`` and yield a backend."""
        engine, session_factory = await init_database(db_path)
        logger.info(f"Opened storage at {db_path}")
        try:
            yield cls(engine, session_factory)
        finally:
            await engine.dispose()

    async def open_record_store(self, name: str) -> SQLRecordStore:
        return await SQLRecordStore.open(
            self._session_factory, name, self._lock
        )
