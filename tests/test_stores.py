"""Tests for the SQLite-backed key/value and record stores."""

import asyncio
from pathlib import Path

import pytest

from schoolyard.cache.database import SCHEMA_VERSION, get_schema_version
from schoolyard.cache.stores import StorageBackend
from schoolyard.data_types import CacheEntry, SchoolRecord


def _record(name: str, division_code: int = 7) -> SchoolRecord:
    return SchoolRecord(
        name=name,
        division="Bath County",
        grade_span="K-5",
        address="1 Main St",
        division_code=division_code,
    )


class TestKeyValueStore:
    """Tests for the cache entry store."""

    async def test_missing_key_is_none(self, storage: StorageBackend) -> None:
        """Reading an unknown key shall return None."""
        assert await storage.cache.get("schools-1") is None

    async def test_round_trip(self, storage: StorageBackend) -> None:
        """A stored entry shall read back with the same fields."""
        entry = CacheEntry(
            division_code=7,
            fingerprint="abc",
            timestamp=1_700_000_000_000,
            data=[_record("Millboro Elementary")],
        )
        await storage.cache.set("schools-7", entry)

        loaded = await storage.cache.get("schools-7")

        assert loaded == entry

    async def test_overwrite(self, storage: StorageBackend) -> None:
        """Setting a key again shall replace the previous entry."""
        await storage.cache.set(
            "schools-7", CacheEntry(division_code=7, fingerprint="old")
        )
        await storage.cache.set(
            "schools-7",
            CacheEntry(
                division_code=7, fingerprint="new", data=[_record("A")]
            ),
        )

        loaded = await storage.cache.get("schools-7")

        assert loaded is not None
        assert loaded.fingerprint == "new"
        assert [r.name for r in loaded.data] == ["A"]

    async def test_entries_survive_reopen(self, tmp_path: Path) -> None:
        """Entries written to a database file shall be readable after reopening it."""
        db_path = tmp_path / "cache.db"
        async with StorageBackend.open(db_path) as storage:
            await storage.cache.set(
                "schools-98", CacheEntry(division_code=98, fingerprint="fp")
            )

        async with StorageBackend.open(db_path) as storage:
            loaded = await storage.cache.get("schools-98")
            async with storage._session_factory() as session:
                version = await get_schema_version(session)

        assert loaded is not None
        assert loaded.fingerprint == "fp"
        assert version == SCHEMA_VERSION

    async def test_in_memory_database(self) -> None:
        """The :memory: path shall give a working, empty store."""
        async with StorageBackend.open(":memory:") as storage:
            assert await storage.cache.get("schools-7") is None
            await storage.cache.set(
                "schools-7", CacheEntry(division_code=7, fingerprint="fp")
            )
            assert await storage.cache.get("schools-7") is not None


class TestRecordStore:
    """Tests for the per-job record store."""

    async def test_push_and_get_all_in_order(
        self, storage: StorageBackend
    ) -> None:
        """Records shall come back in the order they were pushed."""
        store = await storage.open_record_store("schools-7-a")
        for name in ["A", "B", "C"]:
            await store.push(_record(name))

        records = await store.get_all()

        assert [r.name for r in records] == ["A", "B", "C"]

    async def test_concurrent_pushes(self, storage: StorageBackend) -> None:
        """Concurrent pushes shall all be stored."""
        store = await storage.open_record_store("schools-43-a")

        await asyncio.gather(
            *(store.push(_record(f"School {i}", 43)) for i in range(25))
        )

        records = await store.get_all()
        assert len(records) == 25
        assert {r.name for r in records} == {f"School {i}" for i in range(25)}

    async def test_stores_are_isolated(self, storage: StorageBackend) -> None:
        """Two stores shall never see each other's records."""
        first = await storage.open_record_store("schools-7-a")
        second = await storage.open_record_store("schools-98-b")
        await first.push(_record("Only in first"))

        assert await second.get_all() == []
        await second.drop()
        assert len(await first.get_all()) == 1

    async def test_open_discards_leftovers(
        self, storage: StorageBackend
    ) -> None:
        """Opening a store name again shall start it empty."""
        store = await storage.open_record_store("schools-7-a")
        await store.push(_record("Leftover"))

        reopened = await storage.open_record_store("schools-7-a")

        assert await reopened.get_all() == []

    async def test_drop(self, storage: StorageBackend) -> None:
        """A dropped store shall refuse further use; dropping twice is a no-op."""
        store = await storage.open_record_store("schools-7-a")
        await store.push(_record("A"))

        await store.drop()
        await store.drop()

        with pytest.raises(RuntimeError):
            await store.push(_record("B"))
        with pytest.raises(RuntimeError):
            await store.get_all()
        fresh = await storage.open_record_store("schools-7-a")
        assert await fresh.get_all() == []
