"""
Tests for Async Storage Interface

Tests the async adapter over the sync backends: CRUD, insert-if-absent under
concurrency, transaction rollback and transaction serialization.
"""

import pytest
import pytest_asyncio
import asyncio

from loan_tracker.async_storage import (
    AsyncInMemoryStorage, AsyncStorageAdapter, create_async_storage
)
from loan_tracker.config import TrackerConfig
from loan_tracker.exceptions import ConfigurationError
from loan_tracker.storage import InMemoryStorage, SQLiteStorage


class TestAsyncInMemoryStorage:
    """Test AsyncInMemoryStorage functionality"""

    @pytest_asyncio.fixture
    async def storage(self):
        return AsyncInMemoryStorage()

    @pytest.mark.asyncio
    async def test_basic_crud_operations(self, storage):
        await storage.save("records", "a", {"id": "a", "amount": "10.00"})

        assert await storage.load("records", "a") == {"id": "a", "amount": "10.00"}
        assert await storage.load("records", "missing") is None
        assert await storage.count("records") == 1
        assert len(await storage.load_all("records")) == 1
        assert await storage.find("records", {"amount": "10.00"}) == [{"id": "a", "amount": "10.00"}]

    @pytest.mark.asyncio
    async def test_concurrent_insert_if_absent_creates_once(self, storage):
        results = await asyncio.gather(*[
            storage.insert_if_absent("categories", "cat-1", {"id": "cat-1", "writer": i})
            for i in range(10)
        ])

        created = [record for record, was_created in results if was_created]
        assert len(created) == 1
        assert {record["writer"] for record, _ in results} == {created[0]["writer"]}
        assert await storage.count("categories") == 1

    @pytest.mark.asyncio
    async def test_atomic_rollback(self, storage):
        with pytest.raises(RuntimeError):
            async with storage.atomic():
                await storage.save("records", "a", {"id": "a"})
                raise RuntimeError("boom")

        assert await storage.load("records", "a") is None

    @pytest.mark.asyncio
    async def test_atomic_is_reentrant_for_owner(self, storage):
        async with storage.atomic():
            await storage.save("records", "outer", {"id": "outer"})
            async with storage.atomic():
                await storage.save("records", "inner", {"id": "inner"})

        assert await storage.count("records") == 2

    @pytest.mark.asyncio
    async def test_transactions_are_serialized(self, storage):
        events = []

        async def worker(name):
            async with storage.atomic():
                events.append(f"{name}-start")
                await asyncio.sleep(0.01)
                await storage.save("records", name, {"id": name})
                events.append(f"{name}-end")

        await asyncio.gather(worker("first"), worker("second"))

        assert events in (
            ["first-start", "first-end", "second-start", "second-end"],
            ["second-start", "second-end", "first-start", "first-end"]
        )

    @pytest.mark.asyncio
    async def test_cancelled_transaction_rolls_back(self, storage):
        entered = asyncio.Event()

        async def slow_write():
            async with storage.atomic():
                await storage.save("records", "a", {"id": "a"})
                entered.set()
                await asyncio.sleep(10)

        task = asyncio.create_task(slow_write())
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await storage.load("records", "a") is None

    @pytest.mark.asyncio
    async def test_writes_from_other_tasks_survive_rollback(self, storage):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def failing_transaction():
            async with storage.atomic():
                await storage.save("records", "dropped", {"id": "dropped"})
                entered.set()
                await release.wait()
                raise RuntimeError("boom")

        transaction = asyncio.create_task(failing_transaction())
        await entered.wait()
        outside = asyncio.create_task(storage.save("records", "kept", {"id": "kept"}))
        await asyncio.sleep(0.01)

        # Waits for the open transaction instead of writing into it
        assert not outside.done()

        release.set()
        with pytest.raises(RuntimeError):
            await transaction
        await outside

        assert await storage.load("records", "kept") == {"id": "kept"}
        assert await storage.load("records", "dropped") is None

    @pytest.mark.asyncio
    async def test_subtasks_of_owner_join_transaction(self, storage):
        with pytest.raises(RuntimeError):
            async with storage.atomic():
                await asyncio.wait_for(storage.save("records", "a", {"id": "a"}), timeout=1)
                await asyncio.create_task(storage.save("records", "b", {"id": "b"}))
                raise RuntimeError("boom")

        assert await storage.count("records") == 0

    def test_supports_transactions(self):
        assert AsyncInMemoryStorage().supports_transactions
        assert not AsyncInMemoryStorage(transactional=False).supports_transactions


class TestAsyncSQLiteStorage:
    """Test the adapter over SQLite"""

    @pytest_asyncio.fixture
    async def storage(self, tmp_path):
        storage = AsyncStorageAdapter(SQLiteStorage(tmp_path / "async.db"))
        yield storage
        await storage.close()

    @pytest.mark.asyncio
    async def test_crud_and_rollback(self, storage):
        await storage.save("records", "kept", {"id": "kept"})

        with pytest.raises(ValueError):
            async with storage.atomic():
                await storage.save("records", "dropped", {"id": "dropped"})
                raise ValueError("boom")

        assert await storage.load("records", "kept") == {"id": "kept"}
        assert await storage.load("records", "dropped") is None

    @pytest.mark.asyncio
    async def test_insert_if_absent(self, storage):
        first = await storage.insert_if_absent("records", "a", {"id": "a", "value": 1})
        second = await storage.insert_if_absent("records", "a", {"id": "a", "value": 2})

        assert first == ({"id": "a", "value": 1}, True)
        assert second == ({"id": "a", "value": 1}, False)

    @pytest.mark.asyncio
    async def test_writes_from_other_tasks_survive_rollback(self, storage):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def failing_transaction():
            async with storage.atomic():
                await storage.save("records", "dropped", {"id": "dropped"})
                entered.set()
                await release.wait()
                raise RuntimeError("boom")

        transaction = asyncio.create_task(failing_transaction())
        await entered.wait()
        outside = asyncio.create_task(storage.save("records", "kept", {"id": "kept"}))
        await asyncio.sleep(0.01)
        release.set()

        with pytest.raises(RuntimeError):
            await transaction
        await outside

        assert await storage.load("records", "kept") == {"id": "kept"}
        assert await storage.load("records", "dropped") is None


class TestCreateAsyncStorage:
    """Test storage selection from configuration"""

    def test_memory_backend(self):
        storage = create_async_storage(TrackerConfig(storage_backend="memory"))
        assert isinstance(storage, AsyncInMemoryStorage)

    def test_sqlite_backend(self, tmp_path):
        storage = create_async_storage(
            TrackerConfig(storage_backend="sqlite", database_path=str(tmp_path / "t.db"))
        )
        assert isinstance(storage.sync_storage, SQLiteStorage)
        storage.sync_storage.close()

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError):
            create_async_storage(TrackerConfig(storage_backend="postgres"))

    def test_adapter_exposes_sync_storage(self):
        sync = InMemoryStorage()
        assert AsyncStorageAdapter(sync).sync_storage is sync
