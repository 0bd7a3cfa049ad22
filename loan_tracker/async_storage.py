"""
Async Storage Backend Module

Async view of the table store used by the repository and audit trail. Sync
backends run in worker threads. Transactions are serialized, and while one is
open every call from outside it waits, so a rollback only ever discards the
transaction's own writes.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple
from contextlib import asynccontextmanager
import asyncio
import contextvars

from .config import TrackerConfig
from .exceptions import ConfigurationError
from .storage import StorageInterface, InMemoryStorage, SQLiteStorage

# Transaction opened by the current task; inherited by the tasks it spawns
_current_transaction = contextvars.ContextVar("loan_tracker_transaction", default=None)


class AsyncStorageInterface(ABC):
    """Abstract interface for async storage backends"""

    supports_transactions = False

    @abstractmethod
    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    async def insert_if_absent(self, table: str, record_id: str,
                               data: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        """Atomically insert a record unless one with the same id exists"""
        pass

    @abstractmethod
    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    async def count(self, table: str) -> int:
        """Count records in table"""
        pass

    async def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass

    async def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    async def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    async def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @asynccontextmanager
    async def atomic(self):
        """Context manager for atomic operations"""
        await self.begin_transaction()
        try:
            yield
            await self.commit()
        except BaseException:
            await self.rollback()
            raise


class AsyncStorageAdapter(AsyncStorageInterface):
    """Runs a sync StorageInterface in worker threads"""

    def __init__(self, sync_storage: StorageInterface):
        self._sync_storage = sync_storage
        self._lock = asyncio.Lock()
        self._tx_lock = asyncio.Lock()
        self._tx_token: Optional[object] = None

    @property
    def supports_transactions(self) -> bool:
        return self._sync_storage.supports_transactions

    @property
    def sync_storage(self) -> StorageInterface:
        return self._sync_storage

    def _in_own_transaction(self) -> bool:
        return self._tx_token is not None and _current_transaction.get() is self._tx_token

    async def _run(self, func, *args):
        if self._tx_token is not None and not self._in_own_transaction():
            async with self._tx_lock:
                return await self._execute(func, *args)
        return await self._execute(func, *args)

    async def _execute(self, func, *args):
        async with self._lock:
            return await asyncio.to_thread(func, *args)

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        await self._run(self._sync_storage.save, table, record_id, data)

    async def insert_if_absent(self, table: str, record_id: str,
                               data: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        return await self._run(self._sync_storage.insert_if_absent, table, record_id, data)

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return await self._run(self._sync_storage.load, table, record_id)

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        return await self._run(self._sync_storage.load_all, table)

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self._run(self._sync_storage.find, table, filters)

    async def count(self, table: str) -> int:
        return await self._run(self._sync_storage.count, table)

    async def close(self) -> None:
        await asyncio.to_thread(self._sync_storage.close)

    async def begin_transaction(self) -> None:
        await self._run(self._sync_storage.begin_transaction)

    async def commit(self) -> None:
        await self._run(self._sync_storage.commit)

    async def rollback(self) -> None:
        await self._run(self._sync_storage.rollback)

    @asynccontextmanager
    async def atomic(self):
        """Serialized transaction; re-entrant for the owning task and its subtasks"""
        if self._in_own_transaction():
            async with super().atomic():
                yield
            return

        async with self._tx_lock:
            token = object()
            self._tx_token = token
            context_token = _current_transaction.set(token)
            try:
                async with super().atomic():
                    yield
            finally:
                _current_transaction.reset(context_token)
                self._tx_token = None


class AsyncInMemoryStorage(AsyncStorageAdapter):
    """Async wrapper around InMemoryStorage"""

    def __init__(self, transactional: bool = True):
        super().__init__(InMemoryStorage(transactional=transactional))


def create_async_storage(config: TrackerConfig) -> AsyncStorageInterface:
    """Build the async storage selected by configuration"""
    backend = config.storage_backend.lower()
    if backend == "memory":
        return AsyncInMemoryStorage()
    if backend == "sqlite":
        return AsyncStorageAdapter(SQLiteStorage(config.database_path))
    raise ConfigurationError(f"Unknown storage backend: {config.storage_backend}")
