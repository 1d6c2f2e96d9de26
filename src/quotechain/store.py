"""Queue stores: where the remaining work survives between phases."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

import aiosqlite

from quotechain import db
from quotechain.models import WorkQueue


class QueueStore(ABC):
    """
    Holds at most one WorkQueue per key.

    Every write replaces the record wholesale. `pop` must persist the shorter
    queue before it returns.
    """

    @abstractmethod
    async def load(self, key: str) -> WorkQueue | None:
        ...

    @abstractmethod
    async def replace(self, queue: WorkQueue) -> None:
        """Overwrite whatever is stored under `queue.key`."""
        ...

    @abstractmethod
    async def pop(self, key: str) -> tuple[str, str] | None:
        """Remove the head of the queue. Returns (run_id, head) or None when empty."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    async def close(self) -> None:
        pass


class MemoryQueueStore(QueueStore):
    """In-process store. State is lost with the process."""

    def __init__(self) -> None:
        self._queues: dict[str, WorkQueue] = {}
        self._lock = asyncio.Lock()

    async def load(self, key: str) -> WorkQueue | None:
        return self._queues.get(key)

    async def replace(self, queue: WorkQueue) -> None:
        async with self._lock:
            self._queues[queue.key] = queue

    async def pop(self, key: str) -> tuple[str, str] | None:
        async with self._lock:
            queue = self._queues.get(key)
            if queue is None or not queue.items:
                self._queues.pop(key, None)
                return None
            head, rest = queue.pop()
            if rest.items:
                self._queues[key] = rest
            else:
                del self._queues[key]
            return queue.run_id, head

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._queues.pop(key, None)


class SqliteQueueStore(QueueStore):
    """
    SQLite-backed store, one row per key.

    The connection is opened lazily on first use.

    Example:
        store = SqliteQueueStore("quotes.db")
        chain = Chain("quotes", store=store)
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            self._conn = await db.init_db(self.db_path)
        return self._conn

    async def load(self, key: str) -> WorkQueue | None:
        async with self._lock:
            conn = await self._connection()
            row = await db.get_queue(conn, key)
        if row is None:
            return None
        return WorkQueue(key=row["key"], run_id=row["run_id"], items=tuple(row["items"]))

    async def replace(self, queue: WorkQueue) -> None:
        async with self._lock:
            conn = await self._connection()
            await db.save_queue(conn, queue.key, queue.run_id, list(queue.items))

    async def pop(self, key: str) -> tuple[str, str] | None:
        async with self._lock:
            conn = await self._connection()
            return await db.pop_queue(conn, key)

    async def delete(self, key: str) -> None:
        async with self._lock:
            conn = await self._connection()
            await db.delete_queue(conn, key)

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                await self._conn.close()
                self._conn = None
