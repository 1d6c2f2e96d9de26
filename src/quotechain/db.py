"""Database operations for quotechain."""

from __future__ import annotations

import json
import time

import aiosqlite

SCHEMA_VERSION = 1

SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Work queues: one row per chain key
CREATE TABLE IF NOT EXISTS work_queues (
    key TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    items TEXT NOT NULL,  -- JSON array of identifiers, head first
    updated_at REAL NOT NULL
);
"""


async def init_db(db_path: str) -> aiosqlite.Connection:
    """
    Initialize database connection and schema.

    Args:
        db_path: Path to SQLite file or ":memory:" for in-memory.

    Returns:
        Open database connection.
    """
    conn = await aiosqlite.connect(db_path)
    conn.row_factory = aiosqlite.Row

    # Enable WAL mode for better concurrency
    await conn.execute("PRAGMA journal_mode=WAL")

    # Check if schema exists
    async with conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
    ) as cursor:
        exists = await cursor.fetchone()

    if not exists:
        # Fresh database - create schema
        await conn.executescript(SCHEMA)
        await conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        await conn.commit()

    return conn


def _row_to_queue(row: aiosqlite.Row) -> dict:
    return {
        "key": row["key"],
        "run_id": row["run_id"],
        "items": json.loads(row["items"]),
    }


async def save_queue(conn: aiosqlite.Connection, key: str, run_id: str, items: list[str]) -> None:
    """Insert or overwrite the queue for a key."""
    await conn.execute(
        """
        INSERT INTO work_queues (key, run_id, items, updated_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET
            run_id = excluded.run_id,
            items = excluded.items,
            updated_at = excluded.updated_at
        """,
        (key, run_id, json.dumps(list(items)), time.time()),
    )
    await conn.commit()


async def get_queue(conn: aiosqlite.Connection, key: str) -> dict | None:
    """Get the queue for a key."""
    async with conn.execute("SELECT * FROM work_queues WHERE key = ?", (key,)) as cursor:
        row = await cursor.fetchone()
        return _row_to_queue(row) if row else None


async def delete_queue(conn: aiosqlite.Connection, key: str) -> None:
    """Delete the queue for a key, if any."""
    await conn.execute("DELETE FROM work_queues WHERE key = ?", (key,))
    await conn.commit()


async def pop_queue(conn: aiosqlite.Connection, key: str) -> tuple[str, str] | None:
    """
    Remove the head of a queue in one transaction.

    The row is deleted when the last item is popped.

    Returns:
        (run_id, head) or None if the queue is missing or empty.
    """
    await conn.execute("BEGIN IMMEDIATE")
    try:
        async with conn.execute("SELECT * FROM work_queues WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()

        if row is None:
            await conn.commit()
            return None

        queue = _row_to_queue(row)
        items = queue["items"]
        if not items:
            await conn.execute("DELETE FROM work_queues WHERE key = ?", (key,))
            await conn.commit()
            return None

        head, rest = items[0], items[1:]
        if rest:
            await conn.execute(
                "UPDATE work_queues SET items = ?, updated_at = ? WHERE key = ?",
                (json.dumps(rest), time.time(), key),
            )
        else:
            await conn.execute("DELETE FROM work_queues WHERE key = ?", (key,))
        await conn.commit()
        return queue["run_id"], head
    except BaseException:
        await conn.rollback()
        raise
