"""Queue store and database tests."""

import pytest

from conftest import FakePricing
from quotechain import MemoryQueueStore, ReadFailure, SqliteQueueStore, WorkQueue, db


@pytest.fixture(params=["memory", "sqlite"])
async def store(request):
    if request.param == "memory":
        store = MemoryQueueStore()
    else:
        store = SqliteQueueStore(":memory:")
    yield store
    await store.close()


class TestQueueStore:
    """Behavior shared by every store."""

    async def test_load_missing(self, store):
        assert await store.load("nope") is None

    async def test_replace_and_load(self, store):
        await store.replace(WorkQueue(key="k", run_id="r1", items=("a", "b")))

        queue = await store.load("k")
        assert queue == WorkQueue(key="k", run_id="r1", items=("a", "b"))
        assert queue.remaining == 2

    async def test_replace_overwrites(self, store):
        await store.replace(WorkQueue(key="k", run_id="r1", items=("a", "b", "c")))
        await store.replace(WorkQueue(key="k", run_id="r2", items=("x",)))

        queue = await store.load("k")
        assert queue.run_id == "r2"
        assert queue.items == ("x",)

    async def test_pop_in_order(self, store):
        await store.replace(WorkQueue(key="k", run_id="r1", items=("a", "b", "c")))

        assert await store.pop("k") == ("r1", "a")
        assert (await store.load("k")).items == ("b", "c")
        assert await store.pop("k") == ("r1", "b")
        assert await store.pop("k") == ("r1", "c")
        assert await store.load("k") is None
        assert await store.pop("k") is None

    async def test_pop_empty_queue_deletes_it(self, store):
        await store.replace(WorkQueue(key="k", run_id="r1", items=()))

        assert await store.pop("k") is None
        assert await store.load("k") is None

    async def test_keys_are_independent(self, store):
        await store.replace(WorkQueue(key="a", run_id="r1", items=("1", "2")))
        await store.replace(WorkQueue(key="b", run_id="r2", items=("9",)))

        assert await store.pop("a") == ("r1", "1")
        assert (await store.load("b")).items == ("9",)

    async def test_delete(self, store):
        await store.replace(WorkQueue(key="k", run_id="r1", items=("a",)))
        await store.delete("k")
        await store.delete("k")
        assert await store.load("k") is None


class TestSqliteStore:
    """SQLite-specific persistence."""

    async def test_queue_survives_reopen(self, tmp_path):
        path = str(tmp_path / "queue.db")

        store1 = SqliteQueueStore(path)
        await store1.replace(WorkQueue(key="quotes", run_id="r1", items=("Q-1", "Q-2", "Q-3")))
        await store1.pop("quotes")
        await store1.close()

        store2 = SqliteQueueStore(path)
        queue = await store2.load("quotes")
        await store2.close()

        assert queue == WorkQueue(key="quotes", run_id="r1", items=("Q-2", "Q-3"))

    async def test_schema_version_recorded(self, tmp_path):
        conn = await db.init_db(str(tmp_path / "schema.db"))
        async with conn.execute("SELECT version FROM schema_version") as cursor:
            row = await cursor.fetchone()
        await conn.close()

        assert row["version"] == db.SCHEMA_VERSION

    async def test_init_db_is_idempotent(self, tmp_path):
        path = str(tmp_path / "again.db")
        conn = await db.init_db(path)
        await db.save_queue(conn, "k", "r1", ["a"])
        await conn.close()

        conn = await db.init_db(path)
        assert await db.get_queue(conn, "k") == {"key": "k", "run_id": "r1", "items": ["a"]}
        await conn.close()

    async def test_chain_over_sqlite(self, tmp_path, make_chain):
        store = SqliteQueueStore(str(tmp_path / "chain.db"))
        pricing = FakePricing()
        chain = make_chain(pricing, name="quotes", store=store)

        items = [f"Q-{i}" for i in range(6)]
        await chain.submit(items)
        report = await chain.join(timeout=5)

        assert report.saved == items
        assert pricing.max_active == 1
        assert await store.load("quotes") is None

    async def test_failed_chain_leaves_rest_in_file(self, tmp_path, make_chain):
        path = str(tmp_path / "failed.db")
        pricing = FakePricing(fail_read={"Q-2"})
        chain = make_chain(pricing, name="quotes", store=SqliteQueueStore(path))

        await chain.submit(["Q-1", "Q-2", "Q-3", "Q-4"])
        with pytest.raises(ReadFailure):
            await chain.join(timeout=5)
        await chain.close()

        store = SqliteQueueStore(path)
        queue = await store.load("quotes")
        await store.close()
        assert queue.items == ("Q-3", "Q-4")


class TestWorkQueue:
    def test_pop_returns_head_and_rest(self):
        queue = WorkQueue(key="k", run_id="r", items=("a", "b"))
        head, rest = queue.pop()

        assert head == "a"
        assert rest.items == ("b",)
        assert rest.run_id == "r"
        # The original is unchanged
        assert queue.items == ("a", "b")

    def test_pop_empty_raises(self):
        with pytest.raises(IndexError):
            WorkQueue(key="k", run_id="r").pop()

    def test_round_trip_after_n_pops(self):
        items = tuple(f"i{n}" for n in range(10))
        queue = WorkQueue(key="k", run_id="r", items=items)
        for _ in range(4):
            _, queue = queue.pop()

        assert queue.items == items[4:]
        assert queue.remaining == 6
