"""Tests for the asyncpg pool behind PostgresAdapter."""

from __future__ import annotations

import pytest

from querykit import Database, ExecutionError, connect

asyncpg = pytest.importorskip("asyncpg")

from querykit.adapters.postgres import PostgresAdapter, PostgresConnection  # noqa: E402

DSN = "postgresql://localhost/querykit"


class FakeDriverConnection:
    def __init__(self) -> None:
        self.executed: list[str] = []

    async def execute(self, sql: str) -> str:
        self.executed.append(sql)
        return sql.split()[0]


class FakePool:
    """Stands in for the pool ``asyncpg.create_pool`` returns."""

    def __init__(self) -> None:
        self.created: list[tuple[str, dict]] = []
        self.acquired: list[FakeDriverConnection] = []
        self.released: list[FakeDriverConnection] = []
        self.closed = False

    async def acquire(self) -> FakeDriverConnection:
        connection = FakeDriverConnection()
        self.acquired.append(connection)
        return connection

    async def release(self, connection: FakeDriverConnection) -> None:
        self.released.append(connection)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def pool(monkeypatch):
    pool = FakePool()

    async def create_pool(dsn, **options):
        pool.created.append((dsn, options))
        return pool

    monkeypatch.setattr(asyncpg, "create_pool", create_pool)
    return pool


class TestPool:
    async def test_start_creates_sized_pool(self, pool):
        adapter = PostgresAdapter(DSN, min_connections=2, max_connections=5)
        await adapter.start()
        await adapter.start()

        assert pool.created == [(DSN, {"min_size": 2, "max_size": 5})]

    async def test_acquire_creates_pool_lazily(self, pool):
        adapter = PostgresAdapter(DSN)

        connection = await adapter.acquire()

        assert isinstance(connection, PostgresConnection)
        assert connection.raw is pool.acquired[0]
        assert pool.created == [(DSN, {"min_size": 1, "max_size": 10})]

    async def test_release_returns_connection_once(self, pool):
        adapter = PostgresAdapter(DSN)
        connection = await adapter.acquire()

        adapter.release(connection)
        adapter.release(connection)
        await adapter.close()

        assert pool.released == [connection.raw]
        assert pool.closed

    async def test_acquire_after_close(self, pool):
        adapter = PostgresAdapter(DSN)
        await adapter.start()
        await adapter.close()

        with pytest.raises(ExecutionError, match="closed"):
            await adapter.acquire()

    def test_min_is_capped_by_max(self):
        adapter = PostgresAdapter(DSN, min_connections=4, max_connections=2)
        assert adapter.min_connections == 2
        with pytest.raises(ValueError):
            PostgresAdapter(DSN, max_connections=0)


class TestDatabase:
    async def test_connect_builds_pool_from_url(self, pool):
        db = await connect(DSN, min_connections=1, max_connections=3)

        assert isinstance(db.adapter, PostgresAdapter)
        assert db.dialect.name == "postgresql"
        assert pool.created == [(DSN, {"min_size": 1, "max_size": 3})]
        await db.close()
        assert pool.closed

    async def test_transaction_holds_one_pooled_connection(self, pool):
        db = Database(PostgresAdapter(DSN))

        async with db.transaction() as tx:
            await tx.begin()
            await tx.commit()

        await db.close()
        assert len(pool.acquired) == 1
        assert pool.acquired[0].executed == ["BEGIN", 'SAVEPOINT "sp_2"', 'RELEASE SAVEPOINT "sp_2"', "COMMIT"]
        assert pool.released == pool.acquired
