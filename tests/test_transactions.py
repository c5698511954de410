"""Tests for transaction depth, savepoints and connection handling."""

from __future__ import annotations

import asyncio

import pytest

from conftest import FakeAdapter
from querykit import Database, ExecutionError, Result, TransactionStateError, insert


class TestLifecycle:
    async def test_begin_query_commit(self, db, adapter):
        tx = db.transaction()
        await tx.begin()
        await tx.select("users")
        await tx.commit()

        assert adapter.sql == ["BEGIN", 'SELECT * FROM "users"', "COMMIT"]
        assert adapter.acquired == 1
        assert adapter.released == 1

    async def test_nested_transactions_use_savepoints(self, db, adapter):
        tx = db.transaction()
        await tx.begin()
        await tx.begin()
        await tx.insert("users", {"username": "a"})
        await tx.rollback()
        await tx.begin()
        await tx.commit()
        await tx.commit()

        assert adapter.sql == [
            "BEGIN",
            'SAVEPOINT "sp_2"',
            'INSERT INTO "users" ("username") VALUES (?)',
            'ROLLBACK TO SAVEPOINT "sp_2"',
            'SAVEPOINT "sp_2"',
            'RELEASE SAVEPOINT "sp_2"',
            "COMMIT",
        ]
        assert len(set(adapter.connections)) == 1
        assert adapter.released == 1

    async def test_query_before_begin(self, db):
        with pytest.raises(TransactionStateError, match="Must execute `begin` query before using transaction."):
            await db.transaction().select("users")

    async def test_query_after_commit(self, db):
        tx = db.transaction()
        await tx.begin()
        await tx.commit()

        with pytest.raises(TransactionStateError, match="Cannot execute query using committed/resolved transaction."):
            await tx.select("users")

    async def test_commit_without_transaction(self, db):
        with pytest.raises(TransactionStateError, match="Must associate `commit` with a transaction."):
            await db.select("users").commit()

    async def test_transaction_handle_needs_a_statement(self, db):
        from querykit import QueryBuildError

        with pytest.raises(QueryBuildError):
            await db.transaction()

    async def test_begin_again_after_commit_reopens(self, db, adapter):
        tx = db.transaction()
        await tx.begin()
        await tx.commit()
        await tx.begin()
        await tx.rollback()

        assert adapter.sql == ["BEGIN", "COMMIT", "BEGIN", "ROLLBACK"]
        assert adapter.acquired == adapter.released == 2


class TestCompilation:
    def test_to_sql_does_not_change_depth(self, db):
        tx = db.transaction()
        begin = tx.begin()

        assert begin.to_sql() == ("BEGIN", [])
        assert begin.to_sql() == ("BEGIN", [])
        assert tx.transaction_state.depth == 0

    async def test_savepoint_sql_reflects_depth(self, db):
        tx = db.transaction()
        await tx.begin()

        assert tx.begin().to_sql()[0] == 'SAVEPOINT "sp_2"'
        assert tx.commit().to_sql()[0] == "COMMIT"
        await tx.rollback()

    def test_unbind_drops_transaction(self, db):
        query = db.transaction().select("users").unbind()
        assert query.transaction_state is None

    def test_transaction_binding_from_another_query(self, db):
        tx = db.transaction()
        query = insert("users", {"username": "a"}).transaction(tx)
        assert query.transaction_state is tx.transaction_state


class TestConcurrency:
    async def test_concurrent_queries_share_one_acquisition(self, db, adapter):
        tx = db.transaction()

        await asyncio.gather(tx.begin(), tx.select("users"), tx.select("articles"))
        await tx.commit()

        assert adapter.acquired == 1
        assert adapter.sql[0] == "BEGIN"
        assert adapter.sql[-1] == "COMMIT"
        assert len(set(adapter.connections)) == 1
        assert adapter.released == 1

    async def test_pooled_queries_release_their_connections(self, db, adapter):
        await asyncio.gather(*(db.select("users") for _ in range(5)))

        assert adapter.acquired == adapter.released == 5

    async def test_transaction_waits_for_free_connection(self):
        adapter = FakeAdapter(max_connections=1)
        db = Database(adapter)
        tx = db.transaction()
        await tx.begin()

        pending = asyncio.ensure_future(db.select("users"))
        await asyncio.sleep(0)
        assert not pending.done()

        await tx.commit()
        await pending
        assert adapter.sql == ["BEGIN", "COMMIT", 'SELECT * FROM "users"']


class TestFailures:
    async def test_failed_acquire_is_wrapped(self, db, adapter):
        adapter.connect_error = OSError("connection refused")

        with pytest.raises(ExecutionError, match="OSError: connection refused") as excinfo:
            await db.select("users")

        assert isinstance(excinfo.value.__cause__, OSError)
        assert adapter.executed == []

    async def test_failed_acquire_fails_the_transaction_statement(self, db, adapter):
        adapter.connect_error = OSError("connection refused")
        tx = db.transaction()

        with pytest.raises(ExecutionError, match="Cannot acquire a connection"):
            await tx.begin()
        with pytest.raises(ExecutionError, match="connection refused"):
            await tx.rollback()

        assert adapter.executed == []
        assert adapter.released == 0

    async def test_failed_commit_still_releases(self, db, adapter):
        adapter.respond(r"^COMMIT", error=RuntimeError("connection reset"))
        tx = db.transaction()
        await tx.begin()

        with pytest.raises(ExecutionError, match="connection reset") as excinfo:
            await tx.commit()

        assert excinfo.value.sql == "COMMIT"
        assert adapter.released == 1
        with pytest.raises(TransactionStateError):
            await tx.select("users")

    async def test_context_manager_rolls_back_on_error(self, db, adapter):
        with pytest.raises(ValueError):
            async with db.transaction() as tx:
                await tx.insert("users", {"username": "a"})
                raise ValueError("nope")

        assert adapter.sql == ["BEGIN", 'INSERT INTO "users" ("username") VALUES (?)', "ROLLBACK"]
        assert adapter.released == 1

    async def test_nested_context_managers(self, db, adapter):
        async with db.transaction() as tx:
            with pytest.raises(ValueError):
                async with tx:
                    raise ValueError("inner")
            await tx.select("users")

        assert adapter.sql == [
            "BEGIN",
            'SAVEPOINT "sp_2"',
            'ROLLBACK TO SAVEPOINT "sp_2"',
            'SELECT * FROM "users"',
            "COMMIT",
        ]


class TestTransforms:
    async def test_transforms_run_in_order(self, db, adapter):
        adapter.respond(r"FROM \"users\"", [{"id": 1}, {"id": 2}])
        query = (
            db.select("users")
            .transform(lambda rows, kind: [row["id"] for row in rows])
            .transform(lambda ids, kind: (kind, sum(ids)))
        )

        assert await query == ("select", 3)

    async def test_insert_returns_result(self, db, adapter):
        result = await db.insert("users", {"username": "a"})
        assert isinstance(result, Result)

    async def test_mysql_returning_is_emulated(self):
        adapter = FakeAdapter("mysql")
        adapter.respond(r"^INSERT", result=Result(rowcount=2, last_insert_id=41))
        db = Database(adapter)

        result = await db.insert("users").values({"username": "a"}, {"username": "b"}).returning("id")

        assert adapter.sql == ["INSERT INTO `users` (`username`) VALUES (%s), (%s)"]
        assert result.rows == [{"id": 41}, {"id": 42}]

    async def test_mysql_save_uses_last_insert_id(self):
        from models import User

        adapter = FakeAdapter("mysql")
        adapter.respond(r"^INSERT", result=Result(rowcount=1, last_insert_id=7))
        db = Database(adapter)

        user = await db.save(User(username="a"))

        assert adapter.sql == ["INSERT INTO `users` (`username`, `vip`) VALUES (%s, %s)"]
        assert user.id == 7
        assert user.persisted


class TestResult:
    def test_row_helpers(self):
        from querykit import QueryKitError

        result = Result(rows=[{"n": 1}], fields=["n"], rowcount=1)

        assert result.scalar() == 1
        assert result.one() == {"n": 1}
        assert result.one_or_none() == {"n": 1}
        assert not result.is_empty()
        assert Result().one_or_none() is None
        with pytest.raises(QueryKitError):
            Result(rows=[{"n": 1}, {"n": 2}]).one()
