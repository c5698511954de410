"""End-to-end tests against PostgreSQL.

Set DATABASE_URL to a scratch database to run them; they are skipped otherwise.
"""

from __future__ import annotations

import asyncio

import pytest

from models import Article, Course, Student, User
from querykit import ExecutionError, Q, selectinload


class TestRoundTrip:
    async def test_save_and_query(self, postgres_db):
        user = await postgres_db.save(User(username="wbyoung", vip=True))

        loaded = await postgres_db.query(User).where({"id": user.id}).first()

        assert loaded.username == "wbyoung"
        assert loaded.vip is True
        assert loaded.dirty == frozenset()

    async def test_update_counts_rows(self, postgres_db):
        await postgres_db.insert("users").values({"username": "a"}, {"username": "b"})

        result = await postgres_db.update("users", {"vip": True})
        count = await postgres_db.raw('SELECT COUNT(*) AS n FROM "users" WHERE "vip"')

        assert result.rowcount == 2
        assert count.scalar() == 2

    async def test_driver_errors_are_wrapped(self, postgres_db):
        with pytest.raises(ExecutionError) as excinfo:
            await postgres_db.raw("SELECT * FROM missing_table")
        assert "missing_table" in excinfo.value.sql


class TestFiltering:
    async def test_case_sensitivity(self, postgres_db):
        for name in ("Alice", "alicia", "Bob"):
            await postgres_db.save(User(username=name))

        sensitive = await postgres_db.query(User).where({"username[contains]": "Ali"})
        insensitive = await postgres_db.query(User).where({"username[icontains]": "ali"}).order_by("id")
        regex = await postgres_db.query(User).where({"username[iregex]": "^b"})

        assert [u.username for u in sensitive] == ["Alice"]
        assert [u.username for u in insensitive] == ["Alice", "alicia"]
        assert [u.username for u in regex] == ["Bob"]

    async def test_relation_path_filter(self, postgres_db):
        author = await postgres_db.save(User(username="author"))
        other = await postgres_db.save(User(username="other"))
        await postgres_db.save(Article(title="News", author=author))
        await postgres_db.save(Article(title="Weather", author=other))

        users = await postgres_db.query(User).where(Q({"articles.title": "News"}), ~Q(username="nobody"))

        assert [u.username for u in users] == ["author"]


class TestTransactions:
    async def test_savepoint_rollback_keeps_outer_work(self, postgres_db):
        async with postgres_db.transaction() as tx:
            await tx.insert("users", {"username": "kept"})
            with pytest.raises(RuntimeError):
                async with tx:
                    await tx.insert("users", {"username": "discarded"})
                    raise RuntimeError("abort savepoint")

        assert await postgres_db.select("users", ["username"]) == [{"username": "kept"}]

    async def test_concurrent_pooled_queries(self, postgres_db):
        await postgres_db.save(User(username="a"))

        results = await asyncio.gather(*(postgres_db.select("users") for _ in range(5)))

        assert all(len(rows) == 1 for rows in results)


class TestCollections:
    async def test_many_to_many(self, postgres_db):
        student = await postgres_db.save(Student(name="Sam"))
        student.related("courses").create(title="Math")
        await postgres_db.save(student)

        reloaded = await postgres_db.query(Student).options(selectinload("courses")).first()
        courses = await postgres_db.query(Course)

        assert [c.title for c in reloaded.courses] == ["Math"]
        assert [c.title for c in courses] == ["Math"]
