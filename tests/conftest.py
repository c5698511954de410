"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import os
import re
from dataclasses import replace
from typing import Any

import pytest
import pytest_asyncio

from querykit import Database, connect
from querykit.adapters import QueuePool, Result


class FakeConnection:
    """Records statements and answers them from the adapter's canned responses."""

    def __init__(self, adapter: FakeAdapter, number: int) -> None:
        self.adapter = adapter
        self.number = number

    async def execute(self, sql: str, args: list[Any]) -> Result:
        self.adapter.executed.append((sql, list(args)))
        self.adapter.connections.append(self.number)
        # Let concurrently scheduled statements interleave
        await asyncio.sleep(0)
        for pattern, response in self.adapter.responses:
            if not re.search(pattern, sql):
                continue
            if isinstance(response, BaseException):
                raise response
            if callable(response):
                response = response(sql, args)
            if isinstance(response, Result):
                return replace(response, rows=[dict(r) for r in response.rows])
            rows = [dict(r) for r in response]
            return Result(rows=rows, fields=list(rows[0]) if rows else [], rowcount=len(rows))
        return Result(rowcount=0)


class FakeAdapter(QueuePool):
    """In-process adapter for checking the exact statements a call issues."""

    def __init__(self, dialect_name: str = "ansi", *, max_connections: int = 10) -> None:
        super().__init__(min_connections=0, max_connections=max_connections)
        self.dialect_name = dialect_name
        self.executed: list[tuple[str, list[Any]]] = []
        self.connections: list[int] = []
        self.responses: list[tuple[str, Any]] = []
        self.acquired = 0
        self.released = 0
        self.connect_error: Exception | None = None

    async def connect(self) -> FakeConnection:
        if self.connect_error is not None:
            raise self.connect_error
        return FakeConnection(self, len(self._all) + self._opening)

    async def disconnect(self, connection: FakeConnection) -> None:  # type: ignore[override]
        pass

    async def acquire(self):
        self.acquired += 1
        return await super().acquire()

    def release(self, connection) -> None:
        if id(connection) in self._leased:
            self.released += 1
        super().release(connection)

    def respond(self, pattern: str, rows: Any = None, *, result: Result | None = None, error: Exception | None = None):
        """Answer statements matching ``pattern`` (first registered match wins)."""
        if error is not None:
            response: Any = error
        elif result is not None:
            response = result
        else:
            response = rows or []
        self.responses.append((pattern, response))

    @property
    def sql(self) -> list[str]:
        return [sql for sql, _ in self.executed]

    @property
    def args(self) -> list[list[Any]]:
        return [args for _, args in self.executed]

    def reset(self) -> None:
        self.executed.clear()
        self.connections.clear()


def insert_ids(start: int = 1):
    """A response handing out increasing primary keys to INSERT ... RETURNING."""
    counter = iter(range(start, start + 10_000))

    def respond(sql: str, args: list[Any]) -> list[dict[str, Any]]:
        return [{"id": next(counter)}]

    return respond


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def db(adapter):
    return Database(adapter)


@pytest_asyncio.fixture
async def sqlite_db():
    """An in-memory SQLite database with every test model's table."""
    from models import ALL_MODELS

    database = await connect("sqlite::memory:")
    await database.create_tables(*ALL_MODELS)
    yield database
    await database.close()


@pytest_asyncio.fixture
async def postgres_db():
    """A PostgreSQL database.

    Set DATABASE_URL environment variable to use a real PostgreSQL database.
    Otherwise, this fixture is skipped.
    """
    from models import ALL_MODELS

    url = os.environ.get("DATABASE_URL")
    if not url:
        pytest.skip("DATABASE_URL not set")

    database = await connect(url)
    await database.drop_tables(*reversed(ALL_MODELS))
    await database.create_tables(*ALL_MODELS)
    yield database
    await database.close()
