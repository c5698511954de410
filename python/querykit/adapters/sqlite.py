"""SQLite adapter built on aiosqlite."""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any

import aiosqlite

from querykit.adapters.base import QueuePool, Result


def _regexp(pattern: str | None, value: Any) -> bool:
    if pattern is None or value is None:
        return False
    return re.search(pattern, str(value)) is not None


class SQLiteConnection:
    """Wraps an aiosqlite connection in autocommit mode.

    Transactions are controlled with explicit BEGIN/COMMIT statements, so
    the sqlite3 module's implicit transaction handling is turned off.
    """

    def __init__(self, raw: aiosqlite.Connection) -> None:
        self.raw = raw

    async def execute(self, sql: str, args: Sequence[Any]) -> Result:
        async with self.raw.execute(sql, list(args)) as cursor:
            rows = await cursor.fetchall()
            fields = [d[0] for d in cursor.description] if cursor.description else []
            return Result(
                rows=[dict(zip(fields, row, strict=False)) for row in rows],
                fields=fields,
                rowcount=cursor.rowcount,
                last_insert_id=cursor.lastrowid,
            )


class SQLiteAdapter(QueuePool):
    """Pool of aiosqlite connections.

    ``":memory:"`` databases are private to one connection, so the pool is
    capped at a single connection for them.

    Example:
        >>> adapter = SQLiteAdapter(":memory:")
        >>> await adapter.start()
    """

    dialect_name = "sqlite"

    def __init__(self, path: str, *, min_connections: int = 1, max_connections: int = 10) -> None:
        if path == ":memory:":
            max_connections = 1
        super().__init__(min_connections=min_connections, max_connections=max_connections)
        self.path = path

    async def connect(self) -> SQLiteConnection:
        raw = await aiosqlite.connect(self.path, isolation_level=None)
        await raw.create_function("REGEXP", 2, _regexp, deterministic=True)
        await raw.execute("PRAGMA foreign_keys = ON")
        return SQLiteConnection(raw)

    async def disconnect(self, connection: SQLiteConnection) -> None:  # type: ignore[override]
        await connection.raw.close()
