"""PostgreSQL adapter built on asyncpg."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

import asyncpg

from querykit.adapters.base import Adapter, Result
from querykit.errors import ExecutionError

logger = logging.getLogger(__name__)

# Run through the simple query protocol; they return no rows
_SIMPLE_COMMANDS = {"BEGIN", "START", "COMMIT", "ROLLBACK", "SAVEPOINT", "RELEASE", "CREATE", "DROP"}


class PostgresConnection:
    """Wraps a connection leased from an asyncpg pool."""

    def __init__(self, raw: asyncpg.Connection) -> None:
        self.raw = raw

    async def execute(self, sql: str, args: Sequence[Any]) -> Result:
        if not args and sql.split(None, 1)[0].upper() in _SIMPLE_COMMANDS:
            await self.raw.execute(sql)
            return Result(rowcount=0)

        statement = await self.raw.prepare(sql)
        records = await statement.fetch(*args)
        fields = [attr.name for attr in statement.get_attributes()]
        status = statement.get_statusmsg() or ""
        # "UPDATE 3", "INSERT 0 2", "SELECT 5"
        tail = status.rsplit(" ", 1)[-1]
        return Result(
            rows=[dict(record) for record in records],
            fields=fields,
            rowcount=int(tail) if tail.isdigit() else len(records),
        )


class PostgresAdapter(Adapter):
    """Connections leased from an ``asyncpg.create_pool`` pool.

    The pool is created by ``start()``, or by the first ``acquire()``.

    Example:
        >>> adapter = PostgresAdapter("postgresql://localhost/mydb", max_connections=5)
        >>> await adapter.start()
    """

    dialect_name = "postgresql"

    def __init__(self, dsn: str, *, min_connections: int = 1, max_connections: int = 10) -> None:
        if max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        self.dsn = dsn
        self.min_connections = min(min_connections, max_connections)
        self.max_connections = max_connections
        self._pool: asyncpg.Pool | None = None
        self._starting = asyncio.Lock()
        self._leased: set[int] = set()
        self._releasing: set[asyncio.Future[None]] = set()
        self._closed = False

    async def start(self) -> None:
        async with self._starting:
            if self._pool is not None:
                return
            self._pool = await asyncpg.create_pool(
                self.dsn, min_size=self.min_connections, max_size=self.max_connections
            )
            logger.debug("Created pool of %d-%d connections", self.min_connections, self.max_connections)

    async def acquire(self) -> PostgresConnection:
        if self._closed:
            raise ExecutionError("Connection pool is closed")
        if self._pool is None:
            await self.start()
        connection = PostgresConnection(await self._pool.acquire())
        self._leased.add(id(connection))
        logger.debug("Acquired connection %#x", id(connection))
        return connection

    def release(self, connection: PostgresConnection) -> None:  # type: ignore[override]
        if id(connection) not in self._leased:
            return
        self._leased.discard(id(connection))
        # asyncpg resets the connection on release, so it runs as a task
        releasing = asyncio.ensure_future(self._pool.release(connection.raw))
        self._releasing.add(releasing)
        releasing.add_done_callback(self._released)
        logger.debug("Released connection %#x", id(connection))

    def _released(self, releasing: asyncio.Future[None]) -> None:
        self._releasing.discard(releasing)
        if not releasing.cancelled() and releasing.exception() is not None:
            logger.warning("Returning a connection to the pool failed: %s", releasing.exception())

    async def close(self) -> None:
        self._closed = True
        if self._releasing:
            await asyncio.gather(*self._releasing, return_exceptions=True)
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()
        logger.debug("Closed pool")
