"""Driver adapter contract.

The query engine only needs two things from a database driver:

* a pool with ``await acquire()`` and a non-suspending ``release(connection)``
* connections with ``await execute(sql, args)`` returning a ``Result``

``Adapter`` is that pool. ``QueuePool`` implements it on top of an
``asyncio`` queue for drivers without a pool of their own; its subclasses
only open, wrap and close driver connections.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from querykit.errors import ExecutionError

logger = logging.getLogger(__name__)


@dataclass
class Result:
    """Rows and metadata returned by executing one statement."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    fields: list[str] = field(default_factory=list)
    rowcount: int = -1
    last_insert_id: Any = None

    def all(self) -> list[dict[str, Any]]:
        """Get all rows as a list of dictionaries."""
        return list(self.rows)

    def first(self) -> dict[str, Any] | None:
        """Get the first row, or None if empty."""
        return self.rows[0] if self.rows else None

    def one(self) -> dict[str, Any]:
        """Get a single row, raising error if not exactly one row."""
        if len(self.rows) != 1:
            raise ExecutionError(f"Expected exactly one row, got {len(self.rows)}")
        return self.rows[0]

    def one_or_none(self) -> dict[str, Any] | None:
        """Get a single row or None."""
        if len(self.rows) > 1:
            raise ExecutionError(f"Expected at most one row, got {len(self.rows)}")
        return self.first()

    def scalar(self) -> Any:
        """First column of the first row, or None."""
        row = self.first()
        return next(iter(row.values())) if row else None

    def is_empty(self) -> bool:
        return not self.rows

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self.rows)


@runtime_checkable
class Connection(Protocol):
    async def execute(self, sql: str, args: Sequence[Any]) -> Result: ...


@runtime_checkable
class ConnectionPool(Protocol):
    async def acquire(self) -> Connection: ...

    def release(self, connection: Connection) -> None: ...


class Adapter(ABC):
    """A pool of driver connections that statements run on."""

    dialect_name = "ansi"

    async def start(self) -> None:
        """Open the connections the pool starts with."""

    @abstractmethod
    async def acquire(self) -> Connection:
        """Borrow a connection, waiting while the pool is exhausted."""

    @abstractmethod
    def release(self, connection: Connection) -> None:
        """Return a borrowed connection. Must not suspend."""

    @abstractmethod
    async def close(self) -> None:
        """Close the pool and every connection it holds."""


class QueuePool(Adapter):
    """A bounded pool of driver connections.

    Args:
        min_connections: Connections opened eagerly by ``start()``
        max_connections: Upper bound on open connections; ``acquire()``
            waits for a release once it is reached
    """

    def __init__(self, *, min_connections: int = 1, max_connections: int = 10) -> None:
        if max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        self.min_connections = min(min_connections, max_connections)
        self.max_connections = max_connections
        self._idle: asyncio.Queue[Connection] = asyncio.Queue()
        self._leased: set[int] = set()
        self._all: list[Connection] = []
        self._opening = 0
        self._closed = False

    @abstractmethod
    async def connect(self) -> Connection:
        """Open one driver connection."""

    @abstractmethod
    async def disconnect(self, connection: Connection) -> None:
        """Close one driver connection."""

    async def start(self) -> None:
        """Open the minimum number of connections."""
        while len(self._all) < self.min_connections:
            self._idle.put_nowait(await self._open())

    async def _open(self) -> Connection:
        self._opening += 1
        try:
            connection = await self.connect()
        finally:
            self._opening -= 1
        self._all.append(connection)
        logger.debug("Opened connection %d/%d", len(self._all), self.max_connections)
        return connection

    async def acquire(self) -> Connection:
        if self._closed:
            raise ExecutionError("Connection pool is closed")
        try:
            connection = self._idle.get_nowait()
        except asyncio.QueueEmpty:
            if len(self._all) + self._opening < self.max_connections:
                connection = await self._open()
            else:
                connection = await self._idle.get()
        self._leased.add(id(connection))
        logger.debug("Acquired connection %#x", id(connection))
        return connection

    def release(self, connection: Connection) -> None:
        if id(connection) not in self._leased:
            return
        self._leased.discard(id(connection))
        self._idle.put_nowait(connection)
        logger.debug("Released connection %#x", id(connection))

    async def close(self) -> None:
        """Close every connection the pool has opened."""
        self._closed = True
        connections, self._all = self._all, []
        for connection in connections:
            await self.disconnect(connection)
        logger.debug("Closed %d connections", len(connections))
