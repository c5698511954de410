"""Transaction state and statement execution.

Every query chained from one transaction shares a single
``TransactionState``. Depth changes when a BEGIN/COMMIT/ROLLBACK statement
is executed, not when it is built:

* the first BEGIN marks the state as needing a connection;
* the first statement that runs starts ``pool.acquire()`` and stores the
  pending acquisition, so statements issued concurrently await the same
  connection instead of acquiring their own;
* statements on the connection are serialized by a lock;
* the COMMIT/ROLLBACK that brings depth back to zero closes the state and
  releases the connection once it has run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from querykit.adapters.base import Connection, ConnectionPool, Result
from querykit.dialects.base import Statement
from querykit.errors import ExecutionError, QueryKitError, TransactionStateError

logger = logging.getLogger(__name__)

R = TypeVar("R")

BEGIN = "begin"
COMMIT = "commit"
ROLLBACK = "rollback"


@dataclass(frozen=True)
class TransactionStep:
    """The effect of one statement on its transaction."""

    level: int
    closes: bool = False


class TransactionState:
    """Shared, mutable state of one logical transaction."""

    def __init__(self, pool: ConnectionPool) -> None:
        self.pool = pool
        self.depth = 0
        self.needs_acquire = False
        self.needs_release = False
        self.closed = False
        self.connection: Connection | None = None
        self._acquiring: asyncio.Future[Connection] | None = None
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"<TransactionState depth={self.depth} closed={self.closed}>"

    def peek(self, override: str | None) -> TransactionStep:
        """The step ``override`` would take, without changing any state."""
        if override == BEGIN:
            return TransactionStep(self.depth + 1)
        if override in (COMMIT, ROLLBACK):
            return TransactionStep(max(self.depth, 1), closes=self.depth <= 1)
        return TransactionStep(self.depth)

    def advance(self, override: str | None) -> TransactionStep:
        """Validate a statement against this transaction and apply its depth change.

        Raises:
            TransactionStateError: If the transaction has not begun or is closed.
        """
        if override == BEGIN:
            if self.depth == 0:
                self.needs_acquire = True
                self.closed = False
            self.depth += 1
            logger.debug("Transaction depth -> %d", self.depth)
            return TransactionStep(self.depth)

        if self.closed:
            raise TransactionStateError("Cannot execute query using committed/resolved transaction.")
        if self.depth == 0:
            raise TransactionStateError("Must execute `begin` query before using transaction.")

        if override in (COMMIT, ROLLBACK):
            level = self.depth
            self.depth -= 1
            logger.debug("Transaction depth -> %d (%s)", self.depth, override)
            if self.depth == 0:
                self.needs_release = True
                self.closed = True
                return TransactionStep(level, closes=True)
            return TransactionStep(level)

        return TransactionStep(self.depth)

    def acquire(self) -> asyncio.Future[Connection]:
        """Start the connection acquisition, or return the one in progress."""
        if self._acquiring is None:
            if not self.needs_acquire:
                raise TransactionStateError("Must execute `begin` query before using transaction.")
            self.needs_acquire = False
            self._acquiring = asyncio.ensure_future(acquire_connection(self.pool))
        return self._acquiring

    def release(self) -> None:
        """Return the connection to the pool. Only the first call has an effect."""
        if not self.needs_release:
            return
        self.needs_release = False
        connection, self.connection = self.connection, None
        self._acquiring = None
        if connection is not None:
            self.pool.release(connection)
            logger.debug("Transaction released its connection")

    async def run(self, step: TransactionStep, work: Callable[[Connection], Awaitable[R]]) -> R:
        """Run ``work`` on the transaction's connection, one statement at a time."""
        acquiring = self.acquire()
        try:
            connection = self.connection = await acquiring
            async with self._lock:
                return await work(connection)
        finally:
            if step.closes:
                self.release()


async def run_pooled(pool: ConnectionPool, work: Callable[[Connection], Awaitable[R]]) -> R:
    """Run ``work`` on a connection borrowed from ``pool`` for one statement."""
    connection = await acquire_connection(pool)
    try:
        return await work(connection)
    finally:
        pool.release(connection)


async def acquire_connection(pool: ConnectionPool) -> Connection:
    """Borrow a connection, wrapping driver failures in ``ExecutionError``."""
    try:
        return await pool.acquire()
    except QueryKitError:
        raise
    except Exception as exc:
        raise ExecutionError(f"Cannot acquire a connection: {type(exc).__name__}: {exc}") from exc


async def execute_statement(connection: Connection, statement: Statement) -> Result:
    """Execute one statement, wrapping driver failures in ``ExecutionError``."""
    logger.debug("%s %r", statement.sql, statement.args)
    try:
        return await connection.execute(statement.sql, statement.args)
    except QueryKitError:
        raise
    except Exception as exc:
        raise ExecutionError(f"{type(exc).__name__}: {exc}", sql=statement.sql) from exc
