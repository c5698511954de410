"""Database driver adapters."""

from querykit.adapters.base import Adapter, Connection, ConnectionPool, QueuePool, Result
from querykit.adapters.sqlite import SQLiteAdapter

__all__ = ["Adapter", "Connection", "ConnectionPool", "QueuePool", "Result", "SQLiteAdapter"]
