"""QueryKit - immutable query building, relation joins and transactions for asyncio."""

from __future__ import annotations

from querykit.adapters import Adapter, QueuePool, Result, SQLiteAdapter
from querykit.base import Base
from querykit.conditions import Q
from querykit.database import Database, connect
from querykit.dialects import Dialect, Statement, get_dialect
from querykit.errors import (
    AmbiguousFieldError,
    ExecutionError,
    KeyMismatchError,
    NoSuchRelationError,
    QueryBuildError,
    QueryKitError,
    RelationNotLoadedError,
    ResolutionError,
    TransactionStateError,
)
from querykit.fields import Mapped, mapped_column
from querykit.query import delete, insert, raw, select, update
from querykit.related import InFlightChange, RelatedManager
from querykit.relationships import belongs_to, has_many, noload, selectinload

__version__ = "0.1.0"

__all__ = [
    # Core
    "connect",
    "Database",
    "Adapter",
    "QueuePool",
    "SQLiteAdapter",
    "Result",
    # Model definition
    "Base",
    "Mapped",
    "mapped_column",
    "belongs_to",
    "has_many",
    "RelatedManager",
    "InFlightChange",
    # Query building
    "select",
    "insert",
    "update",
    "delete",
    "raw",
    "Q",
    "Dialect",
    "Statement",
    "get_dialect",
    # Eager loading
    "selectinload",
    "noload",
    # Errors
    "QueryKitError",
    "QueryBuildError",
    "ResolutionError",
    "NoSuchRelationError",
    "AmbiguousFieldError",
    "KeyMismatchError",
    "RelationNotLoadedError",
    "TransactionStateError",
    "ExecutionError",
]
