"""Exception hierarchy for query construction, resolution and execution."""

from __future__ import annotations

from collections.abc import Iterable


class QueryKitError(Exception):
    """Base class for all querykit errors."""


class QueryBuildError(QueryKitError, ValueError):
    """Raised when a query is constructed incorrectly."""


class ResolutionError(QueryKitError):
    """Raised when a query cannot be resolved against its models."""


class NoSuchRelationError(ResolutionError):
    """A relation path segment names a relation its host model lacks."""

    def __init__(self, segment: str, model_name: str, known: Iterable[str], context: str = "") -> None:
        self.segment = segment
        self.model_name = model_name
        self.known = sorted(known)
        known_str = ", ".join(f'"{name}"' for name in self.known) or "none"
        where = f" ({context})" if context else ""
        super().__init__(
            f'No relation "{segment}" on {model_name}{where}; known relations: {known_str}'
        )


class AmbiguousFieldError(ResolutionError):
    """A bare field name exists on more than one joined table."""

    def __init__(self, field: str, tables: Iterable[str]) -> None:
        self.field = field
        self.tables = list(tables)
        names = " and ".join(f'"{t}"' for t in self.tables)
        super().__init__(
            f'Ambiguous field "{field}" could refer to {names}; qualify it with a relation name'
        )


class KeyMismatchError(ResolutionError):
    """Both sides of a relation declare keys that disagree."""


class RelationNotLoadedError(QueryKitError, AttributeError):
    """A relation collection was read before it was loaded."""


class TransactionStateError(QueryKitError):
    """A query was executed against a transaction in the wrong state."""


class ExecutionError(QueryKitError):
    """The driver reported a failure while executing a statement."""

    def __init__(self, message: str, sql: str | None = None) -> None:
        self.sql = sql
        super().__init__(message)
