"""SQL dialects.

Example:
    >>> get_dialect("postgresql").grammar.placeholder(2)
    '$2'
"""

from __future__ import annotations

from querykit.dialects.base import (
    AnsiGrammar,
    ColumnRef,
    Dialect,
    Grammar,
    JoinClause,
    OrderTerm,
    Params,
    Phrasing,
    SelectParts,
    Statement,
    Translator,
)
from querykit.dialects.mysql import MySQLDialect
from querykit.dialects.postgres import PostgresDialect
from querykit.dialects.sqlite import SQLiteDialect
from querykit.errors import QueryBuildError

_DIALECT_CLASSES: dict[str, type[Dialect]] = {
    "ansi": Dialect,
    "sqlite": SQLiteDialect,
    "postgresql": PostgresDialect,
    "postgres": PostgresDialect,
    "mysql": MySQLDialect,
}

_instances: dict[str, Dialect] = {}


def get_dialect(dialect: str | Dialect | None = None) -> Dialect:
    """Look up a dialect by name, passing instances through unchanged.

    ``None`` selects the ANSI dialect (double-quoted identifiers, ``?``
    placeholders).
    """
    if isinstance(dialect, Dialect):
        return dialect
    name = (dialect or "ansi").lower()
    if name not in _instances:
        try:
            cls = _DIALECT_CLASSES[name]
        except KeyError:
            known = ", ".join(sorted(_DIALECT_CLASSES))
            raise QueryBuildError(f'Unknown dialect "{dialect}"; expected one of {known}') from None
        _instances[name] = cls()
    return _instances[name]


__all__ = [
    "AnsiGrammar",
    "ColumnRef",
    "Dialect",
    "Grammar",
    "JoinClause",
    "MySQLDialect",
    "OrderTerm",
    "Params",
    "Phrasing",
    "PostgresDialect",
    "SQLiteDialect",
    "SelectParts",
    "Statement",
    "Translator",
    "get_dialect",
]
