"""Dialect building blocks.

A ``Dialect`` is composed of three collaborators rather than a deep class
hierarchy:

* ``Grammar`` knows identifier quoting, bound-value placeholders and literal
  escaping.
* ``Translator`` turns a (column, operator, value) triple into a predicate
  and an abstract column kind into a native type.
* ``Phrasing`` assembles complete statements from already-resolved parts.

Concrete dialects override only the collaborator that differs.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import TYPE_CHECKING, Any, NamedTuple

from querykit.conditions import Condition, Q
from querykit.errors import QueryBuildError

if TYPE_CHECKING:
    from querykit.fields import ColumnInfo

logger = logging.getLogger(__name__)


class Statement(NamedTuple):
    """A phrased statement: SQL text plus bound arguments in placeholder order."""

    sql: str
    args: list[Any]


@dataclass(frozen=True)
class ColumnRef:
    """A column reference, optionally qualified by a table name or alias."""

    table: str | None
    column: str


@dataclass(frozen=True)
class JoinClause:
    """A resolved join. ``on`` pairs are ANDed as equalities."""

    table: str
    alias: str
    kind: str = "inner"
    on: tuple[tuple[ColumnRef, ColumnRef], ...] = ()


@dataclass(frozen=True)
class OrderTerm:
    ref: ColumnRef
    descending: bool = False


@dataclass
class SelectParts:
    """Everything needed to phrase a SELECT, with all names resolved."""

    table: str
    columns: tuple[ColumnRef, ...] = (ColumnRef(None, "*"),)
    distinct: bool = False
    joins: tuple[JoinClause, ...] = ()
    where: Q | None = None
    group_by: tuple[ColumnRef, ...] = ()
    order_by: tuple[OrderTerm, ...] = ()
    limit: int | None = None
    offset: int | None = None


class Params:
    """Collects bound values while a statement is being phrased."""

    def __init__(self, grammar: Grammar) -> None:
        self.grammar = grammar
        self.args: list[Any] = []

    def add(self, value: Any) -> str:
        self.args.append(value)
        return self.grammar.placeholder(len(self.args))


# =============================================================================
# Grammar
# =============================================================================


class Grammar(ABC):
    """Quoting, placeholders and literal escaping."""

    @abstractmethod
    def quote(self, identifier: str) -> str:
        """Quote a single identifier."""

    @abstractmethod
    def placeholder(self, index: int) -> str:
        """Placeholder for the ``index``-th bound value (1-based)."""

    def field(self, ref: ColumnRef) -> str:
        column = "*" if ref.column == "*" else self.quote(ref.column)
        if ref.table is None:
            return column
        return f"{self.quote(ref.table)}.{column}"

    def table(self, name: str, alias: str | None = None) -> str:
        if alias is None or alias == name:
            return self.quote(name)
        return f"{self.quote(name)} {self.quote(alias)}"

    def escape(self, value: Any) -> str:
        """Render a value as an inline SQL literal."""
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return "TRUE" if value else "FALSE"
        if isinstance(value, (int, float, Decimal)):
            return str(value)
        if isinstance(value, (bytes, bytearray)):
            return f"X'{bytes(value).hex()}'"
        if isinstance(value, (datetime, date, time)):
            value = value.isoformat()
        if isinstance(value, str):
            return self.escape_string(value)
        raise QueryBuildError(f"Cannot render {type(value).__name__} as a SQL literal")

    def escape_string(self, value: str) -> str:
        return "'" + value.replace("'", "''") + "'"

    def like_escape(self, value: str) -> str:
        """Escape LIKE wildcards so ``value`` matches literally."""
        return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class AnsiGrammar(Grammar):
    """Double-quoted identifiers and ``?`` placeholders."""

    quote_char = '"'

    def quote(self, identifier: str) -> str:
        q = self.quote_char
        return f"{q}{identifier.replace(q, q + q)}{q}"

    def placeholder(self, index: int) -> str:
        return "?"


# =============================================================================
# Translator
# =============================================================================


class Translator:
    """Operator predicates and column types.

    Predicates are looked up as ``op_<operator>`` and types as
    ``type_<kind>``, so a dialect overrides one method per difference.
    """

    like_escape_clause = " ESCAPE '\\'"

    def __init__(self, grammar: Grammar) -> None:
        self.grammar = grammar

    def predicate(self, column: str, operator: str, value: Any, params: Params) -> str:
        handler = getattr(self, f"op_{operator}", None)
        if handler is None:
            raise QueryBuildError(f'Operator "{operator}" is not supported by this dialect')
        return handler(column, value, params)

    def _like(self, column: str, pattern: str, params: Params, *, fold: bool = False) -> str:
        if fold:
            return f"UPPER({column}) LIKE UPPER({params.add(pattern)}){self.like_escape_clause}"
        return f"{column} LIKE {params.add(pattern)}{self.like_escape_clause}"

    def op_exact(self, column: str, value: Any, params: Params) -> str:
        if value is None:
            return f"{column} IS NULL"
        return f"{column} = {params.add(value)}"

    def op_iexact(self, column: str, value: Any, params: Params) -> str:
        return f"UPPER({column}) = UPPER({params.add(value)})"

    def op_ne(self, column: str, value: Any, params: Params) -> str:
        if value is None:
            return f"{column} IS NOT NULL"
        return f"{column} <> {params.add(value)}"

    def op_lt(self, column: str, value: Any, params: Params) -> str:
        return f"{column} < {params.add(value)}"

    def op_lte(self, column: str, value: Any, params: Params) -> str:
        return f"{column} <= {params.add(value)}"

    def op_gt(self, column: str, value: Any, params: Params) -> str:
        return f"{column} > {params.add(value)}"

    def op_gte(self, column: str, value: Any, params: Params) -> str:
        return f"{column} >= {params.add(value)}"

    def op_between(self, column: str, value: Any, params: Params) -> str:
        low, high = value
        return f"{column} BETWEEN {params.add(low)} AND {params.add(high)}"

    def op_in(self, column: str, value: Any, params: Params) -> str:
        values = list(value)
        if not values:
            return "1 = 0"
        if len(values) == 1:
            return f"{column} = {params.add(values[0])}"
        placeholders = ", ".join(params.add(v) for v in values)
        return f"{column} IN ({placeholders})"

    def op_notin(self, column: str, value: Any, params: Params) -> str:
        values = list(value)
        if not values:
            return "1 = 1"
        if len(values) == 1:
            return f"{column} <> {params.add(values[0])}"
        placeholders = ", ".join(params.add(v) for v in values)
        return f"{column} NOT IN ({placeholders})"

    def op_isnull(self, column: str, value: Any, params: Params) -> str:
        return f"{column} IS NULL" if value else f"{column} IS NOT NULL"

    def op_contains(self, column: str, value: Any, params: Params) -> str:
        return self._like(column, f"%{self.grammar.like_escape(str(value))}%", params)

    def op_icontains(self, column: str, value: Any, params: Params) -> str:
        return self._like(column, f"%{self.grammar.like_escape(str(value))}%", params, fold=True)

    def op_startswith(self, column: str, value: Any, params: Params) -> str:
        return self._like(column, f"{self.grammar.like_escape(str(value))}%", params)

    def op_istartswith(self, column: str, value: Any, params: Params) -> str:
        return self._like(column, f"{self.grammar.like_escape(str(value))}%", params, fold=True)

    def op_endswith(self, column: str, value: Any, params: Params) -> str:
        return self._like(column, f"%{self.grammar.like_escape(str(value))}", params)

    def op_iendswith(self, column: str, value: Any, params: Params) -> str:
        return self._like(column, f"%{self.grammar.like_escape(str(value))}", params, fold=True)

    def op_regex(self, column: str, value: Any, params: Params) -> str:
        return f"{column} REGEXP {params.add(value)}"

    def op_iregex(self, column: str, value: Any, params: Params) -> str:
        return f"UPPER({column}) REGEXP UPPER({params.add(value)})"

    # -- types ---------------------------------------------------------------

    def type_for(self, kind: str, **options: Any) -> str:
        handler = getattr(self, f"type_{kind}", None)
        if handler is None:
            raise QueryBuildError(f'Unknown column type "{kind}"')
        return handler(**options)

    def type_serial(self, **options: Any) -> str:
        return "serial primary key"

    def type_integer(self, **options: Any) -> str:
        return "integer"

    def type_bool(self, **options: Any) -> str:
        return "boolean"

    def type_float(self, **options: Any) -> str:
        return "double precision"

    def type_decimal(self, precision: int | None = None, scale: int | None = None, **options: Any) -> str:
        if precision is None:
            return "numeric"
        if scale is None:
            return f"numeric({precision})"
        return f"numeric({precision}, {scale})"

    def type_string(self, max_length: int | None = None, **options: Any) -> str:
        if max_length:
            return f"varchar({max_length})"
        return "text"

    def type_binary(self, **options: Any) -> str:
        return "bytea"

    def type_datetime(self, **options: Any) -> str:
        return "timestamp"

    def type_date(self, **options: Any) -> str:
        return "date"

    def type_time(self, **options: Any) -> str:
        return "time"


# =============================================================================
# Phrasing
# =============================================================================


class Phrasing:
    """Assembles complete statements."""

    begin_sql = "BEGIN"
    commit_sql = "COMMIT"
    rollback_sql = "ROLLBACK"

    def __init__(self, grammar: Grammar, translator: Translator, *, supports_returning: bool = True) -> None:
        self.grammar = grammar
        self.translator = translator
        self.supports_returning = supports_returning

    def params(self) -> Params:
        return Params(self.grammar)

    # -- clauses -------------------------------------------------------------

    def condition(self, node: Q | Condition, params: Params, *, nested: bool = False) -> str:
        """Render a resolved condition tree. Leaf fields must be ``ColumnRef``s."""
        if isinstance(node, Condition):
            return self.translator.predicate(
                self.grammar.field(node.field), node.operator, node.value, params
            )
        if len(node.children) == 1 and not node.negated:
            return self.condition(node.children[0], params, nested=nested)
        parts = [self.condition(child, params, nested=True) for child in node.children]
        sql = f" {node.connector} ".join(parts)
        if node.negated:
            return f"NOT ({sql})"
        if nested and len(parts) > 1:
            return f"({sql})"
        return sql

    def where_clause(self, tree: Q | None, params: Params) -> str:
        if not tree:
            return ""
        return f" WHERE {self.condition(tree, params)}"

    def join_clause(self, join: JoinClause) -> str:
        keyword = "LEFT JOIN" if join.kind == "left" else "INNER JOIN"
        sql = f" {keyword} {self.grammar.table(join.table, join.alias)}"
        if join.on:
            predicates = " AND ".join(
                f"{self.grammar.field(left)} = {self.grammar.field(right)}" for left, right in join.on
            )
            sql += f" ON {predicates}"
        return sql

    def limit_clause(self, limit: int | None, offset: int | None) -> str:
        sql = ""
        if limit is not None:
            sql += f" LIMIT {self.grammar.escape(int(limit))}"
        if offset is not None:
            sql += f" OFFSET {self.grammar.escape(int(offset))}"
        return sql

    def returning_clause(self, returning: Sequence[str] | None) -> str:
        if not returning or not self.supports_returning:
            return ""
        return " RETURNING " + ", ".join(self.grammar.quote(c) for c in returning)

    # -- statements ----------------------------------------------------------

    def select(self, parts: SelectParts) -> Statement:
        params = self.params()
        columns = ", ".join(self.grammar.field(c) for c in parts.columns)
        distinct = "DISTINCT " if parts.distinct else ""
        sql = f"SELECT {distinct}{columns} FROM {self.grammar.quote(parts.table)}"
        sql += "".join(self.join_clause(j) for j in parts.joins)
        sql += self.where_clause(parts.where, params)
        if parts.group_by:
            sql += " GROUP BY " + ", ".join(self.grammar.field(c) for c in parts.group_by)
        if parts.order_by:
            sql += " ORDER BY " + ", ".join(
                f"{self.grammar.field(t.ref)} {'DESC' if t.descending else 'ASC'}"
                for t in parts.order_by
            )
        sql += self.limit_clause(parts.limit, parts.offset)
        return Statement(sql, params.args)

    def insert(
        self,
        table: str,
        columns: Sequence[str],
        rows: Sequence[Sequence[Any]],
        returning: Sequence[str] | None = None,
    ) -> Statement:
        params = self.params()
        sql = f"INSERT INTO {self.grammar.quote(table)}"
        if not columns:
            sql += self.default_values(len(rows))
        else:
            sql += " (" + ", ".join(self.grammar.quote(c) for c in columns) + ")"
            sql += " VALUES " + ", ".join(
                "(" + ", ".join(params.add(v) for v in row) + ")" for row in rows
            )
        sql += self.returning_clause(returning)
        return Statement(sql, params.args)

    def default_values(self, count: int) -> str:
        if count > 1:
            raise QueryBuildError("Cannot insert several rows of default values at once")
        return " DEFAULT VALUES"

    def update(self, table: str, values: Mapping[str, Any], where: Q | None) -> Statement:
        if not values:
            raise QueryBuildError("update() requires at least one value to set")
        params = self.params()
        assignments = ", ".join(f"{self.grammar.quote(k)} = {params.add(v)}" for k, v in values.items())
        sql = f"UPDATE {self.grammar.quote(table)} SET {assignments}"
        sql += self.where_clause(where, params)
        return Statement(sql, params.args)

    def delete(self, table: str, where: Q | None) -> Statement:
        params = self.params()
        sql = f"DELETE FROM {self.grammar.quote(table)}"
        sql += self.where_clause(where, params)
        return Statement(sql, params.args)

    def savepoint_name(self, level: int) -> str:
        return self.grammar.quote(f"sp_{level}")

    def begin(self, level: int = 1) -> Statement:
        """Open a transaction, or a savepoint when ``level`` is above 1."""
        if level > 1:
            return Statement(f"SAVEPOINT {self.savepoint_name(level)}", [])
        return Statement(self.begin_sql, [])

    def commit(self, level: int = 1) -> Statement:
        if level > 1:
            return Statement(f"RELEASE SAVEPOINT {self.savepoint_name(level)}", [])
        return Statement(self.commit_sql, [])

    def rollback(self, level: int = 1) -> Statement:
        if level > 1:
            return Statement(f"ROLLBACK TO SAVEPOINT {self.savepoint_name(level)}", [])
        return Statement(self.rollback_sql, [])

    def column_definition(self, column: ColumnInfo) -> str:
        kind = column.type_kind()
        native = self.translator.type_for(
            kind, max_length=column.max_length, precision=column.precision, scale=column.scale
        )
        sql = f"{self.grammar.quote(column.storage_name)} {native}"
        if column.primary_key and kind != "serial":
            sql += " PRIMARY KEY"
        elif not column.nullable and not column.primary_key:
            sql += " NOT NULL"
        # Callable defaults are evaluated in Python when the instance is built
        if column.default is not None and not callable(column.default):
            sql += f" DEFAULT {self.grammar.escape(column.default)}"
        if column.unique and not column.primary_key:
            sql += " UNIQUE"
        return sql

    def create_table(self, table: str, columns: Iterable[ColumnInfo], *, if_not_exists: bool = True) -> Statement:
        guard = "IF NOT EXISTS " if if_not_exists else ""
        body = ", ".join(self.column_definition(c) for c in columns)
        return Statement(f"CREATE TABLE {guard}{self.grammar.quote(table)} ({body})", [])

    def drop_table(self, table: str, *, if_exists: bool = True) -> Statement:
        guard = "IF EXISTS " if if_exists else ""
        return Statement(f"DROP TABLE {guard}{self.grammar.quote(table)}", [])


# =============================================================================
# Dialect
# =============================================================================


@dataclass
class Dialect:
    """A grammar, translator and phrasing wired together.

    Subclasses swap collaborator classes; instances are cheap and stateless.
    """

    name: str = "ansi"
    supports_returning: bool = True
    grammar_class: type[Grammar] = AnsiGrammar
    translator_class: type[Translator] = Translator
    phrasing_class: type[Phrasing] = Phrasing
    grammar: Grammar = field(init=False, repr=False)
    translator: Translator = field(init=False, repr=False)
    phrasing: Phrasing = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.grammar = self.grammar_class()
        self.translator = self.translator_class(self.grammar)
        self.phrasing = self.phrasing_class(
            self.grammar, self.translator, supports_returning=self.supports_returning
        )
        logger.debug("Initialized %s dialect", self.name)
