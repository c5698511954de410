"""Query builder for constructing and executing SQL statements.

Queries are immutable: every chained call returns a new query and leaves
the original untouched. Clause state is held in tuples and condition trees
that are never mutated, so a derived query shares everything it did not
change with its parent.

Unbound queries compile only::

    >>> select("people").where({"age": {"gte": 21}}).order_by("-name").limit(10).to_sql()
    ('SELECT * FROM "people" WHERE "age" >= ? ORDER BY "name" DESC LIMIT 10', [21])

Queries created from a ``Database`` (or a transaction) can be awaited::

    >>> users = await db.query(User).where({"articles.title[contains]": "news"})
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from functools import partial
from typing import TYPE_CHECKING, Any, ClassVar, Self, TypeVar

from querykit.conditions import Q, combine
from querykit.dialects import Dialect, OrderTerm, SelectParts, Statement, get_dialect
from querykit.errors import NoSuchRelationError, QueryBuildError, TransactionStateError
from querykit.joins import JoinRequest, JoinResolver
from querykit.relationships import LoadOption
from querykit.transaction import (
    BEGIN,
    COMMIT,
    ROLLBACK,
    TransactionState,
    TransactionStep,
    execute_statement,
    run_pooled,
)

if TYPE_CHECKING:
    from querykit.adapters.base import Connection, Result
    from querykit.base import Base
    from querykit.database import Database

logger = logging.getLogger(__name__)

Transform = Callable[[Any, str], Any]
Q_T = TypeVar("Q_T", bound="BaseQuery")


def _target(table: str | type[Base]) -> tuple[str, type[Base] | None]:
    from querykit.base import Base

    if isinstance(table, type) and issubclass(table, Base):
        return table.__tablename__, table
    if isinstance(table, str) and table:
        return table, None
    raise QueryBuildError(f"Expected a table name or model class, got {table!r}")


def _non_negative(name: str, value: int | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise QueryBuildError(f"{name}() requires a non-negative integer, got {value!r}")
    return value


@dataclass(frozen=True)
class BaseQuery:
    """Shared behaviour of every query: binding, transforms and execution."""

    database: Database | None = field(default=None, repr=False, compare=False)
    transaction_state: TransactionState | None = field(default=None, repr=False, compare=False)
    transaction_override: str | None = None
    transforms: tuple[Transform, ...] = ()

    query_type: ClassVar[str] = "entry"

    def _dup(self, **changes: Any) -> Self:
        return replace(self, **changes)

    # -- chaining ------------------------------------------------------------

    def transform(self, fn: Transform) -> Self:
        """Append ``fn(result, query_type)`` to the post-execution pipeline.

        Example:
            >>> db.select("users").transform(lambda rows, kind: [r["id"] for r in rows])
        """
        return self._dup(transforms=(*self.transforms, fn))

    def transaction(self, tx: BaseQuery | TransactionState | None) -> Self:
        """Run this query on a transaction's connection."""
        state = tx.transaction_state if isinstance(tx, BaseQuery) else tx
        return self._dup(transaction_state=state)

    def unbind(self) -> Self:
        """Detach this query from any transaction."""
        return self._dup(transaction_state=None, transaction_override=None)

    def begin(self) -> TransactionQuery:
        """Start a transaction, or a savepoint inside the current one."""
        state = self.transaction_state
        if state is None:
            state = TransactionState(self.database.adapter if self.database else None)
        return TransactionQuery(database=self.database, transaction_state=state, transaction_override=BEGIN)

    def commit(self) -> TransactionQuery:
        return TransactionQuery(
            database=self.database, transaction_state=self.transaction_state, transaction_override=COMMIT
        )

    def rollback(self) -> TransactionQuery:
        return TransactionQuery(
            database=self.database, transaction_state=self.transaction_state, transaction_override=ROLLBACK
        )

    # -- compilation ---------------------------------------------------------

    def _dialect(self, dialect: str | Dialect | None) -> Dialect:
        if dialect is None and self.database is not None:
            return self.database.dialect
        return get_dialect(dialect)

    def _phrase(self, dialect: Dialect, step: TransactionStep | None) -> Statement:
        raise QueryBuildError("Must first call `select`, `update`, `insert`, `delete` or `raw` on query.")

    def statement(self, dialect: str | Dialect | None = None) -> Statement:
        """Compile to a ``Statement`` without executing or changing any state."""
        step = None
        if self.transaction_state is not None:
            step = self.transaction_state.peek(self.transaction_override)
        return self._phrase(self._dialect(dialect), step)

    def to_sql(self, dialect: str | Dialect | None = None) -> tuple[str, list[Any]]:
        """Generate SQL string and parameters."""
        statement = self.statement(dialect)
        return statement.sql, statement.args

    # -- execution -----------------------------------------------------------

    async def execute(self) -> Any:
        """Execute the query and return its (transformed) result.

        Raises:
            QueryBuildError: If the query is malformed or not bound to a database.
            ResolutionError: If relation paths or fields cannot be resolved.
            TransactionStateError: If the transaction is not usable.
            ExecutionError: If the driver reports a failure.
        """
        database = self.database
        if database is None:
            raise QueryBuildError(
                "Query is not bound to a database; build it from a Database or use to_sql()"
            )
        dialect = database.dialect
        state = self.transaction_state
        override = self.transaction_override

        if state is None:
            if override is not None:
                raise TransactionStateError(f"Must associate `{override}` with a transaction.")
            statement = self._phrase(dialect, None)
            result = await run_pooled(database.adapter, partial(self._run, statement))
        else:
            statement = self._phrase(dialect, state.peek(override))
            step = state.advance(override)
            result = await state.run(step, partial(self._run, statement))

        value = await self._finish(result, database)
        for fn in self.transforms:
            value = fn(value, self.query_type)
        return value

    async def _run(self, statement: Statement, connection: Connection) -> Result:
        return await execute_statement(connection, statement)

    async def _finish(self, result: Result, database: Database) -> Any:
        return result

    def __await__(self):
        return self.execute().__await__()


@dataclass(frozen=True)
class EntryQuery(BaseQuery):
    """A query with no kind yet; spawns typed queries sharing its bindings.

    Compiling or executing an entry query fails until a kind is chosen.
    """

    def _spawn(self, cls: type[Q_T], **values: Any) -> Q_T:
        return cls(
            database=self.database,
            transaction_state=self.transaction_state,
            transforms=self.transforms,
            **values,
        )

    def select(self, table: str | type[Base], columns: Iterable[str] | None = None) -> SelectQuery:
        name, model = _target(table)
        return self._spawn(SelectQuery, table=name, model=model, columns=tuple(columns or ()))

    def insert(
        self, table: str | type[Base], values: Mapping[str, Any] | Iterable[Mapping[str, Any]] | None = None
    ) -> InsertQuery:
        name, model = _target(table)
        query = self._spawn(InsertQuery, table=name, model=model)
        return query.values(values) if values is not None else query

    def update(self, table: str | type[Base], values: Mapping[str, Any] | None = None) -> UpdateQuery:
        name, model = _target(table)
        query = self._spawn(UpdateQuery, table=name, model=model)
        return query.values(values) if values is not None else query

    def delete(self, table: str | type[Base]) -> DeleteQuery:
        name, model = _target(table)
        return self._spawn(DeleteQuery, table=name, model=model)

    def raw(self, sql: str, args: Iterable[Any] | None = None) -> RawQuery:
        return self._spawn(RawQuery, sql=sql, args=tuple(args or ()))


@dataclass(frozen=True)
class SelectQuery(BaseQuery):
    """Represents a SELECT query."""

    table: str = ""
    model: type[Base] | None = None
    columns: tuple[str, ...] = ()
    conditions: Q | None = None
    joins: tuple[JoinRequest, ...] = ()
    ordering: tuple[tuple[str, bool], ...] = ()
    grouping: tuple[str, ...] = ()
    limit_value: int | None = None
    offset_value: int | None = None
    distinct_value: bool = False
    load_options: tuple[LoadOption, ...] = ()

    query_type: ClassVar[str] = "select"

    def where(self, *conditions: Any, **kwargs: Any) -> SelectQuery:
        """Add WHERE conditions, ANDed with any existing ones.

        Example:
            >>> select(User).where({"username": "wbyoung"})
            >>> select(User).where({"articles.title[contains]": "News"})
            >>> select(User).where(Q(vip=True) | Q({"age[gte]": 21}))
        """
        return self._dup(conditions=combine(self.conditions, *conditions, **kwargs))

    def order_by(self, *fields: str, desc: bool = False) -> SelectQuery:
        """Add ORDER BY terms; a leading ``-`` sorts that field descending.

        Example:
            >>> select(User).order_by("username", "-articles.title")
        """
        terms = []
        for name in fields:
            if name.startswith("-"):
                terms.append((name[1:], True))
            else:
                terms.append((name, desc))
        return self._dup(ordering=(*self.ordering, *terms))

    def limit(self, n: int | None) -> SelectQuery:
        """Limit the number of results."""
        return self._dup(limit_value=_non_negative("limit", n))

    def offset(self, n: int | None) -> SelectQuery:
        """Skip the first n results."""
        return self._dup(offset_value=_non_negative("offset", n))

    def group_by(self, *fields: str) -> SelectQuery:
        return self._dup(grouping=(*self.grouping, *fields))

    def distinct(self, value: bool = True) -> SelectQuery:
        return self._dup(distinct_value=value)

    def join(self, path: str, condition: str | None = None, kind: str = "inner") -> SelectQuery:
        """Join a relation path (or, for table queries, a table).

        Explicit joins never add grouping.

        Example:
            >>> select(User).join("articles.comments")
            >>> select("cities").join("countries", "cities.country_id = countries.id")
        """
        if kind not in ("inner", "left"):
            raise QueryBuildError(f'Join kind must be "inner" or "left", got "{kind}"')
        if self.model is not None:
            self._walk(path, context=f"join for {self.model.__name__} query")
        return self._dup(joins=(*self.joins, JoinRequest(path, condition, kind)))

    def options(self, *opts: LoadOption) -> SelectQuery:
        """Add relationship loading options.

        Example:
            >>> select(User).options(selectinload("articles.comments"))
        """
        if self.model is None:
            raise QueryBuildError("Loading options require a model query")
        for opt in opts:
            if not isinstance(opt, LoadOption):
                raise QueryBuildError(f"Expected a LoadOption, got {opt!r}")
        return self._dup(load_options=(*self.load_options, *opts))

    def _walk(self, path: str, context: str) -> None:
        model = self.model
        for segment in path.split("."):
            relations = model.__relationships__
            if segment not in relations:
                raise NoSuchRelationError(segment, model.__name__, relations, context=context)
            model = relations[segment].target

    def _phrase(self, dialect: Dialect, step: TransactionStep | None) -> Statement:
        resolver = JoinResolver(self.model, self.table)
        for request in self.joins:
            resolver.join(request.path, kind=request.kind, condition=request.condition)

        referenced = [leaf.field for leaf in self.conditions.leaves()] if self.conditions else []
        referenced += [name for name, _ in self.ordering]
        referenced += [*self.grouping, *self.columns]
        for name in referenced:
            resolver.prepare(name)

        for opt in self.load_options:
            self._walk(opt.path, context="eager load")

        group_by = tuple(resolver.reference(name) for name in self.grouping)
        if not group_by and resolver.group_primary:
            group_by = (resolver.primary_key_ref(),)

        parts = SelectParts(
            table=self.table,
            columns=tuple(resolver.reference(c) for c in self.columns) or (resolver.primary_ref("*"),),
            distinct=self.distinct_value,
            joins=resolver.clauses(),
            where=self.conditions.map_leaves(resolver.condition) if self.conditions else None,
            group_by=group_by,
            order_by=tuple(OrderTerm(resolver.reference(name), desc) for name, desc in self.ordering),
            limit=self.limit_value,
            offset=self.offset_value,
        )
        return dialect.phrasing.select(parts)

    async def _finish(self, result: Result, database: Database) -> Any:
        if self.model is None:
            return result.all()
        instances = [self.model.from_row(row) for row in result.rows]
        for instance in instances:
            object.__setattr__(instance, "_database", database)
        if self.load_options and instances:
            from querykit.prefetch import prefetch

            await prefetch(instances, self.load_options, database=database, transaction=self.transaction_state)
        return instances

    async def first(self) -> Any:
        """Execute with ``LIMIT 1`` and return the first result or None."""
        rows = await self.limit(1).execute()
        return rows[0] if rows else None


@dataclass(frozen=True)
class InsertQuery(BaseQuery):
    """Represents an INSERT query of one or more rows."""

    table: str = ""
    model: type[Base] | None = None
    rows: tuple[Mapping[str, Any], ...] = ()
    returning_columns: tuple[str, ...] = ()

    query_type: ClassVar[str] = "insert"

    def values(self, *rows: Mapping[str, Any] | Iterable[Mapping[str, Any]], **kwargs: Any) -> InsertQuery:
        """Add rows to insert.

        Example:
            >>> insert("users").values({"username": "a"}, {"username": "b"})
            >>> insert("users").values(username="c")
        """
        added: list[Mapping[str, Any]] = []
        for row in rows:
            if isinstance(row, Mapping):
                added.append(dict(row))
            else:
                added.extend(dict(r) for r in row)
        if kwargs:
            added.append(dict(kwargs))
        return self._dup(rows=(*self.rows, *added))

    def returning(self, *columns: str) -> InsertQuery:
        """Return the given columns of inserted rows (emulated where unsupported)."""
        return self._dup(returning_columns=columns)

    def _storage(self, name: str) -> str:
        return self.model.storage_name(name) if self.model is not None else name

    def _phrase(self, dialect: Dialect, step: TransactionStep | None) -> Statement:
        if not self.rows:
            raise QueryBuildError("insert() requires at least one row of values")
        columns = list(dict.fromkeys(key for row in self.rows for key in row))
        values = [[row.get(c) for c in columns] for row in self.rows]
        returning = [self._storage(c) for c in self.returning_columns]
        return dialect.phrasing.insert(self.table, [self._storage(c) for c in columns], values, returning)

    async def _finish(self, result: Result, database: Database) -> Any:
        if self.returning_columns and not database.dialect.supports_returning and not result.rows:
            # Rows of one INSERT receive consecutive ids starting at the last insert id
            key = self._storage(self.returning_columns[0])
            first_id = result.last_insert_id
            count = result.rowcount if result.rowcount and result.rowcount > 0 else len(self.rows)
            if first_id is not None:
                result.rows = [{key: first_id + i} for i in range(count)]
                result.fields = [key]
        return result


@dataclass(frozen=True)
class UpdateQuery(BaseQuery):
    """Represents an UPDATE query."""

    table: str = ""
    model: type[Base] | None = None
    assignments: tuple[tuple[str, Any], ...] = ()
    conditions: Q | None = None

    query_type: ClassVar[str] = "update"

    def values(self, values: Mapping[str, Any] | None = None, **kwargs: Any) -> UpdateQuery:
        merged = dict(self.assignments)
        merged.update(values or {})
        merged.update(kwargs)
        return self._dup(assignments=tuple(merged.items()))

    def where(self, *conditions: Any, **kwargs: Any) -> UpdateQuery:
        return self._dup(conditions=combine(self.conditions, *conditions, **kwargs))

    def _phrase(self, dialect: Dialect, step: TransactionStep | None) -> Statement:
        resolver = JoinResolver(self.model, self.table, allow_joins=False)
        storage = self.model.storage_name if self.model is not None else str
        values = {storage(name): value for name, value in self.assignments}
        where = self.conditions.map_leaves(resolver.condition) if self.conditions else None
        return dialect.phrasing.update(self.table, values, where)


@dataclass(frozen=True)
class DeleteQuery(BaseQuery):
    """Represents a DELETE query."""

    table: str = ""
    model: type[Base] | None = None
    conditions: Q | None = None

    query_type: ClassVar[str] = "delete"

    def where(self, *conditions: Any, **kwargs: Any) -> DeleteQuery:
        return self._dup(conditions=combine(self.conditions, *conditions, **kwargs))

    def _phrase(self, dialect: Dialect, step: TransactionStep | None) -> Statement:
        resolver = JoinResolver(self.model, self.table, allow_joins=False)
        where = self.conditions.map_leaves(resolver.condition) if self.conditions else None
        return dialect.phrasing.delete(self.table, where)


@dataclass(frozen=True)
class RawQuery(BaseQuery):
    """Literal SQL with positional arguments, passed through unchanged."""

    sql: str = ""
    args: tuple[Any, ...] = ()

    query_type: ClassVar[str] = "raw"

    def _phrase(self, dialect: Dialect, step: TransactionStep | None) -> Statement:
        if not self.sql:
            raise QueryBuildError("raw() requires SQL text")
        return Statement(self.sql, list(self.args))


@dataclass(frozen=True)
class TransactionQuery(EntryQuery):
    """A BEGIN, COMMIT or ROLLBACK statement bound to a transaction.

    A transaction handle (from ``Database.transaction()``) can also spawn
    queries that run on its connection, and works as an async context
    manager that commits on success and rolls back on error.

    Example:
        >>> tx = db.transaction()
        >>> await tx.begin()
        >>> await tx.insert("users", {"username": "wbyoung"})
        >>> await tx.commit()

        >>> async with db.transaction() as tx:
        ...     await tx.select("users")
    """

    query_type: ClassVar[str] = "transaction"

    def _phrase(self, dialect: Dialect, step: TransactionStep | None) -> Statement:
        override = self.transaction_override
        if override is None:
            raise QueryBuildError("Must first call `begin`, `commit` or `rollback` on transaction.")
        level = step.level if step is not None else 1
        if override == BEGIN:
            return dialect.phrasing.begin(level)
        if override == COMMIT:
            return dialect.phrasing.commit(level)
        return dialect.phrasing.rollback(level)

    async def __aenter__(self) -> TransactionQuery:
        await self.begin()
        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()


_entry = EntryQuery()


def select(table: str | type[Base], columns: Iterable[str] | None = None) -> SelectQuery:
    """Build an unbound SELECT query.

    Example:
        >>> select("users", ["id", "username"]).where({"id": 5}).to_sql()
        ('SELECT "id", "username" FROM "users" WHERE "id" = ?', [5])
    """
    return _entry.select(table, columns)


def insert(
    table: str | type[Base], values: Mapping[str, Any] | Iterable[Mapping[str, Any]] | None = None
) -> InsertQuery:
    """Build an unbound INSERT query."""
    return _entry.insert(table, values)


def update(table: str | type[Base], values: Mapping[str, Any] | None = None) -> UpdateQuery:
    """Build an unbound UPDATE query."""
    return _entry.update(table, values)


def delete(table: str | type[Base]) -> DeleteQuery:
    """Build an unbound DELETE query."""
    return _entry.delete(table)


def raw(sql: str, args: Iterable[Any] | None = None) -> RawQuery:
    """Build an unbound raw SQL query."""
    return _entry.raw(sql, args)
