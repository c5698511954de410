"""Join resolution for queries that reference related models.

A ``JoinResolver`` is created per compilation. It turns dotted relation
paths (``"articles.comments.body"``) into ``JoinSpec``s with deterministic
aliases and maps every field reference to a qualified storage column.

Aliases: a relation's first join uses the relation name; a name already in
use (the primary table, or an earlier join) gets ``_j1``, ``_j2``, ... in
the order paths are first seen. An alias equal to the table name is not
rendered.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from querykit.conditions import Condition
from querykit.dialects.base import ColumnRef, JoinClause
from querykit.errors import AmbiguousFieldError, NoSuchRelationError, QueryBuildError, ResolutionError
from querykit.relationships import BelongsTo, Relation, singularize

if TYPE_CHECKING:
    from querykit.base import Base

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JoinRequest:
    """A ``join()`` call recorded on a query, resolved at compile time."""

    path: str
    condition: str | None = None
    kind: str = "inner"


@dataclass
class JoinSpec:
    """One resolved join."""

    path: str
    table: str
    alias: str
    on: tuple[tuple[ColumnRef, ColumnRef], ...]
    kind: str = "inner"
    relation: Relation | None = None
    model: type[Base] | None = None

    def clause(self) -> JoinClause:
        return JoinClause(table=self.table, alias=self.alias, kind=self.kind, on=self.on)


def parse_join_condition(condition: str) -> tuple[ColumnRef, ColumnRef]:
    """Parse ``"a.x = b.y"`` into a pair of column references."""
    left, sep, right = condition.partition("=")
    if not sep or not left.strip() or not right.strip():
        raise QueryBuildError(f'Join condition must look like "table.column = table.column", got "{condition}"')

    def ref(text: str) -> ColumnRef:
        table, _, column = text.strip().rpartition(".")
        return ColumnRef(table or None, column)

    return ref(left), ref(right)


class JoinResolver:
    """Resolves relation paths and field names for one query."""

    def __init__(self, model: type[Base] | None, table: str, *, allow_joins: bool = True) -> None:
        self.model = model
        self.table = table
        self.allow_joins = allow_joins
        self.joins: dict[str, JoinSpec] = {}
        self.group_primary = False
        self._aliases: set[str] = {table}

    # -- joins ---------------------------------------------------------------

    def join(
        self,
        path: str,
        *,
        kind: str = "inner",
        condition: str | None = None,
        implicit: bool = False,
    ) -> JoinSpec:
        """Join every relation along ``path`` and return the last join.

        Raises:
            NoSuchRelationError: If a segment is not a relation of its host model.
        """
        if not self.allow_joins:
            raise ResolutionError(f'Relation path "{path}" cannot be used here; only the primary table is available')
        if self.model is None:
            return self._join_table(path, kind=kind, condition=condition)

        segments = path.split(".")
        model, owner_alias = self.model, self.table
        spec: JoinSpec | None = None
        for i, segment in enumerate(segments):
            relations = model.__relationships__
            relation = relations.get(segment)
            if relation is None:
                raise NoSuchRelationError(segment, model.__name__, relations, context=f'in "{path}"')
            spec = self._join_relation(".".join(segments[: i + 1]), relation, owner_alias, kind, implicit)
            model, owner_alias = relation.target, spec.alias

        if condition is not None:
            spec = replace(spec, on=(parse_join_condition(condition),))
            self.joins[spec.path] = spec
        return spec

    def _join_relation(
        self, path: str, relation: Relation, owner_alias: str, kind: str, implicit: bool
    ) -> JoinSpec:
        existing = self.joins.get(path)
        if existing is not None:
            return existing

        parent = path.rpartition(".")[0]
        steps = relation.join_steps()
        for step in steps[:-1]:
            key = f"{parent}.{step.name}" if parent else step.name
            intermediate = self.joins.get(key) or self._add(key, step, step.name, owner_alias, kind)
            owner_alias = intermediate.alias

        spec = self._add(path, steps[-1], relation.name, owner_alias, kind)
        if implicit and relation.to_many:
            self.group_primary = True
        return spec

    def _add(self, path: str, step: Relation, name: str, owner_alias: str, kind: str) -> JoinSpec:
        alias = self._alias_for(name)
        target = step.target
        spec = JoinSpec(
            path=path,
            table=target.__tablename__,
            alias=alias,
            on=(step.join_on(owner_alias, alias),),
            kind=kind,
            relation=step,
            model=target,
        )
        self.joins[path] = spec
        logger.debug("Joined %s as %s", path, alias)
        return spec

    def _join_table(self, table: str, *, kind: str, condition: str | None) -> JoinSpec:
        existing = self.joins.get(table)
        if existing is not None:
            return existing
        if condition is None:
            on = (ColumnRef(self.table, f"{singularize(table)}_id"), ColumnRef(table, "id"))
        else:
            on = parse_join_condition(condition)
        spec = JoinSpec(path=table, table=table, alias=self._alias_for(table), on=(on,), kind=kind)
        self.joins[table] = spec
        return spec

    def _alias_for(self, name: str) -> str:
        alias = name
        n = 0
        while alias in self._aliases:
            n += 1
            alias = f"{name}_j{n}"
        self._aliases.add(alias)
        return alias

    def clauses(self) -> tuple[JoinClause, ...]:
        return tuple(spec.clause() for spec in self.joins.values())

    # -- references ----------------------------------------------------------

    def prepare(self, field: str) -> None:
        """Create any implicit joins ``field`` needs, without resolving it."""
        if self.model is None:
            return
        if "." in field or field in self.model.__relationships__:
            self.reference(field)

    def primary_ref(self, column: str) -> ColumnRef:
        return ColumnRef(self.table if self.joins else None, column)

    def reference(self, field: str) -> ColumnRef:
        """Map a field name or relation path to a qualified storage column."""
        if self.model is None:
            table, _, column = field.rpartition(".")
            return ColumnRef(table or None, column)

        segments = field.split(".")
        if len(segments) == 1:
            return self._bare(field)

        model = self.model
        relation_path: list[str] = []
        for segment in segments:
            relation = model.__relationships__.get(segment)
            if relation is None:
                break
            relation_path.append(segment)
            model = relation.target
        tail = segments[len(relation_path) :]

        if not relation_path:
            return self._qualified(segments)
        if len(tail) > 1:
            raise NoSuchRelationError(tail[0], model.__name__, model.__relationships__, context=f'in "{field}"')

        spec = self.join(".".join(relation_path), implicit=True)
        attr = tail[0] if tail else "pk"
        return ColumnRef(spec.alias, spec.model.storage_name(attr))

    def _qualified(self, segments: list[str]) -> ColumnRef:
        qualifier, attr = segments[0], segments[-1]
        if len(segments) == 2:
            if qualifier == self.table:
                return ColumnRef(self.table, self.model.storage_name(attr))
            for spec in self.joins.values():
                if spec.alias == qualifier:
                    model = spec.model
                    return ColumnRef(spec.alias, model.storage_name(attr) if model else attr)
        raise NoSuchRelationError(
            qualifier,
            self.model.__name__,
            self.model.__relationships__,
            context=f'in "{".".join(segments)}"',
        )

    def _bare(self, attr: str) -> ColumnRef:
        model = self.model
        relation = model.__relationships__.get(attr)
        if isinstance(relation, BelongsTo):
            return self.primary_ref(relation.foreign_key_column)
        if relation is not None:
            spec = self.join(attr, implicit=True)
            return ColumnRef(spec.alias, spec.model.storage_name("pk"))

        if model.has_attribute(attr):
            return self.primary_ref(model.storage_name(attr))

        candidates = [s for s in self.joins.values() if s.model is not None and s.model.has_attribute(attr)]
        if len(candidates) > 1:
            raise AmbiguousFieldError(attr, [s.alias for s in candidates])
        if candidates:
            spec = candidates[0]
            return ColumnRef(spec.alias, spec.model.storage_name(attr))
        return self.primary_ref(attr)

    def condition(self, leaf: Condition) -> Condition:
        """Resolve a condition leaf: qualify its field and unwrap model values."""
        return Condition(self.reference(leaf.field), leaf.operator, self._key_value(leaf.field, leaf.value))

    def _key_value(self, field: str, value: Any) -> Any:
        from querykit.base import Base

        key_attr = "pk"
        if self.model is not None:
            relation = self.model.__relationships__.get(field)
            if isinstance(relation, BelongsTo):
                key_attr = relation.primary_key

        def unwrap(v: Any) -> Any:
            return getattr(v, key_attr) if isinstance(v, Base) else v

        if isinstance(value, (list, tuple, set, frozenset)):
            return tuple(unwrap(v) for v in value)
        return unwrap(value)

    def primary_key_ref(self) -> ColumnRef:
        return ColumnRef(self.table, self.model.storage_name("pk"))
