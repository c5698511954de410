"""Relation managers and in-flight collection changes.

Changes made through ``instance.related(name)`` update the collection
caches immediately and are recorded as an ``InFlightChange``. Saving the
owner flushes the recorded changes in the order clear, remove, add.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from querykit.errors import QueryBuildError
from querykit.relationships import BelongsTo, HasMany, HasManyThrough, Relation

if TYPE_CHECKING:
    from querykit.base import Base
    from querykit.database import Database
    from querykit.query import BaseQuery, SelectQuery

logger = logging.getLogger(__name__)


def _index(items: list[Base], item: Base) -> int:
    for i, existing in enumerate(items):
        if existing is item:
            return i
    return -1


@dataclass
class InFlightChange:
    """Pending changes to one to-many collection.

    Adding an object that is pending removal cancels the removal (and the
    reverse), so each object appears in at most one list.
    """

    clear: bool = False
    add: list[Base] = field(default_factory=list)
    remove: list[Base] = field(default_factory=list)

    def record_add(self, item: Base) -> None:
        i = _index(self.remove, item)
        if i >= 0:
            del self.remove[i]
        elif _index(self.add, item) < 0:
            self.add.append(item)

    def record_remove(self, item: Base) -> None:
        i = _index(self.add, item)
        if i >= 0:
            del self.add[i]
        elif _index(self.remove, item) < 0:
            self.remove.append(item)

    def record_clear(self) -> None:
        self.clear = True
        self.add.clear()
        self.remove.clear()

    def reset(self) -> None:
        self.clear = False
        self.add = []
        self.remove = []

    @property
    def empty(self) -> bool:
        return not (self.clear or self.add or self.remove)


class RelatedManager:
    """Manage one relation of one model instance.

    Example:
        >>> manager = user.related("articles")
        >>> manager.add(article)
        >>> manager.create(title="Draft")
        >>> await db.save(user)
        >>> articles = await manager.fetch()
    """

    def __init__(self, owner: Base, relation: Relation) -> None:
        self.owner = owner
        self.relation = relation

    def __repr__(self) -> str:
        return f"<RelatedManager {self.relation.label}>"

    @property
    def loaded(self) -> bool:
        return self.relation.name in self.owner._loaded_relationships

    @property
    def in_flight(self) -> InFlightChange:
        return self.owner._in_flight.setdefault(self.relation.name, InFlightChange())

    def _require_many(self, action: str) -> None:
        if not self.relation.to_many:
            raise QueryBuildError(f"{action}() requires a to-many relation; {self.relation.label} is to-one")

    def all(self) -> Any:
        """The cached value; raises ``RelationNotLoadedError`` if not loaded."""
        return getattr(self.owner, self.relation.name)

    def add(self, *items: Base) -> None:
        self._require_many("add")
        change = self.in_flight
        for item in items:
            change.record_add(item)
            self.relation.associate(self.owner, item)

    def remove(self, *items: Base) -> None:
        self._require_many("remove")
        change = self.in_flight
        for item in items:
            change.record_remove(item)
            self.relation.disassociate(self.owner, item)

    def clear(self) -> None:
        self._require_many("clear")
        self.in_flight.record_clear()
        for item in list(self.owner._loaded_relationships.get(self.relation.name) or ()):
            self.relation.disassociate(self.owner, item)
        self.owner._loaded_relationships[self.relation.name] = []

    def create(self, **values: Any) -> Base:
        """Build a new related object and add it to the collection."""
        self._require_many("create")
        item = self.relation.target(**values)
        self.add(item)
        return item

    def query(self) -> SelectQuery:
        """A SELECT for the related rows, bound to the owner's database if any."""
        from querykit.query import select

        database = self.owner._database
        query = database.select(self.relation.target) if database is not None else select(self.relation.target)
        return query.where(self.relation.related_conditions(self.owner))

    async def fetch(self, *, transaction: BaseQuery | None = None) -> Any:
        """Load the relation from the database and cache it on the owner."""
        query = self.query()
        if transaction is not None:
            query = query.transaction(transaction)
        rows = await query
        relation = self.relation
        if relation.to_many:
            value: Any = rows
            inverse = relation.inverse
            if isinstance(relation, HasMany) and inverse is not None:
                for item in rows:
                    item._loaded_relationships[inverse.name] = self.owner
        else:
            value = rows[0] if rows else None
        self.owner._loaded_relationships[relation.name] = value
        return value


async def flush_related(database: Database, owner: Base, *, transaction: BaseQuery | None = None) -> None:
    """Write the owner's pending collection changes.

    State for a relation is reset only after all of its statements succeed.
    """
    for name, change in list(owner._in_flight.items()):
        if change.empty:
            continue
        relation = type(owner).__relationships__[name]
        logger.debug(
            "Flushing %s: clear=%s add=%d remove=%d",
            relation.label,
            change.clear,
            len(change.add),
            len(change.remove),
        )
        if isinstance(relation, HasManyThrough):
            await _flush_through(database, owner, relation, change, transaction)
        else:
            await _flush_has_many(database, owner, relation, change, transaction)
        change.reset()


def _bind(query: BaseQuery, transaction: BaseQuery | None) -> BaseQuery:
    return query.transaction(transaction) if transaction is not None else query


def _clean_except(item: Base, name: str) -> bool:
    return item.persisted and not (item.dirty - {name})


async def _flush_has_many(
    database: Database,
    owner: Base,
    relation: HasMany,
    change: InFlightChange,
    transaction: BaseQuery | None,
) -> None:
    target = relation.target
    fk = relation.foreign_key
    owner_key = getattr(owner, relation.primary_key)

    if change.clear:
        await _bind(database.update(target, {fk: None}).where({fk: owner_key}), transaction)

    removed = [item for item in change.remove if item.persisted]
    batch = [item for item in removed if _clean_except(item, fk)]
    if batch:
        await _bind(database.update(target, {fk: None}).where({"pk[in]": [i.pk for i in batch]}), transaction)
        for item in batch:
            item._mark_clean(fk)
    for item in removed:
        if not any(item is b for b in batch):
            await database.save(item, transaction=transaction)

    # The owner may have been inserted since these were associated
    for item in change.add:
        if getattr(item, fk) != owner_key:
            setattr(item, fk, owner_key)
    batch = [item for item in change.add if _clean_except(item, fk)]
    if batch:
        await _bind(database.update(target, {fk: owner_key}).where({"pk[in]": [i.pk for i in batch]}), transaction)
        for item in batch:
            item._mark_clean(fk)
    for item in change.add:
        if not any(item is b for b in batch):
            await database.save(item, transaction=transaction)


async def _flush_through(
    database: Database,
    owner: Base,
    relation: HasManyThrough,
    change: InFlightChange,
    transaction: BaseQuery | None,
) -> None:
    through: HasMany = relation.through
    source: BelongsTo = relation.source
    join_model = through.target
    owner_fk = through.foreign_key
    source_fk = source.foreign_key
    owner_key = getattr(owner, through.primary_key)

    if change.clear:
        await _bind(database.delete(join_model).where({owner_fk: owner_key}), transaction)

    removed = [getattr(item, source.primary_key) for item in change.remove if item.persisted]
    if removed:
        query = database.delete(join_model).where({owner_fk: owner_key, f"{source_fk}[in]": removed})
        await _bind(query, transaction)

    for item in change.add:
        if not item.persisted:
            await database.save(item, transaction=transaction)
    if change.add:
        rows = [{owner_fk: owner_key, source_fk: getattr(item, source.primary_key)} for item in change.add]
        await _bind(database.insert(join_model, rows), transaction)
