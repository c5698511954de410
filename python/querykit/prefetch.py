"""Eager loading of relations for a batch of model instances.

Each relation on a level is fetched with a single ``IN`` query (two for
relations through a join model) and the results are distributed to their
owners' caches. Sibling relations load concurrently; nested paths load
once their parent level is complete.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from querykit.relationships import BelongsTo, HasMany, HasManyThrough, LoadOption, Relation

if TYPE_CHECKING:
    from querykit.base import Base
    from querykit.database import Database
    from querykit.query import SelectQuery
    from querykit.transaction import TransactionState

logger = logging.getLogger(__name__)


@dataclass
class _Node:
    strategy: str = "selectin"
    children: dict[str, _Node] = field(default_factory=dict)


def _option_tree(options: Iterable[LoadOption]) -> _Node:
    root = _Node()
    for opt in options:
        node = root
        segments = opt.segments
        for i, segment in enumerate(segments):
            node = node.children.setdefault(segment, _Node())
            if i == len(segments) - 1:
                node.strategy = opt.strategy
    return root


@dataclass
class _Loader:
    database: Database
    transaction: TransactionState | None = None

    def select(self, model: type[Base]) -> SelectQuery:
        query = self.database.select(model)
        return query.transaction(self.transaction) if self.transaction is not None else query


def _unique(values: Iterable[Any]) -> list[Any]:
    return list(dict.fromkeys(v for v in values if v is not None))


async def prefetch(
    instances: Sequence[Base],
    options: Iterable[LoadOption],
    *,
    database: Database,
    transaction: TransactionState | None = None,
) -> None:
    """Load the relation paths named by ``options`` into ``instances``.

    Follow-up queries run on the same transaction as the originating query.
    """
    if not instances:
        return
    tree = _option_tree(options)
    await _load_level(type(instances[0]), list(instances), tree, _Loader(database, transaction))


async def _load_level(model: type[Base], instances: list[Base], node: _Node, loader: _Loader) -> None:
    await asyncio.gather(
        *(
            _load_relation(model.__relationships__[name], instances, child, loader)
            for name, child in node.children.items()
        )
    )


async def _load_relation(relation: Relation, instances: list[Base], node: _Node, loader: _Loader) -> None:
    if node.strategy == "noload":
        for instance in instances:
            instance._loaded_relationships[relation.name] = [] if relation.to_many else None
        return

    logger.debug("Eager loading %s for %d instances", relation.label, len(instances))
    if isinstance(relation, HasManyThrough):
        related = await _load_through(relation, instances, loader)
    elif isinstance(relation, HasMany):
        related = await _load_has_many(relation, instances, loader)
    elif isinstance(relation, BelongsTo):
        related = await _load_belongs_to(relation, instances, loader)
    else:
        raise TypeError(f"Cannot eager load {relation!r}")

    if node.children and related:
        await _load_level(relation.target, related, node, loader)


async def _load_has_many(relation: HasMany, owners: list[Base], loader: _Loader) -> list[Base]:
    pk, fk = relation.primary_key, relation.foreign_key
    keys = _unique(getattr(owner, pk) for owner in owners)
    grouped: dict[Any, list[Base]] = {key: [] for key in keys}
    related: list[Base] = []
    if keys:
        for item in await loader.select(relation.target).where({f"{fk}[in]": keys}):
            bucket = grouped.get(getattr(item, fk))
            if bucket is not None:
                bucket.append(item)
                related.append(item)

    inverse = relation.inverse
    for owner in owners:
        items = list(grouped.get(getattr(owner, pk), ()))
        owner._loaded_relationships[relation.name] = items
        if inverse is not None:
            for item in items:
                item._loaded_relationships[inverse.name] = owner
    return related


async def _load_belongs_to(relation: BelongsTo, owners: list[Base], loader: _Loader) -> list[Base]:
    pk, fk = relation.primary_key, relation.foreign_key
    keys = _unique(getattr(owner, fk) for owner in owners)
    by_key: dict[Any, Base] = {}
    if keys:
        for item in await loader.select(relation.target).where({f"{pk}[in]": keys}):
            by_key[getattr(item, pk)] = item

    for owner in owners:
        owner._loaded_relationships[relation.name] = by_key.get(getattr(owner, fk))
    return list(by_key.values())


async def _load_through(relation: HasManyThrough, owners: list[Base], loader: _Loader) -> list[Base]:
    through, source = relation.through, relation.source
    owner_pk, owner_fk = through.primary_key, through.foreign_key
    keys = _unique(getattr(owner, owner_pk) for owner in owners)
    links: list[Base] = []
    by_key: dict[Any, Base] = {}
    if keys:
        links = await loader.select(through.target).where({f"{owner_fk}[in]": keys})
        target_keys = _unique(getattr(link, source.foreign_key) for link in links)
        if target_keys:
            for item in await loader.select(relation.target).where({f"{source.primary_key}[in]": target_keys}):
                by_key[getattr(item, source.primary_key)] = item

    grouped: dict[Any, list[Base]] = {key: [] for key in keys}
    for link in links:
        item = by_key.get(getattr(link, source.foreign_key))
        bucket = grouped.get(getattr(link, owner_fk))
        if item is not None and bucket is not None:
            bucket.append(item)

    for owner in owners:
        owner._loaded_relationships[relation.name] = list(grouped.get(getattr(owner, owner_pk), ()))
    return list(by_key.values())
