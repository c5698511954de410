"""Relationship definitions for models.

Three relation kinds are supported:

* ``belongs_to``: to-one; the foreign key lives on the owning model.
* ``has_many``: to-many; the foreign key lives on the related model.
* ``has_many(..., through=...)``: to-many via a join model, composed of a
  ``has_many`` on the owner and a ``belongs_to`` on the join model.

Keys are inferred when not declared and checked against the inverse side
the first time they are read, so declaration order between models does not
matter.
"""

from __future__ import annotations

import re
import typing
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from querykit.dialects.base import ColumnRef
from querykit.errors import KeyMismatchError, NoSuchRelationError, ResolutionError

if TYPE_CHECKING:
    from querykit.base import Base


# Global model registry - maps table names and class names to model classes
_model_registry: dict[str, type[Base]] = {}


def register_model(model_cls: type[Base]) -> None:
    """Register a model class for relationship resolution."""
    _model_registry[model_cls.__tablename__] = model_cls
    _model_registry[model_cls.__name__] = model_cls
    _model_registry[model_cls.__name__.lower()] = model_cls


def get_model(name: str) -> type[Base] | None:
    """Get a model class by table name or class name."""
    return _model_registry.get(name) or _model_registry.get(name.lower())


def singularize(name: str) -> str:
    if name.endswith("ies"):
        return name[:-3] + "y"
    if name.endswith("s") and not name.endswith("ss"):
        return name[:-1]
    return name


def snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


_HINT_NOISE = {"Mapped", "list", "List", "Optional", "None", "typing", "Sequence"}


def _target_from_hint(hint: Any) -> str | None:
    """Extract the target model name from ``Mapped[T]`` or ``Mapped[list[T]]``."""
    if hint is None:
        return None
    if isinstance(hint, str):
        names = [n for n in re.findall(r"[A-Za-z_][A-Za-z0-9_]*", hint) if n not in _HINT_NOISE]
        return names[0] if names else None

    args = typing.get_args(hint)
    if not args:
        return None
    inner = args[0]
    if typing.get_origin(inner) is list:
        inner_args = typing.get_args(inner)
        if inner_args:
            inner = inner_args[0]
    if isinstance(inner, str):
        return inner
    if isinstance(inner, type):
        return inner.__name__
    if hasattr(inner, "__forward_arg__"):
        return inner.__forward_arg__
    return None


@dataclass(eq=False)
class Relation(ABC):
    """Metadata for one side of a relationship.

    ``foreign_key`` and ``primary_key`` are attribute names; the matching
    ``*_column`` properties give the storage names used in SQL.
    """

    target_ref: Any = None
    inverse_name: str | None = None
    declared_foreign_key: str | None = None
    declared_primary_key: str | None = None

    name: str | None = None
    owner: type[Base] | None = field(default=None, repr=False)
    _hint: Any = field(default=None, repr=False)
    _resolved: dict[str, Any] = field(default_factory=dict, repr=False)

    kind: ClassVar[str] = "relation"
    to_many: ClassVar[bool] = False

    def bind(self, owner: type[Base], name: str, hint: Any = None) -> None:
        self.owner = owner
        self.name = name
        self._hint = hint

    @property
    def label(self) -> str:
        return f"{self.owner.__name__}.{self.name}"

    # -- target and inverse --------------------------------------------------

    @property
    def target(self) -> type[Base]:
        if "target" not in self._resolved:
            self._resolved["target"] = self._resolve_target()
        return self._resolved["target"]

    def _resolve_target(self) -> type[Base]:
        from querykit.base import Base

        ref = self.target_ref
        if isinstance(ref, type) and issubclass(ref, Base):
            return ref
        candidates = [ref] if isinstance(ref, str) else []
        hinted = _target_from_hint(self._hint)
        if hinted:
            candidates.append(hinted)
        candidates += [self.name, singularize(self.name)]
        for candidate in candidates:
            model = get_model(candidate)
            if model is not None:
                return model
        raise ResolutionError(f"Cannot find the target model for {self.label} (tried {', '.join(candidates)})")

    @property
    def inverse(self) -> Relation | None:
        """The relation on the target pointing back at this one, if derivable."""
        if "inverse" not in self._resolved:
            self._resolved["inverse"] = self._resolve_inverse()
        return self._resolved["inverse"]

    def _resolve_inverse(self) -> Relation | None:
        relations = self.target.__relationships__
        if self.inverse_name is not None:
            if self.inverse_name not in relations:
                raise NoSuchRelationError(
                    self.inverse_name, self.target.__name__, relations, context=f"inverse of {self.label}"
                )
            return relations[self.inverse_name]
        candidates = [
            r
            for r in relations.values()
            if r is not self and self._pairs_with(r) and r.inverse_name in (None, self.name)
        ]
        explicit = [r for r in candidates if r.inverse_name == self.name]
        if explicit:
            return explicit[0]
        return candidates[0] if len(candidates) == 1 else None

    @abstractmethod
    def _pairs_with(self, other: Relation) -> bool:
        """Whether ``other`` can be the inverse of this relation."""

    # -- keys ----------------------------------------------------------------

    def _agreed_key(self, which: str, default: Any) -> str:
        cache_key = f"key:{which}"
        if cache_key in self._resolved:
            return self._resolved[cache_key]
        mine = getattr(self, f"declared_{which}")
        inverse = self.inverse
        theirs = getattr(inverse, f"declared_{which}") if inverse is not None else None
        if mine is not None and theirs is not None and mine != theirs:
            label = which.replace("_", " ")
            raise KeyMismatchError(
                f'{self.label} {label} "{mine}" does not match {inverse.label} {label} "{theirs}"'
            )
        value = mine or theirs or default()
        self._resolved[cache_key] = value
        return value

    @property
    @abstractmethod
    def foreign_key(self) -> str:
        """Attribute name of the foreign key."""

    @property
    @abstractmethod
    def primary_key(self) -> str:
        """Attribute name of the key the foreign key refers to."""

    # -- caches --------------------------------------------------------------

    def cache_add(self, holder: Base, item: Base) -> None:
        """Add ``item`` to ``holder``'s collection if loaded, or if ``holder`` is new."""
        loaded = holder._loaded_relationships
        if self.name in loaded:
            if not any(existing is item for existing in loaded[self.name]):
                loaded[self.name].append(item)
        elif not holder.persisted:
            loaded[self.name] = [item]

    def cache_remove(self, holder: Base, item: Base) -> None:
        collection = holder._loaded_relationships.get(self.name)
        if collection:
            collection[:] = [existing for existing in collection if existing is not item]

    @abstractmethod
    def associate(self, owner: Base, related: Base) -> None:
        """Link ``related`` to ``owner`` in memory."""

    @abstractmethod
    def disassociate(self, owner: Base, related: Base | None = None) -> None:
        """Unlink ``related``, or everything when it is None, from ``owner`` in memory."""

    # -- querying ------------------------------------------------------------

    def join_steps(self) -> list[Relation]:
        """The direct relations a join along this relation traverses."""
        return [self]

    @abstractmethod
    def join_on(self, owner_alias: str, target_alias: str) -> tuple[ColumnRef, ColumnRef]:
        """Column pair equated when joining ``owner_alias`` to ``target_alias``."""

    @abstractmethod
    def related_conditions(self, owner: Base) -> dict[str, Any]:
        """Conditions selecting ``owner``'s related rows from the target model."""


class BelongsTo(Relation):
    """To-one relation; the foreign key is an attribute of the owner."""

    kind = "belongs_to"
    to_many = False

    def _pairs_with(self, other: Relation) -> bool:
        return isinstance(other, HasMany) and other.target is self.owner

    @property
    def foreign_key(self) -> str:
        return self._agreed_key("foreign_key", lambda: f"{self.name}_id")

    @property
    def primary_key(self) -> str:
        return self._agreed_key("primary_key", lambda: self.target.__primary_key__)

    @property
    def foreign_key_column(self) -> str:
        return self.owner.storage_name(self.foreign_key)

    @property
    def primary_key_column(self) -> str:
        return self.target.storage_name(self.primary_key)

    def join_on(self, owner_alias: str, target_alias: str) -> tuple[ColumnRef, ColumnRef]:
        return (
            ColumnRef(owner_alias, self.foreign_key_column),
            ColumnRef(target_alias, self.primary_key_column),
        )

    def associate(self, owner: Base, related: Base) -> None:
        previous = owner._loaded_relationships.get(self.name)
        if previous is not None and previous is not related:
            self.disassociate(owner, previous)
        setattr(owner, self.foreign_key, getattr(related, self.primary_key, None))
        owner._loaded_relationships[self.name] = related
        inverse = self.inverse
        if inverse is not None:
            inverse.cache_add(related, owner)

    def disassociate(self, owner: Base, related: Base | None = None) -> None:
        if related is None:
            related = owner._loaded_relationships.get(self.name)
        setattr(owner, self.foreign_key, None)
        owner._loaded_relationships[self.name] = None
        inverse = self.inverse
        if related is not None and inverse is not None:
            inverse.cache_remove(related, owner)

    def related_conditions(self, owner: Base) -> dict[str, Any]:
        return {self.primary_key: getattr(owner, self.foreign_key, None)}


class HasMany(Relation):
    """To-many relation; the foreign key is an attribute of the related model."""

    kind = "has_many"
    to_many = True

    def _pairs_with(self, other: Relation) -> bool:
        return isinstance(other, BelongsTo) and other.target is self.owner

    def _default_foreign_key(self) -> str:
        inverse = self.inverse
        if inverse is not None:
            return f"{inverse.name}_id"
        return f"{snake_case(self.owner.__name__)}_id"

    @property
    def foreign_key(self) -> str:
        return self._agreed_key("foreign_key", self._default_foreign_key)

    @property
    def primary_key(self) -> str:
        return self._agreed_key("primary_key", lambda: self.owner.__primary_key__)

    @property
    def foreign_key_column(self) -> str:
        return self.target.storage_name(self.foreign_key)

    @property
    def primary_key_column(self) -> str:
        return self.owner.storage_name(self.primary_key)

    def join_on(self, owner_alias: str, target_alias: str) -> tuple[ColumnRef, ColumnRef]:
        return (
            ColumnRef(target_alias, self.foreign_key_column),
            ColumnRef(owner_alias, self.primary_key_column),
        )

    def associate(self, owner: Base, related: Base) -> None:
        inverse = self.inverse
        if inverse is not None:
            previous = related._loaded_relationships.get(inverse.name)
            if previous is not None and previous is not owner:
                self.cache_remove(previous, related)
            related._loaded_relationships[inverse.name] = owner
        setattr(related, self.foreign_key, getattr(owner, self.primary_key, None))
        self.cache_add(owner, related)

    def disassociate(self, owner: Base, related: Base | None = None) -> None:
        if related is None:
            return
        setattr(related, self.foreign_key, None)
        inverse = self.inverse
        if inverse is not None and related._loaded_relationships.get(inverse.name) is owner:
            related._loaded_relationships[inverse.name] = None
        self.cache_remove(owner, related)

    def related_conditions(self, owner: Base) -> dict[str, Any]:
        return {self.foreign_key: getattr(owner, self.primary_key, None)}


@dataclass(eq=False)
class HasManyThrough(Relation):
    """To-many relation through a join model.

    ``through`` names a ``has_many`` on the owner pointing at the join model;
    ``source`` names the ``belongs_to`` on the join model pointing at the
    target. Associating only touches the collection caches of both ends; the
    join rows themselves are written when the owner is saved.
    """

    through_name: str | None = None
    source_name: str | None = None

    kind: ClassVar[str] = "has_many_through"
    to_many: ClassVar[bool] = True

    @property
    def through(self) -> HasMany:
        relations = self.owner.__relationships__
        through = relations.get(self.through_name)
        if not isinstance(through, HasMany):
            raise NoSuchRelationError(
                self.through_name, self.owner.__name__, relations, context=f"through for {self.label}"
            )
        return through

    @property
    def source(self) -> BelongsTo:
        if "source" not in self._resolved:
            self._resolved["source"] = self._resolve_source()
        return self._resolved["source"]

    def _resolve_source(self) -> BelongsTo:
        join_model = self.through.target
        relations = join_model.__relationships__
        for candidate in (self.source_name, singularize(self.name), self.name):
            if candidate is not None and isinstance(relations.get(candidate), BelongsTo):
                return relations[candidate]
        if self.source_name is None and self.target_ref is not None:
            target = super()._resolve_target()
            matches = [r for r in relations.values() if isinstance(r, BelongsTo) and r.target is target]
            if len(matches) == 1:
                return matches[0]
        raise NoSuchRelationError(
            self.source_name or singularize(self.name),
            join_model.__name__,
            relations,
            context=f"source for {self.label}",
        )

    def _resolve_target(self) -> type[Base]:
        return self.source.target

    def _pairs_with(self, other: Relation) -> bool:
        return (
            isinstance(other, HasManyThrough)
            and other.target is self.owner
            and other.through.target is self.through.target
        )

    @property
    def foreign_key(self) -> str:
        return self.through.foreign_key

    @property
    def primary_key(self) -> str:
        return self.through.primary_key

    def join_steps(self) -> list[Relation]:
        return [self.through, self.source]

    def join_on(self, owner_alias: str, target_alias: str) -> tuple[ColumnRef, ColumnRef]:
        raise ResolutionError(f"{self.label} joins through {self.through.label}; join its steps instead")

    def associate(self, owner: Base, related: Base) -> None:
        self.cache_add(owner, related)
        inverse = self.inverse
        if inverse is not None:
            inverse.cache_add(related, owner)

    def disassociate(self, owner: Base, related: Base | None = None) -> None:
        if related is None:
            return
        self.cache_remove(owner, related)
        inverse = self.inverse
        if inverse is not None:
            inverse.cache_remove(related, owner)

    def related_conditions(self, owner: Base) -> dict[str, Any]:
        back = self.source.inverse
        if back is None:
            raise ResolutionError(
                f"{self.label} needs a has_many on {self.target.__name__} pointing at "
                f"{self.through.target.__name__} to query related rows"
            )
        return {f"{back.name}.{self.through.foreign_key}": getattr(owner, self.primary_key, None)}


def belongs_to(
    target: type[Base] | str | None = None,
    *,
    inverse: str | None = None,
    foreign_key: str | None = None,
    primary_key: str | None = None,
) -> Any:
    """Define a to-one relationship.

    Args:
        target: Related model class or name; defaults to the attribute name
        inverse: Name of the has_many on the target pointing back here
        foreign_key: Attribute on this model holding the related key
        primary_key: Attribute on the target the foreign key refers to

    Example:
        >>> class Article(Base):
        ...     author_key: Mapped[int] = mapped_column(column="author_num")
        ...     author: Mapped[User] = belongs_to("User", foreign_key="author_key")
    """
    return BelongsTo(
        target_ref=target,
        inverse_name=inverse,
        declared_foreign_key=foreign_key,
        declared_primary_key=primary_key,
    )


def has_many(
    target: type[Base] | str | None = None,
    *,
    inverse: str | None = None,
    foreign_key: str | None = None,
    primary_key: str | None = None,
    through: str | None = None,
    source: str | None = None,
) -> Any:
    """Define a to-many relationship.

    Args:
        target: Related model class or name; defaults to the singular attribute name
        inverse: Name of the belongs_to on the target pointing back here
        foreign_key: Attribute on the target holding this model's key
        primary_key: Attribute on this model the foreign key refers to
        through: Name of a has_many on this model leading to a join model
        source: Name of the belongs_to on the join model leading to the target

    Example:
        >>> class User(Base):
        ...     articles: Mapped[list[Article]] = has_many(inverse="author")
        ...
        >>> class Student(Base):
        ...     enrollments: Mapped[list[Enrollment]] = has_many()
        ...     courses: Mapped[list[Course]] = has_many(through="enrollments")
    """
    if through is not None:
        return HasManyThrough(
            target_ref=target,
            inverse_name=inverse,
            through_name=through,
            source_name=source,
        )
    return HasMany(
        target_ref=target,
        inverse_name=inverse,
        declared_foreign_key=foreign_key,
        declared_primary_key=primary_key,
    )


@dataclass
class LoadOption:
    """Represents a relationship loading option for a dotted relation path."""

    strategy: str  # "selectin" or "noload"
    path: str

    @property
    def segments(self) -> list[str]:
        return self.path.split(".")

    def __repr__(self) -> str:
        return f"<LoadOption {self.strategy} {self.path}>"


def selectinload(path: str) -> LoadOption:
    """Eager load a relation path with one ``IN`` query per level.

    Example:
        >>> users = await db.query(User).options(selectinload("articles.comments"))
    """
    return LoadOption("selectin", path)


def noload(path: str) -> LoadOption:
    """Mark a relation as loaded-and-empty without querying.

    Example:
        >>> users = await db.query(User).options(noload("articles"))
    """
    return LoadOption("noload", path)
