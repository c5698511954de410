"""Declarative base for models."""

from __future__ import annotations

import sys
import types
import typing
from typing import TYPE_CHECKING, Any, ClassVar

from querykit.errors import RelationNotLoadedError
from querykit.fields import ColumnInfo, Mapped
from querykit.relationships import Relation, _model_registry, register_model

if TYPE_CHECKING:
    from querykit.related import InFlightChange, RelatedManager

_INSTANCE_STATE = ("_loaded_relationships", "_in_flight", "_persisted", "_dirty", "_database")


class ModelMeta(type):
    """Metaclass for models that processes field and relation definitions."""

    def __new__(
        mcs,
        name: str,
        bases: tuple[type, ...],
        namespace: dict[str, Any],
        **kwargs: Any,
    ) -> ModelMeta:
        cls = super().__new__(mcs, name, bases, namespace, **kwargs)

        # Skip processing for the Base class itself
        if name == "Base" and not any(isinstance(b, ModelMeta) for b in bases):
            return cls

        tablename = namespace.get("__tablename__")
        if tablename is None:
            # Generate table name from class name
            tablename = name.lower() + "s"
        cls.__tablename__ = tablename  # type: ignore[attr-defined]

        columns: dict[str, ColumnInfo] = {}
        relationships: dict[str, Relation] = {}
        annotations = _own_annotations(cls, namespace)

        # Inherited columns first so subclasses keep their parents' layout
        for base in bases:
            for attr_name, col_info in getattr(base, "__columns__", {}).items():
                columns[attr_name] = ColumnInfo(**{**col_info.__dict__})

        for attr_name, attr_value in namespace.items():
            if attr_name.startswith("_"):
                continue
            if isinstance(attr_value, ColumnInfo):
                attr_value.name = attr_name
                attr_value.python_type = _extract_mapped_type(
                    _evaluate_hint(cls, annotations.get(attr_name))
                )
                columns[attr_name] = attr_value
            elif isinstance(attr_value, Relation):
                attr_value.bind(cls, attr_name, annotations.get(attr_name))  # type: ignore[arg-type]
                relationships[attr_name] = attr_value

        # Remove descriptors from the class so instance lookups reach __getattr__
        for attr_name in (*columns, *relationships):
            if attr_name in namespace:
                delattr(cls, attr_name)

        # Bare ``Mapped[...]`` annotations without mapped_column() are columns too
        for attr_name, hint in annotations.items():
            if attr_name.startswith("_") or attr_name in columns or attr_name in relationships:
                continue
            if "Mapped" not in str(hint):
                continue
            python_type = _extract_mapped_type(_evaluate_hint(cls, hint))
            columns[attr_name] = ColumnInfo(
                name=attr_name,
                python_type=python_type,
                nullable="None" in str(hint) or "Optional" in str(hint),
            )

        cls.__columns__ = columns  # type: ignore[attr-defined]
        cls.__relationships__ = relationships  # type: ignore[attr-defined]
        cls.__primary_key__ = next(  # type: ignore[attr-defined]
            (col_name for col_name, col_info in columns.items() if col_info.primary_key), None
        )
        cls.__storage_names__ = {  # type: ignore[attr-defined]
            col_info.storage_name: col_name for col_name, col_info in columns.items()
        }

        register_model(cls)  # type: ignore[arg-type]
        return cls


def _own_annotations(cls: type, namespace: dict[str, Any]) -> dict[str, Any]:
    """Annotations declared directly on ``cls``.

    Modules using ``from __future__ import annotations`` store them as
    strings in the namespace; otherwise they are evaluated on access, which
    fails while forward references are still undefined.
    """
    if "__annotations__" in namespace:
        return namespace["__annotations__"]
    try:
        return dict(cls.__dict__.get("__annotations__") or getattr(cls, "__annotations__", {}))
    except NameError:
        return {}


def _evaluate_hint(cls: type, hint: Any) -> Any:
    """Evaluate a string annotation in its module namespace, if possible."""
    if not isinstance(hint, str):
        return hint
    module = sys.modules.get(cls.__module__)
    globalns = dict(getattr(module, "__dict__", {})) if module else {}
    globalns.setdefault("Mapped", Mapped)
    for model in _model_registry.values():
        globalns.setdefault(model.__name__, model)
    holder = types.SimpleNamespace(__annotations__={"hint": hint})
    try:
        return typing.get_type_hints(holder, globalns=globalns, localns={})["hint"]
    except NameError:
        # Forward references to models that are not defined yet
        return None


def _extract_mapped_type(hint: Any) -> type | None:
    """Extract the inner type from Mapped[T] annotation."""
    origin = typing.get_origin(hint)
    if origin is not None:
        args = typing.get_args(hint)
        if args:
            inner = args[0]
            if typing.get_origin(inner) in (typing.Union, types.UnionType):
                non_none = [a for a in typing.get_args(inner) if a is not type(None)]
                if len(non_none) == 1:
                    return non_none[0]
            return inner if isinstance(inner, type) else None
    return None


class Base(metaclass=ModelMeta):
    """Base class for all models.

    Instances track whether they have been persisted and which columns have
    changed since they were loaded or last saved.

    Example:
        >>> class User(Base):
        ...     __tablename__ = "users"
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     username: Mapped[str] = mapped_column(max_length=100)
        ...     articles: Mapped[list[Article]] = has_many(inverse="author")
    """

    __tablename__: ClassVar[str]
    __columns__: ClassVar[dict[str, ColumnInfo]]
    __relationships__: ClassVar[dict[str, Relation]]
    __primary_key__: ClassVar[str | None]
    __storage_names__: ClassVar[dict[str, str]]

    _loaded_relationships: dict[str, Any]
    _in_flight: dict[str, InFlightChange]
    _persisted: bool
    _dirty: dict[str, None]
    _database: Any

    def __init__(self, **kwargs: Any) -> None:
        """Initialize an unpersisted instance with the given values."""
        self._init_state(persisted=False)

        provided_keys = set(kwargs)
        for key in kwargs:
            if key not in self.__columns__ and key not in self.__relationships__:
                raise TypeError(f"Unknown column or relationship: {key}")

        for col_name, col_info in self.__columns__.items():
            if col_name in provided_keys:
                setattr(self, col_name, kwargs[col_name])
            elif col_info.default is not None:
                default = col_info.default() if callable(col_info.default) else col_info.default
                setattr(self, col_name, default)
            else:
                object.__setattr__(self, col_name, None)

        for key, value in kwargs.items():
            if key in self.__relationships__:
                setattr(self, key, value)

    def _init_state(self, *, persisted: bool) -> None:
        object.__setattr__(self, "_loaded_relationships", {})
        object.__setattr__(self, "_in_flight", {})
        object.__setattr__(self, "_persisted", persisted)
        object.__setattr__(self, "_dirty", {})
        object.__setattr__(self, "_database", None)

    @classmethod
    def from_row(cls, data: dict[str, Any]) -> Base:
        """Create a persisted, clean instance from a database row.

        Row keys are storage names; unknown keys are ignored.
        """
        instance = object.__new__(cls)
        instance._init_state(persisted=True)
        storage = cls.__storage_names__
        for col_name in cls.__columns__:
            object.__setattr__(instance, col_name, None)
        for key, value in data.items():
            attr_name = storage.get(key)
            if attr_name is not None:
                object.__setattr__(instance, attr_name, value)
        return instance

    @classmethod
    def storage_name(cls, attr_name: str) -> str:
        """Map an attribute name (or ``pk``) to its storage column name."""
        if attr_name == "pk" and cls.__primary_key__:
            attr_name = cls.__primary_key__
        col_info = cls.__columns__.get(attr_name)
        return col_info.storage_name if col_info else attr_name

    @classmethod
    def has_attribute(cls, attr_name: str) -> bool:
        return attr_name == "pk" or attr_name in cls.__columns__

    def __repr__(self) -> str:
        pk = self.__primary_key__
        if pk:
            return f"<{self.__class__.__name__} {pk}={getattr(self, pk, None)!r}>"
        return f"<{self.__class__.__name__}>"

    # -- state ---------------------------------------------------------------

    @property
    def pk(self) -> Any:
        return getattr(self, self.__primary_key__) if self.__primary_key__ else None

    @property
    def persisted(self) -> bool:
        return self._persisted

    @property
    def dirty(self) -> frozenset[str]:
        """Names of columns changed since the instance was loaded or saved."""
        return frozenset(self._dirty)

    def _mark_clean(self, *names: str) -> None:
        if names:
            for name in names:
                self._dirty.pop(name, None)
        else:
            self._dirty.clear()

    def _mark_persisted(self) -> None:
        object.__setattr__(self, "_persisted", True)
        self._mark_clean()

    # -- attribute access ----------------------------------------------------

    def __setattr__(self, name: str, value: Any) -> None:
        cls = type(self)
        if name in cls.__columns__:
            object.__setattr__(self, name, value)
            self._dirty[name] = None
        elif name in cls.__relationships__:
            self._assign_relation(cls.__relationships__[name], value)
        else:
            object.__setattr__(self, name, value)

    def _assign_relation(self, relation: Relation, value: Any) -> None:
        if relation.to_many:
            manager = self.related(relation.name)
            manager.clear()
            for item in value or ():
                manager.add(item)
        elif value is None:
            relation.disassociate(self)
        else:
            relation.associate(self, value)

    def __getattr__(self, name: str) -> Any:
        """Handle access to relationship attributes."""
        if name.startswith("_"):
            if name in _INSTANCE_STATE:
                # Instances created without __init__ (e.g. copies)
                self._init_state(persisted=False)
                return object.__getattribute__(self, name)
            raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

        relationships = type(self).__relationships__
        if name in relationships:
            loaded = self._loaded_relationships
            if name in loaded:
                return loaded[name]

            relation = relationships[name]
            if relation.to_many and not self.persisted:
                # A new instance cannot have stored related rows yet
                loaded[name] = []
                return loaded[name]
            if not relation.to_many and getattr(self, relation.foreign_key, None) is None:
                return None

            raise RelationNotLoadedError(
                f"{type(self).__name__}.{name} is not yet loaded; "
                f'use options(selectinload("{name}")) or related("{name}").fetch()'
            )

        raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

    def related(self, name: str) -> RelatedManager:
        """Get the manager for a relation (add/remove/clear/create/fetch).

        Example:
            >>> user.related("articles").add(article)
            >>> await db.save(user)
        """
        from querykit.related import RelatedManager

        relationships = type(self).__relationships__
        if name not in relationships:
            from querykit.errors import NoSuchRelationError

            raise NoSuchRelationError(name, type(self).__name__, relationships)
        return RelatedManager(self, relationships[name])

    def to_dict(self, include_relationships: bool = False) -> dict[str, Any]:
        """Convert model instance to a dictionary."""
        result = {col_name: getattr(self, col_name, None) for col_name in self.__columns__}

        if include_relationships:
            for rel_name, rel_value in self._loaded_relationships.items():
                if isinstance(rel_value, list):
                    result[rel_name] = [item.to_dict() for item in rel_value]
                elif rel_value is not None:
                    result[rel_name] = rel_value.to_dict()
                else:
                    result[rel_name] = None

        return result
