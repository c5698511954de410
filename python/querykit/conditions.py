"""Condition trees for WHERE clauses.

A condition tree is made of ``Condition`` leaves (field, operator, value)
combined by ``Q`` nodes with an AND/OR connector and an optional negation.

Condition keys are written as ``field``, ``field[operator]`` or
``relation.field[operator]``. A key without an operator means equality.
A value that is a mapping of operator names is expanded, so
``{"age": {"gte": 21}}`` is the same as ``{"age[gte]": 21}``.

Example:
    >>> Q({"age[gte]": 21}) | Q(vip=True)
    >>> ~Q({"name[icontains]": "bot"})
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from querykit.errors import QueryBuildError

AND = "AND"
OR = "OR"

OPERATORS = frozenset({
    "exact",
    "iexact",
    "ne",
    "lt",
    "lte",
    "gt",
    "gte",
    "between",
    "in",
    "notin",
    "isnull",
    "contains",
    "icontains",
    "startswith",
    "istartswith",
    "endswith",
    "iendswith",
    "regex",
    "iregex",
})

OPERATOR_ALIASES = {
    "eq": "exact",
    "neq": "ne",
    "not_in": "notin",
}

_KEY_RE = re.compile(r"^(?P<field>[^\[\]]+?)(?:\[(?P<op>[^\[\]]*)\])?$")


def normalize_operator(op: str) -> str:
    """Map an operator name or alias to its canonical name.

    Raises:
        QueryBuildError: If the operator is not known.
    """
    name = OPERATOR_ALIASES.get(op.lower(), op.lower())
    if name not in OPERATORS:
        raise QueryBuildError(
            f'Unsupported operator "{op}"; expected one of {", ".join(sorted(OPERATORS))}'
        )
    return name


def parse_key(key: str) -> tuple[str, str | None]:
    """Split a condition key into its field and operator parts.

    Example:
        >>> parse_key("title[contains]")
        ('title', 'contains')
        >>> parse_key("articles.title")
        ('articles.title', None)
    """
    match = _KEY_RE.match(key.strip())
    if match is None:
        raise QueryBuildError(f'Invalid condition key "{key}"')
    op = match.group("op")
    if op is not None:
        if not op:
            raise QueryBuildError(f'Empty operator in condition key "{key}"')
        op = normalize_operator(op)
    return match.group("field").strip(), op


@dataclass(frozen=True)
class Condition:
    """A single comparison: ``field <operator> value``."""

    field: str
    operator: str
    value: Any

    def __post_init__(self) -> None:
        # Sequence operands are stored as tuples detached from the caller's list
        if self.operator in ("in", "notin", "between"):
            object.__setattr__(self, "value", _sequence_value(self.field, self.operator, self.value))


def _sequence_value(field: str, operator: str, value: Any) -> tuple[Any, ...]:
    if operator == "between":
        if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
            raise QueryBuildError(f'"{field}[between]" requires exactly two values')
        values = tuple(value)
        if len(values) != 2:
            raise QueryBuildError(f'"{field}[between]" requires exactly two values')
        return values
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        raise QueryBuildError(f'"{field}[{operator}]" requires a list of values')
    return tuple(value)


def _is_operator_mapping(value: Any) -> bool:
    if not isinstance(value, Mapping) or not value:
        return False
    return all(
        isinstance(k, str) and OPERATOR_ALIASES.get(k.lower(), k.lower()) in OPERATORS
        for k in value
    )


def conditions_from_mapping(mapping: Mapping[str, Any]) -> list[Condition]:
    """Convert a ``{key: value}`` mapping into condition leaves."""
    leaves: list[Condition] = []
    for key, value in mapping.items():
        field, op = parse_key(key)
        if op is None and _is_operator_mapping(value):
            for op_name, op_value in value.items():
                leaves.append(Condition(field, normalize_operator(op_name), op_value))
        else:
            leaves.append(Condition(field, op or "exact", value))
    return leaves


class Q:
    """Combinator node for complex query conditions.

    Supports AND (&), OR (|) and negation (~). Positional arguments may be
    mappings, other ``Q`` objects or ``Condition`` leaves; keyword arguments
    are treated as a mapping of equality conditions.

    Example:
        >>> # OR condition
        >>> query.where(Q({"age[gt]": 18}) | Q(vip=True))

        >>> # Combined
        >>> query.where((Q({"age[gt]": 18}) | Q(vip=True)) & Q(active=True))

        >>> # Negation
        >>> query.where(~Q(banned=True))
    """

    __slots__ = ("children", "connector", "negated")

    def __init__(self, *conditions: Mapping[str, Any] | Q | Condition, **kwargs: Any) -> None:
        children: list[Q | Condition] = []
        for item in conditions:
            children.extend(_and_children(item) if isinstance(item, Mapping) else _coerce(item))
        if kwargs:
            children.extend(conditions_from_mapping(kwargs))
        self.children: tuple[Q | Condition, ...] = tuple(children)
        self.connector = AND
        self.negated = False

    @classmethod
    def _make(cls, connector: str, children: tuple[Q | Condition, ...], negated: bool = False) -> Q:
        node = cls.__new__(cls)
        node.children = children
        node.connector = connector
        node.negated = negated
        return node

    def __or__(self, other: Q | Mapping[str, Any]) -> Q:
        """Combine with OR."""
        return Q._make(OR, (self, *_coerce(other)))

    def __and__(self, other: Q | Mapping[str, Any]) -> Q:
        """Combine with AND."""
        return Q._make(AND, (self, *_coerce(other)))

    def __invert__(self) -> Q:
        """Negate the condition."""
        return Q._make(self.connector, self.children, not self.negated)

    def __bool__(self) -> bool:
        return bool(self.children)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Q):
            return NotImplemented
        return (self.connector, self.negated, self.children) == (
            other.connector,
            other.negated,
            other.children,
        )

    def __hash__(self) -> int:
        return hash((self.connector, self.negated, self.children))

    def __repr__(self) -> str:
        prefix = "~" if self.negated else ""
        inner = f" {self.connector} ".join(repr(c) for c in self.children)
        return f"{prefix}Q({inner})"

    def leaves(self) -> Iterator[Condition]:
        """Iterate over every leaf condition in the tree, depth first."""
        for child in self.children:
            if isinstance(child, Q):
                yield from child.leaves()
            else:
                yield child

    def map_leaves(self, fn: Callable[[Condition], Condition]) -> Q:
        """Return a copy of the tree with every leaf replaced by ``fn(leaf)``."""
        children = tuple(
            child.map_leaves(fn) if isinstance(child, Q) else fn(child) for child in self.children
        )
        return Q._make(self.connector, children, self.negated)


def _coerce(item: Any) -> tuple[Q | Condition, ...]:
    if isinstance(item, Q):
        return (item,)
    if isinstance(item, Condition):
        return (item,)
    if isinstance(item, Mapping):
        leaves = conditions_from_mapping(item)
        if len(leaves) == 1:
            return (leaves[0],)
        return (Q._make(AND, tuple(leaves)),)
    raise QueryBuildError(f"Cannot use {type(item).__name__} as a query condition")


def _and_children(item: Q | Mapping[str, Any]) -> tuple[Q | Condition, ...]:
    if isinstance(item, Mapping):
        return tuple(conditions_from_mapping(item))
    if item.connector == AND and not item.negated:
        return item.children
    return (item,)


def combine(existing: Q | None, *conditions: Any, **kwargs: Any) -> Q:
    """AND new conditions onto an existing tree, returning a new tree."""
    addition = Q(*conditions, **kwargs)
    if not addition:
        raise QueryBuildError("where() requires at least one condition")
    if existing is None:
        return addition
    return Q._make(AND, (*_and_children(existing), *_and_children(addition)))
