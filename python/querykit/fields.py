"""Column and field definitions for models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


# Type alias for Mapped - indicates a database column
class Mapped(Generic[T]):
    """Type annotation wrapper indicating a database-mapped column.

    Example:
        >>> class User(Base):
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     name: Mapped[str] = mapped_column(max_length=100)
        ...     author_key: Mapped[int] = mapped_column(column="author_num")
    """

    pass


_TYPE_KINDS: dict[type, str] = {
    bool: "bool",
    int: "integer",
    float: "float",
    Decimal: "decimal",
    str: "string",
    bytes: "binary",
    datetime: "datetime",
    date: "date",
    time: "time",
}


@dataclass
class ColumnInfo:
    """Stores metadata about a database column.

    ``name`` is the attribute name used in Python; ``column`` is the storage
    name used in SQL. They are the same unless ``mapped_column(column=...)``
    says otherwise.
    """

    name: str | None = None
    column: str | None = None
    python_type: type | None = None
    primary_key: bool = False
    nullable: bool = False
    unique: bool = False
    default: Any = None
    max_length: int | None = None
    precision: int | None = None
    scale: int | None = None
    autoincrement: bool | None = None

    @property
    def storage_name(self) -> str:
        """The physical column name."""
        return self.column or self.name or ""

    def type_kind(self) -> str:
        """Get the abstract type kind for this column (``"integer"``, ``"bool"``, ...)."""
        if self.primary_key and self.autoincrement and self.python_type in (int, None):
            return "serial"

        actual_type = self.python_type
        origin = getattr(actual_type, "__origin__", None)
        if origin is Union:
            args = getattr(actual_type, "__args__", ())
            non_none = [a for a in args if a is not type(None)]
            actual_type = non_none[0] if non_none else str

        if actual_type is None:
            return "string"
        return _TYPE_KINDS.get(actual_type, "string")


def mapped_column(
    *,
    column: str | None = None,
    primary_key: bool = False,
    nullable: bool = False,
    unique: bool = False,
    default: Any = None,
    max_length: int | None = None,
    precision: int | None = None,
    scale: int | None = None,
    autoincrement: bool | None = None,
) -> Any:
    """Define a database column.

    Args:
        column: Storage name of the column when it differs from the attribute name
        primary_key: Whether this is a primary key column
        nullable: Whether NULL values are allowed
        unique: Whether values must be unique
        default: Default value (can be callable)
        max_length: Maximum length for string columns
        precision: Precision for decimal columns
        scale: Scale for decimal columns
        autoincrement: Whether to auto-increment (for integer PKs)

    Returns:
        A ColumnInfo descriptor

    Example:
        >>> id: Mapped[int] = mapped_column(primary_key=True)
        >>> name: Mapped[str] = mapped_column(max_length=100)
        >>> author_key: Mapped[int] = mapped_column(column="author_num")
    """
    # Primary keys are not nullable by default
    if primary_key:
        nullable = False
        if autoincrement is None:
            autoincrement = True

    return ColumnInfo(
        column=column,
        primary_key=primary_key,
        nullable=nullable,
        unique=unique,
        default=default,
        max_length=max_length,
        precision=precision,
        scale=scale,
        autoincrement=autoincrement,
    )
