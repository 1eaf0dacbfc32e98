"""
Schema types for record fields.

This module provides the definitions edits are validated against:
- FieldKind: supported value kinds
- FieldDef: one named field of a record type
- RecordTypeDef: a record type (a flat set of fields)

Status fields are enumerated workflow states. Writes that touch a single
status field are logged as status_change rather than field_update, and
restoring one emits a status_restored event for collaborating subsystems.

Invariants:
    - Field names are unique within a record type
    - ENUM and STATUS fields always declare their allowed values
    - Normalizers run before validation and must be pure

Example:
    >>> Task = RecordTypeDef(
    ...     name="Task",
    ...     fields=(
    ...         field("title", "str", required=True),
    ...         field("state", "status", enum_values=("todo", "done")),
    ...     ),
    ... )
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any


class FieldKind(Enum):
    """Supported field types."""

    STRING = "str"
    INTEGER = "int"
    FLOAT = "float"
    BOOLEAN = "bool"
    ENUM = "enum"
    STATUS = "status"
    JSON = "json"
    LIST_STRING = "list_str"

    @classmethod
    def from_str(cls, value: str) -> FieldKind:
        """Convert string to FieldKind."""
        for kind in cls:
            if kind.value == value:
                return kind
        raise ValueError(f"Invalid field kind: {value}")


@dataclass(frozen=True)
class FieldDef:
    """Field definition within a record type.

    Attributes:
        name: Field name
        kind: Data type
        required: Whether the field may not be cleared
        enum_values: Valid values for ENUM and STATUS fields
        max_length: Maximum length for strings
        min_value: Minimum for numbers
        max_value: Maximum for numbers
        max_items: Maximum items for lists
        normalizer: Optional function mapping raw input to its canonical form
        description: Documentation
    """

    name: str
    kind: FieldKind
    required: bool = False
    enum_values: tuple[str, ...] | None = None
    max_length: int | None = None
    min_value: float | None = None
    max_value: float | None = None
    max_items: int | None = None
    normalizer: Callable[[Any], Any] | None = None
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Field name cannot be empty")
        if self.kind in (FieldKind.ENUM, FieldKind.STATUS) and not self.enum_values:
            raise ValueError(f"enum_values required for {self.kind.value} field '{self.name}'")

    @property
    def is_status(self) -> bool:
        return self.kind == FieldKind.STATUS

    def normalize(self, value: Any) -> Any:
        if self.normalizer is None:
            return value
        return self.normalizer(value)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"name": self.name, "kind": self.kind.value}
        if self.required:
            result["required"] = True
        if self.enum_values:
            result["enum_values"] = list(self.enum_values)
        if self.max_length is not None:
            result["max_length"] = self.max_length
        if self.min_value is not None:
            result["min_value"] = self.min_value
        if self.max_value is not None:
            result["max_value"] = self.max_value
        if self.max_items is not None:
            result["max_items"] = self.max_items
        if self.description:
            result["description"] = self.description
        return result


def field(
    name: str,
    kind: str | FieldKind,
    *,
    required: bool = False,
    enum_values: tuple[str, ...] | None = None,
    max_length: int | None = None,
    min_value: float | None = None,
    max_value: float | None = None,
    max_items: int | None = None,
    normalizer: Callable[[Any], Any] | None = None,
    description: str = "",
) -> FieldDef:
    """Convenience function to create a FieldDef.

    Example:
        >>> title = field("title", "str", required=True)
        >>> state = field("state", "status", enum_values=("todo", "done"))
    """
    if isinstance(kind, str):
        kind = FieldKind.from_str(kind)
    return FieldDef(
        name=name,
        kind=kind,
        required=required,
        enum_values=enum_values,
        max_length=max_length,
        min_value=min_value,
        max_value=max_value,
        max_items=max_items,
        normalizer=normalizer,
        description=description,
    )


@dataclass(frozen=True)
class RecordTypeDef:
    """Definition of a record type.

    Attributes:
        name: Type name
        fields: Field definitions
        description: Documentation
    """

    name: str
    fields: tuple[FieldDef, ...] = ()
    description: str = ""

    def __post_init__(self) -> None:
        names = [f.name for f in self.fields]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate field names in '{self.name}': {sorted(duplicates)}")

    def get_field(self, name: str) -> FieldDef | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    @property
    def status_fields(self) -> list[str]:
        return [f.name for f in self.fields if f.is_status]

    def is_status(self, name: str) -> bool:
        f = self.get_field(name)
        return f is not None and f.is_status

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "fields": [f.to_dict() for f in self.fields],
            "description": self.description,
        }
