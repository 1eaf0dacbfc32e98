"""
Field value validation.

This module validates local edits before they are scheduled for a flush:
- Field-level kind checks
- Enum / status membership
- Helpful error messages with suggestions for unknown fields

Without a record type every JSON-compatible value is accepted.

Invariants:
    - Validation errors are deterministic
    - Unknown fields suggest similar valid fields
    - Returned values are normalized (normalizer applied)
"""

from __future__ import annotations

import math
from difflib import get_close_matches
from typing import Any, Dict, List, Optional, Tuple

from ..errors import UnknownFieldError, ValidationError
from .types import FieldDef, FieldKind, RecordTypeDef


def _validate_field_value(field_def: FieldDef, value: Any) -> Optional[str]:
    """Validate a single field value.

    Returns error message if invalid, None if valid.
    """
    name = field_def.name
    kind = field_def.kind

    if value is None or value == "":
        if field_def.required:
            return f"Field '{name}' is required"
        if value is None:
            return None

    if kind == FieldKind.STRING:
        if not isinstance(value, str):
            return f"Field '{name}' must be a string, got {type(value).__name__}"
        if field_def.max_length is not None and len(value) > field_def.max_length:
            return f"Field '{name}' must be at most {field_def.max_length} characters"

    elif kind == FieldKind.INTEGER:
        if not isinstance(value, int) or isinstance(value, bool):
            return f"Field '{name}' must be an integer, got {type(value).__name__}"

    elif kind == FieldKind.FLOAT:
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            return f"Field '{name}' must be a number, got {type(value).__name__}"
        if math.isnan(value) or math.isinf(value):
            return f"Field '{name}' must be a finite number"

    elif kind == FieldKind.BOOLEAN:
        if not isinstance(value, bool):
            return f"Field '{name}' must be a boolean, got {type(value).__name__}"

    elif kind in (FieldKind.ENUM, FieldKind.STATUS):
        if not isinstance(value, str):
            return f"Field '{name}' must be a string, got {type(value).__name__}"
        if value == "" and not field_def.required:
            return None
        if field_def.enum_values and value not in field_def.enum_values:
            return f"Field '{name}' must be one of {field_def.enum_values}, got '{value}'"

    elif kind == FieldKind.LIST_STRING:
        if not isinstance(value, list):
            return f"Field '{name}' must be a list, got {type(value).__name__}"
        for i, item in enumerate(value):
            if not isinstance(item, str):
                return f"Field '{name}[{i}]' must be a string"
        if field_def.max_items is not None and len(value) > field_def.max_items:
            return f"Field '{name}' must have at most {field_def.max_items} items"

    elif kind == FieldKind.JSON:
        error = _json_error(name, value)
        if error:
            return error

    if kind in (FieldKind.INTEGER, FieldKind.FLOAT):
        if field_def.min_value is not None and value < field_def.min_value:
            return f"Field '{name}' must be >= {field_def.min_value}"
        if field_def.max_value is not None and value > field_def.max_value:
            return f"Field '{name}' must be <= {field_def.max_value}"

    return None


def _json_error(name: str, value: Any, depth: int = 0) -> Optional[str]:
    """Check that a value is plain JSON (small nested objects)."""
    if depth > 8:
        return f"Field '{name}' is nested too deeply"
    if value is None or isinstance(value, (str, bool, int)):
        return None
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return f"Field '{name}' must be a finite number"
        return None
    if isinstance(value, list):
        for item in value:
            error = _json_error(name, item, depth + 1)
            if error:
                return error
        return None
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                return f"Field '{name}' object keys must be strings"
            error = _json_error(name, item, depth + 1)
            if error:
                return error
        return None
    return f"Field '{name}' must be JSON-compatible, got {type(value).__name__}"


def validate_field(
    record_type: Optional[RecordTypeDef],
    name: str,
    value: Any,
) -> Any:
    """Validate and normalize one field value.

    Args:
        record_type: Record type to validate against (None accepts any JSON value)
        name: Field name
        value: Raw value

    Returns:
        The normalized value

    Raises:
        UnknownFieldError: If the record type has no such field
        ValidationError: If the value is invalid
    """
    if not name:
        raise ValidationError("Field name cannot be empty", field_name=name)

    if record_type is None:
        error = _json_error(name, value)
        if error:
            raise ValidationError(error, field_name=name, errors=[error])
        return value

    field_def = record_type.get_field(name)
    if field_def is None:
        suggestions = get_close_matches(name, record_type.field_names, n=3)
        raise UnknownFieldError(name, record_type.name, suggestions)

    normalized = field_def.normalize(value)
    error = _validate_field_value(field_def, normalized)
    if error:
        raise ValidationError(error, field_name=name, errors=[error])
    return normalized


def validate_patch(
    record_type: Optional[RecordTypeDef],
    patch: Dict[str, Any],
) -> Tuple[Dict[str, Any], List[str]]:
    """Validate every field of a patch, collecting errors.

    Args:
        record_type: Record type to validate against
        patch: Field values

    Returns:
        Tuple of (normalized_patch, list_of_errors)
    """
    normalized: Dict[str, Any] = {}
    errors: List[str] = []
    for name, value in patch.items():
        try:
            normalized[name] = validate_field(record_type, name, value)
        except ValidationError as e:
            errors.extend(e.errors or [e.message])
    return normalized, errors


def validate_or_raise(
    record_type: Optional[RecordTypeDef],
    patch: Dict[str, Any],
) -> Dict[str, Any]:
    """Validate a patch and raise if invalid.

    Raises:
        UnknownFieldError: If an unknown field is provided
        ValidationError: If validation fails
    """
    if record_type is not None:
        unknown = [name for name in patch if record_type.get_field(name) is None]
        if unknown:
            suggestions = get_close_matches(unknown[0], record_type.field_names, n=3)
            raise UnknownFieldError(unknown[0], record_type.name, suggestions)

    normalized, errors = validate_patch(record_type, patch)
    if errors:
        type_name = record_type.name if record_type else "record"
        raise ValidationError(
            f"Validation failed for {type_name}: {'; '.join(errors)}",
            errors=errors,
        )
    return normalized
