"""
Schema module for the RecSync engine.

This module provides the field type system edits are validated against:
- Type definitions (RecordTypeDef, FieldDef, FieldKind)
- Validation with helpful errors
- The participant record type

Invariants:
    - Validation runs before a draft is stored, never at flush time
    - Status fields are ENUM-like and drive status_change log entries

How to change safely:
    - Add fields with permissive defaults; existing records may lack them
    - Only append to enum_values; stored records may hold any old value
"""

from ..errors import NotFoundError
from .participant import PARTICIPANT, normalize_role_badge
from .types import FieldDef, FieldKind, RecordTypeDef, field
from .validate import validate_field, validate_or_raise, validate_patch

RECORD_TYPES = {
    "participant": PARTICIPANT,
}


def get_record_type(name: str) -> RecordTypeDef:
    """Look up a registered record type by name."""
    record_type = RECORD_TYPES.get(name.lower())
    if record_type is None:
        raise NotFoundError(f"Unknown record type: {name}", "record_type", name)
    return record_type


__all__ = [
    # Types
    "FieldDef",
    "FieldKind",
    "RecordTypeDef",
    "field",
    # Validation
    "validate_field",
    "validate_patch",
    "validate_or_raise",
    # Participant
    "PARTICIPANT",
    "normalize_role_badge",
    # Registry
    "RECORD_TYPES",
    "get_record_type",
]
