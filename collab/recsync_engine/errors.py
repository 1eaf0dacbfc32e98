"""
Error types for the RecSync engine.

This module defines every exception the engine raises or reports:
- RecSyncError: Base exception
- ValidationError: Malformed field value, rejected before a flush is scheduled
- PersistenceError: Record store write failed (retryable, drafts stay dirty)
- AuditError: Change log append failed after a successful primary write
- ConflictWarning: Field edited locally and changed remotely in the same window
- RestoreError: A restore could not be applied

Invariants:
    - All errors inherit from RecSyncError
    - Errors include context for debugging
    - AuditError and ConflictWarning never reverse the state change they accompany
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class RecSyncError(Exception):
    """Base exception for all RecSync errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "RECSYNC_ERROR"
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "error_code": self.code, "details": self.details}


class ValidationError(RecSyncError):
    """Field value validation failed.

    Raised when:
    - Required field is set to an empty value
    - Field value has wrong type
    - Enum or status value is not allowed
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class UnknownFieldError(ValidationError):
    """Unknown field for the record type.

    Includes suggestions for similar field names.
    """

    def __init__(
        self,
        field_name: str,
        type_name: str,
        suggestions: Optional[List[str]] = None,
    ) -> None:
        suggestions = suggestions or []
        msg = f"Unknown field '{field_name}' in type '{type_name}'"
        if suggestions:
            msg += f". Did you mean: {', '.join(suggestions)}?"

        super().__init__(msg, field_name=field_name, errors=[msg])
        self.code = "UNKNOWN_FIELD"
        self.details["type_name"] = type_name
        self.details["suggestions"] = suggestions
        self.type_name = type_name
        self.suggestions = suggestions


class StoreError(RecSyncError):
    """A store back-end could not complete an operation."""

    def __init__(self, message: str, operation: Optional[str] = None) -> None:
        super().__init__(message, code="STORE_ERROR", details={"operation": operation})
        self.operation = operation


class PersistenceError(RecSyncError):
    """Writing to the record store failed.

    The affected drafts remain dirty and the write can be retried.
    """

    def __init__(
        self,
        message: str,
        record_id: Optional[str] = None,
        fields: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="PERSISTENCE_ERROR",
            details={"record_id": record_id, "fields": fields or []},
        )
        self.record_id = record_id
        self.fields = fields or []


class AuditError(RecSyncError):
    """Appending to the change log failed after the record was updated.

    Non-fatal: the record keeps its new state, only the trail entry is missing.
    """

    def __init__(
        self,
        message: str,
        record_id: Optional[str] = None,
        action_type: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="AUDIT_ERROR",
            details={"record_id": record_id, "action_type": action_type},
        )
        self.record_id = record_id
        self.action_type = action_type


class ConflictWarning(RecSyncError):
    """A field was edited locally while another editor changed it remotely.

    Reported, never auto-resolved: the local edit wins (last write wins).
    """

    def __init__(
        self,
        record_id: str,
        field_name: str,
        local_value: Any,
        remote_value: Any,
    ) -> None:
        super().__init__(
            f"Field '{field_name}' of record {record_id} was changed remotely "
            f"while being edited locally",
            code="CONFLICT",
            details={
                "record_id": record_id,
                "field": field_name,
                "local_value": local_value,
                "remote_value": remote_value,
            },
        )
        self.record_id = record_id
        self.field_name = field_name
        self.local_value = local_value
        self.remote_value = remote_value


class NotFoundError(RecSyncError):
    """Resource not found."""

    def __init__(self, message: str, resource_type: str, resource_id: str) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={"resource_type": resource_type, "resource_id": resource_id},
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class RecordNotFoundError(NotFoundError):
    """Record does not exist in the record store."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Record not found: {record_id}", "record", record_id)
        self.record_id = record_id


class LogEntryNotFoundError(NotFoundError):
    """Change log entry does not exist."""

    def __init__(self, entry_id: str) -> None:
        super().__init__(f"Change log entry not found: {entry_id}", "log_entry", entry_id)
        self.entry_id = entry_id


class RestoreError(RecSyncError):
    """A restore could not be applied.

    The record is left untouched; `reason` is meant to be shown to the user.
    """

    def __init__(self, reason: str, entry_id: Optional[str] = None) -> None:
        super().__init__(reason, code="RESTORE_ERROR", details={"entry_id": entry_id})
        self.reason = reason
        self.entry_id = entry_id


class ViewNotOpenError(RecSyncError):
    """An edit targeted a record whose view is not open in the session."""

    def __init__(self, record_id: str) -> None:
        super().__init__(
            f"No open view for record {record_id}",
            code="VIEW_NOT_OPEN",
            details={"record_id": record_id},
        )
        self.record_id = record_id
