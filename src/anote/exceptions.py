"""Custom exceptions for the anote store.

Provides a structured exception hierarchy with error codes and
machine-readable error information. Every exception maps onto one of the
three wire categories used by the bridge protocol: VALIDATION, CONFLICT
and INTERNAL.
"""
from enum import Enum
from typing import Any, Dict, Optional

VALIDATION = "VALIDATION"
CONFLICT = "CONFLICT"
INTERNAL = "INTERNAL"


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001

    # Folder errors (2xxx)
    FOLDER_NOT_FOUND = 2001
    FOLDER_SELF_PARENT = 2002
    FOLDER_CYCLE = 2003
    FOLDER_NAME_TAKEN = 2004
    FOLDER_ALREADY_EXISTS = 2005

    # Storage errors (4xxx)
    STORAGE_WRITE_FAILED = 4002
    LOCK_TIMEOUT = 4005
    SCHEMA_INIT_FAILED = 4006
    SNAPSHOT_WRITE_FAILED = 4008

    # Bulk operation errors (45xx)
    IMPORT_FAILED = 4501

    # Search errors (5xxx)
    SEARCH_FAILED = 5001

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    INVALID_ID = 7002
    INVALID_SNAPSHOT = 7005


class AnoteError(Exception):
    """Base exception for all anote errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    category = INTERNAL

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "category": self.category,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class ValidationError(AnoteError):
    """Raised for malformed input the caller must correct."""

    category = VALIDATION

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class NoteNotFoundError(ValidationError):
    """Raised when a note cannot be found."""

    def __init__(self, note_id: str, message: Optional[str] = None):
        super().__init__(
            message or "note not found",
            field="id",
            value=note_id,
            code=ErrorCode.NOTE_NOT_FOUND,
        )
        self.note_id = note_id


class FolderNotFoundError(ValidationError):
    """Raised when a referenced folder does not exist."""

    def __init__(self, folder_id: str, message: Optional[str] = None):
        super().__init__(
            message or "folder not found",
            field="folder_id",
            value=folder_id,
            code=ErrorCode.FOLDER_NOT_FOUND,
        )
        self.folder_id = folder_id


class FolderHierarchyError(ValidationError):
    """Raised when a parent assignment would break the folder forest."""

    def __init__(
        self,
        message: str,
        folder_id: str,
        parent_id: str,
        code: ErrorCode = ErrorCode.FOLDER_CYCLE
    ):
        super().__init__(message, field="parent_id", value=parent_id, code=code)
        self.details["folder_id"] = folder_id
        self.folder_id = folder_id
        self.parent_id = parent_id


class StorageError(AnoteError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            # Don't expose full paths in error messages
            details["path_hint"] = path.split("/")[-1] if "/" in path else path
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class SchemaInitError(StorageError):
    """Raised when the schema cannot be brought to the current version.

    Fatal for the connection: the store must not be used with a partial
    schema.

    Attributes:
        version: Schema version reached before the failure
        step: Migration step that failed, if any
    """

    def __init__(
        self,
        message: str,
        version: int = 0,
        step: Optional[int] = None,
        path: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            operation="init_db",
            path=path,
            code=ErrorCode.SCHEMA_INIT_FAILED,
            original_error=original_error
        )
        self.version = version
        self.step = step
        self.details["version"] = version
        if step is not None:
            self.details["step"] = step


class SearchError(AnoteError):
    """Raised when search fails even after falling back to pattern matching."""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        code: ErrorCode = ErrorCode.SEARCH_FAILED
    ):
        details = {}
        if query:
            details["query"] = query[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.query = query
