"""Custom exceptions for memobridge.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_CONTENT_TOO_LARGE = 1003

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003

    # Import errors (45xx)
    IMPORT_FILE_INVALID = 4501
    IMPORT_FILE_UNREADABLE = 4502
    IMPORT_SCHEMA_MISMATCH = 4503

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    INVALID_VISIBILITY = 7002


class MemoBridgeError(Exception):
    """Base exception for all memobridge errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NoteNotFoundError(MemoBridgeError):
    """Raised when a memo cannot be found."""

    def __init__(self, note_id: Any, message: Optional[str] = None):
        super().__init__(
            message or f"Memo with ID '{note_id}' not found",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"note_id": note_id},
        )
        self.note_id = note_id


class StorageError(MemoBridgeError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            # Don't expose full paths in error messages for security
            details["path_hint"] = path.split("/")[-1] if "/" in path else path
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class ImportFileError(StorageError):
    """Raised when an uploaded database cannot be imported as a whole.

    Covers unreadable files, unsupported file names and copies that lack the
    ``memo`` table. Per-record problems never raise this; they are reported
    in the import summary instead.

    Attributes:
        status_code: HTTP-style status a request layer should answer with.
    """

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.IMPORT_FILE_UNREADABLE,
        original_error: Optional[Exception] = None,
        status_code: int = 500,
    ):
        super().__init__(
            message,
            operation="import",
            path=path,
            code=code,
            original_error=original_error,
        )
        self.status_code = status_code


class ValidationError(MemoBridgeError):
    """Raised for general validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value
