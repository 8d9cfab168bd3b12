"""Custom exceptions for the Hathi storage layer.

Provides a structured exception hierarchy with error codes and
machine-readable error information so the application layer can
render failures without parsing messages.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_ALREADY_EXISTS = 1002
    NOTE_UPDATE_EMPTY = 1003

    # Context errors (2xxx)
    CONTEXT_NOT_FOUND = 2001
    CONTEXT_RENAME_FAILED = 2002

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003
    STORAGE_CONNECTION_FAILED = 4004
    TRANSACTION_FAILED = 4005
    VECTOR_EXTENSION_UNAVAILABLE = 4006

    # Search errors (5xxx)
    SEARCH_FAILED = 5001
    SEARCH_INVALID_VECTOR = 5002

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    INVALID_ARGUMENT = 7002
    OUT_OF_RANGE = 7003


class HathiError(Exception):
    """Base exception for all Hathi storage errors.

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


class ValidationError(HathiError):
    """Raised for bad input detected before any I/O."""

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
            details["value"] = str(value)[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class NotFoundError(HathiError):
    """Raised when a referenced note or context does not exist."""


class NoteNotFoundError(NotFoundError):
    """Raised when a note cannot be found."""

    def __init__(self, note_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Note with ID '{note_id}' not found",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"note_id": note_id},
        )
        self.note_id = note_id


class ContextNotFoundError(NotFoundError):
    """Raised when a context name cannot be resolved."""

    def __init__(self, name: str, message: Optional[str] = None):
        super().__init__(
            message or f'Context "{name}" not found',
            code=ErrorCode.CONTEXT_NOT_FOUND,
            details={"context": name},
        )
        self.name = name


class NoOpError(HathiError):
    """Raised when an update carries nothing to change."""

    def __init__(self, message: str = "No values to update", note_id: Optional[str] = None):
        details = {"note_id": note_id} if note_id else {}
        super().__init__(message, code=ErrorCode.NOTE_UPDATE_EMPTY, details=details)
        self.note_id = note_id


class PersistenceError(HathiError):
    """Raised when the backend rejects a read or write."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error


class TransactionError(PersistenceError):
    """Raised when a multi-statement transaction failed and was rolled back."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message,
            operation=operation,
            code=ErrorCode.TRANSACTION_FAILED,
            original_error=original_error,
        )
        self.details["rolled_back"] = True


class ConfigurationError(HathiError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID,
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key
