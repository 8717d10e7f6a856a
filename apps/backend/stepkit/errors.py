from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    FILE_NOT_FOUND = "file_not_found"
    PERMISSION_DENIED = "permission_denied"
    PATH_TRAVERSAL = "path_traversal"
    SYMLINK_DENIED = "symlink_denied"
    DISK_FULL = "disk_full"
    SIZE_LIMIT = "size_limit"
    QUOTA_EXCEEDED = "quota_exceeded"
    PARSE_ERROR = "parse_error"
    TEMPLATE_ERROR = "template_error"
    CONFIGURATION = "configuration"
    RANGE = "range"
    EMPTY = "empty"
    TYPE = "type"
    INTERNAL = "internal"


class OperationCancelled(Exception):
    """Raised as the cause of an error when the caller cancelled the call."""


class OperationError(Exception):
    """The single error shape produced by every action operation."""

    def __init__(
        self,
        operation: str,
        kind: ErrorKind,
        message: str,
        *,
        cause: BaseException | None = None,
        suggestion: str | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.kind = ErrorKind(kind)
        self.message = message
        self.cause = cause
        self.suggestion = suggestion
        self.retryable = retryable
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        prefix = f"{self.operation}: " if self.operation else ""
        return f"{prefix}{self.message} ({self.kind.value})"

    def __repr__(self) -> str:
        return (
            f"OperationError(operation={self.operation!r}, kind={self.kind.value!r}, "
            f"message={self.message!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "kind": self.kind.value,
            "message": self.message,
            "suggestion": self.suggestion,
            "retryable": self.retryable,
        }
