"""Structured exception hierarchy for storage drivers.

Every failure a driver surfaces to its caller is one of these types, with
enough context attached for logging and troubleshooting.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

__all__ = [
    "StorageDriverError",
    "PathNotFoundError",
    "UnsupportedMethodError",
    "InvalidConfigurationError",
    "BackendError",
    "InvalidPathError",
    "InvalidOffsetError",
    "WriteStreamError",
    "NOT_FOUND_CODES",
]

# Backend error codes that mean the object does not exist.
NOT_FOUND_CODES = frozenset({"NoSuchKey", "NotFound", "404"})


class StorageDriverError(Exception):
    """Base exception for all storage driver errors.

    Provides structured error information for debugging.
    """

    def __init__(
        self,
        message: str,
        *,
        driver: Optional[str] = None,
        path: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.message = message
        self.driver = driver
        self.path = path
        self.details = details or {}
        self.suggestion = suggestion

        parts = [message]

        if driver:
            parts.insert(0, f"[{driver}]")

        if self.details:
            parts.append("\nDetails:")
            parts.extend(f"  {k}: {v}" for k, v in self.details.items())

        if suggestion:
            parts.append(f"\nSuggestion: {suggestion}")

        super().__init__("\n".join(parts) if len(parts) > 1 else message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "driver": self.driver,
            "path": self.path,
            "details": self.details,
            "suggestion": self.suggestion,
        }


class PathNotFoundError(StorageDriverError):
    """No object and no descendants exist at the requested path."""

    def __init__(self, path: str, **kwargs: Any) -> None:
        super().__init__(f"Path not found: {path}", path=path, **kwargs)


class UnsupportedMethodError(StorageDriverError):
    """The driver cannot perform the requested operation/option combination."""

    def __init__(self, method: Any, **kwargs: Any) -> None:
        self.method = method
        super().__init__(
            f"Unsupported method: {method!r}",
            suggestion=kwargs.pop("suggestion", "Supported methods are GET and HEAD."),
            **kwargs,
        )


class InvalidConfigurationError(StorageDriverError):
    """Driver configuration is missing or malformed.

    Raised once, at construction, with every problem found.
    """

    def __init__(
        self,
        message: str,
        *,
        issues: Optional[List[str]] = None,
        **kwargs: Any,
    ) -> None:
        self.issues = issues or []

        details = kwargs.pop("details", {})
        if self.issues:
            details["issue_count"] = len(self.issues)
            issue_lines = "\n".join(f"  - {issue}" for issue in self.issues)
            message = f"{message}\n\nIssues found:\n{issue_lines}"

        super().__init__(message, details=details, **kwargs)


class BackendError(StorageDriverError):
    """Opaque passthrough of a remote object store failure.

    The backend error code and message are preserved as-is; the original
    client exception is chained as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        backend_message: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        self.code = code
        self.backend_message = backend_message
        self.operation = operation

        details = kwargs.pop("details", {})
        if operation:
            details["operation"] = operation
        if code:
            details["code"] = code
        if backend_message:
            details["backend_message"] = backend_message

        super().__init__(message, details=details, **kwargs)


class InvalidPathError(StorageDriverError):
    """A path failed syntax or depth validation."""

    def __init__(self, path: str, reason: str = "invalid path", **kwargs: Any) -> None:
        self.reason = reason
        super().__init__(f"Invalid path {path!r}: {reason}", path=path, **kwargs)


class InvalidOffsetError(StorageDriverError):
    """A stream offset is negative."""

    def __init__(self, path: str, offset: int, **kwargs: Any) -> None:
        self.offset = offset
        super().__init__(
            f"Invalid offset {offset} for path {path}",
            path=path,
            details={"offset": offset},
            **kwargs,
        )


class WriteStreamError(StorageDriverError):
    """A streaming write failed part way through.

    ``bytes_consumed`` is the exact number of bytes read from the source
    before the failure, so callers can resume from ``offset + bytes_consumed``
    once the written prefix is confirmed with ``stat``.
    """

    def __init__(
        self,
        path: str,
        *,
        bytes_consumed: int,
        cause: BaseException,
        **kwargs: Any,
    ) -> None:
        self.bytes_consumed = bytes_consumed
        self.cause = cause

        details = kwargs.pop("details", {})
        details["bytes_consumed"] = bytes_consumed
        details["cause"] = str(cause)
        details["cause_type"] = type(cause).__name__

        super().__init__(
            f"Write to {path} failed after {bytes_consumed} bytes",
            path=path,
            details=details,
            **kwargs,
        )
