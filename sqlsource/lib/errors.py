"""Structured exception hierarchy for the SQL source.

Provides specific exception types for the failure modes of an incremental
poll, with rich context for debugging and troubleshooting.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "SourceError",
    "ConfigurationError",
    "InvalidWatermarkValue",
    "WatermarkBindingError",
    "CheckpointError",
    "SessionError",
    "is_disconnect_error",
]


class SourceError(Exception):
    """Base exception for all SQL source errors.

    Provides structured error information for debugging.
    """

    def __init__(
        self,
        message: str,
        *,
        source: Optional[str] = None,
        table: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.source = source
        self.table = table
        self.details = details or {}
        self.suggestion = suggestion

        parts = [message]

        if source or table:
            context = f"{source or '?'}.{table or '?'}"
            parts.insert(0, f"[{context}]")

        if self.details:
            detail_lines = [f"  {k}: {v}" for k, v in self.details.items()]
            parts.append("\nDetails:")
            parts.extend(detail_lines)

        if suggestion:
            parts.append(f"\nSuggestion: {suggestion}")

        super().__init__("\n".join(parts) if len(parts) > 1 else message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "source": self.source,
            "table": self.table,
            "details": self.details,
            "suggestion": self.suggestion,
        }


class ConfigurationError(SourceError):
    """Error in source configuration.

    Raised at load time when configuration is invalid or incomplete.
    Never retried.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Any = None,
        **kwargs: Any,
    ) -> None:
        self.field = field
        self.value = value

        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(message, details=details, **kwargs)


class InvalidWatermarkValue(SourceError, ValueError):
    """Indicator value that cannot be normalized to an integer position."""

    def __init__(self, message: str, *, value: Any = None, **kwargs: Any) -> None:
        self.value = value

        details = kwargs.pop("details", {})
        if value is not None:
            details["value"] = repr(value)

        super().__init__(message, details=details, **kwargs)


class WatermarkBindingError(SourceError):
    """Watermark position could not be bound as a query parameter.

    Raised for DATE tables whose position is not a valid 14-digit
    yyyyMMddHHmmss timestamp. Not retried.
    """

    def __init__(self, message: str, *, position: Any = None, **kwargs: Any) -> None:
        self.position = position

        details = kwargs.pop("details", {})
        if position is not None:
            details["position"] = str(position)

        suggestion = kwargs.pop("suggestion", None)
        if not suggestion:
            suggestion = (
                "Check the stored checkpoint value or start_from for this table. "
                "DATE positions must look like 20250115103000."
            )

        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class CheckpointError(SourceError):
    """Error reading or writing the checkpoint file."""

    def __init__(
        self,
        message: str,
        *,
        path: Optional[str] = None,
        cause: Optional[Exception] = None,
        **kwargs: Any,
    ) -> None:
        self.path = path
        self.cause = cause

        details = kwargs.pop("details", {})
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__

        super().__init__(message, details=details, **kwargs)


class SessionError(SourceError):
    """Error opening a database session."""

    def __init__(
        self,
        message: str,
        *,
        cause: Optional[Exception] = None,
        **kwargs: Any,
    ) -> None:
        self.cause = cause

        details = kwargs.pop("details", {})
        if cause:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__

        suggestion = kwargs.pop("suggestion", None)
        if not suggestion:
            suggestion = (
                "Check that the database is reachable and credentials are correct. "
                "Verify environment variables are set."
            )

        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


_DISCONNECT_MESSAGES = (
    "connection is closed",
    "connection was closed",
    "connection does not exist",
    "connection refused",
    "communication link failure",
    "server has gone away",
    "lost connection",
    "broken pipe",
    "closed in the middle of operation",
)


def is_disconnect_error(exc: BaseException) -> bool:
    """Determine if a database error means the session is no longer usable.

    Supports pyodbc, SQLAlchemy, and generic Python connection exceptions.

    Args:
        exc: The exception to check

    Returns:
        True if the session should be torn down before the next attempt
    """
    exc_type = type(exc).__name__
    exc_module = type(exc).__module__

    if isinstance(exc, SessionError):
        return True

    # pyodbc and database connection errors
    if "pyodbc" in exc_module:
        if "OperationalError" in exc_type or "InterfaceError" in exc_type:
            return True

    # SQLAlchemy connection errors
    if "sqlalchemy" in exc_module:
        if "OperationalError" in exc_type or "DisconnectionError" in exc_type:
            return True
        if getattr(exc, "connection_invalidated", False):
            return True

    if isinstance(exc, (ConnectionError, TimeoutError, BrokenPipeError)):
        return True

    msg = str(exc).lower()
    return any(fragment in msg for fragment in _DISCONNECT_MESSAGES)
