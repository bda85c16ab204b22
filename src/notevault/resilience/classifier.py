"""Failure classification for storage operations.

``normalize_error`` turns any raw exception into exactly one
``RepositoryError``; ``classify_error`` derives the retry category from the
resulting code. Both the retry loop and the circuit breaker work from this
single classification.
"""
import errno
import logging
from dataclasses import dataclass

import pydantic
import yaml
from sqlalchemy.exc import DatabaseError, IntegrityError, OperationalError

from notevault.exceptions import CRITICAL_CODES, ErrorCategory, ErrorCode, RepositoryError

logger = logging.getLogger(__name__)

_DISK_FULL_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}

_SUGGESTED_ACTIONS = {
    ErrorCategory.TRANSIENT: "Retry with exponential backoff",
    ErrorCategory.PERMANENT: "Fix data, request parameters or configuration",
    ErrorCategory.SECURITY: "Check permissions and encryption keys",
    ErrorCategory.UNKNOWN: "Investigate error details",
}


@dataclass(frozen=True)
class Classification:
    """Retry eligibility of a normalized error."""

    category: ErrorCategory
    is_retryable: bool
    suggested_action: str


def classify_error(error: RepositoryError) -> Classification:
    """Classify a normalized error."""
    category = error.category
    action = _SUGGESTED_ACTIONS[category]
    if error.code == ErrorCode.CONFLICT_ERROR:
        action = "Retry with latest data version"
    return Classification(
        category=category,
        is_retryable=error.is_retryable,
        suggested_action=action,
    )


def _raw_context(error: BaseException) -> dict:
    return {
        "original_error_name": type(error).__name__,
        "original_error": str(error)[:200],  # Truncate for safety
    }


def _code_for(error: BaseException) -> ErrorCode:
    """Map a raw exception to an error code.

    Order matters: TimeoutError, PermissionError, ConnectionError and
    FileNotFoundError are all OSError subclasses.
    """
    message = str(error).lower()

    if isinstance(error, TimeoutError):
        return ErrorCode.TIMEOUT_ERROR
    if isinstance(error, PermissionError):
        return ErrorCode.PERMISSION_DENIED
    if isinstance(error, ConnectionError):
        return ErrorCode.NETWORK_ERROR
    if isinstance(error, FileNotFoundError):
        return ErrorCode.NOT_FOUND
    if isinstance(error, OSError):
        if error.errno in _DISK_FULL_ERRNOS or "quota" in message:
            return ErrorCode.STORAGE_FULL
        return ErrorCode.STORAGE_NOT_AVAILABLE

    if isinstance(error, IntegrityError):
        return ErrorCode.VALIDATION_ERROR
    if isinstance(error, OperationalError):
        if "locked" in message or "busy" in message:
            return ErrorCode.TIMEOUT_ERROR
        if "disk is full" in message or "database or disk is full" in message:
            return ErrorCode.STORAGE_FULL
        if "no such table" in message or "no such column" in message:
            return ErrorCode.SCHEMA_ERROR
        if "unable to open" in message:
            return ErrorCode.STORAGE_NOT_AVAILABLE
        if "malformed" in message or "not a database" in message:
            return ErrorCode.STORAGE_CORRUPT
        return ErrorCode.STORAGE_NOT_AVAILABLE
    if isinstance(error, DatabaseError):
        if "malformed" in message or "not a database" in message:
            return ErrorCode.STORAGE_CORRUPT
        return ErrorCode.UNKNOWN_ERROR

    if isinstance(error, yaml.YAMLError):
        return ErrorCode.STORAGE_CORRUPT
    if isinstance(error, (pydantic.ValidationError, ValueError)):
        return ErrorCode.VALIDATION_ERROR

    # Message heuristics for errors raised by third-party clients
    if "quota" in message:
        return ErrorCode.STORAGE_FULL
    if "permission" in message:
        return ErrorCode.PERMISSION_DENIED
    if "timeout" in message or "timed out" in message:
        return ErrorCode.TIMEOUT_ERROR
    return ErrorCode.UNKNOWN_ERROR


def normalize_error(error: BaseException, operation: str) -> RepositoryError:
    """Normalize any exception into a ``RepositoryError``.

    Errors that are already normalized are returned unchanged, so calling
    this more than once never re-wraps.
    """
    if isinstance(error, RepositoryError):
        return error

    code = _code_for(error)
    if code in CRITICAL_CODES:
        # The raw text may name paths or keys; it stays in the redacted context
        message = f"{code.name.replace('_', ' ').capitalize()} during {operation}"
    elif code == ErrorCode.UNKNOWN_ERROR:
        message = str(error) or type(error).__name__
    else:
        message = f"{code.name.replace('_', ' ').capitalize()}: {error}"
    return RepositoryError(
        message,
        code=code,
        operation=operation,
        context=_raw_context(error),
        cause=error,
    )
