"""Error taxonomy for the notevault storage and sync core.

Every storage failure is described by a single ``RepositoryError`` carrying
a code from the fixed ``ErrorCode`` enum. Retry eligibility and criticality
are derived from the code, so callers match on ``error.code`` instead of on
exception subclasses.
"""
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

REDACTED = "[REDACTED]"


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Storage errors (1xxx)
    STORAGE_NOT_AVAILABLE = 1001
    STORAGE_FULL = 1002
    STORAGE_CORRUPT = 1003

    # Data errors (2xxx)
    NOT_FOUND = 2001
    VALIDATION_ERROR = 2002
    CONFLICT_ERROR = 2003
    SCHEMA_ERROR = 2004

    # Network errors (3xxx)
    NETWORK_ERROR = 3001
    TIMEOUT_ERROR = 3002

    # Security errors (4xxx)
    PERMISSION_DENIED = 4001
    ENCRYPTION_ERROR = 4002

    # System errors (9xxx)
    INITIALIZATION_ERROR = 9001
    UNKNOWN_ERROR = 9999


class ErrorCategory(str, Enum):
    """Retry-eligibility category assigned by the error classifier."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    SECURITY = "security"
    UNKNOWN = "unknown"


RETRYABLE_CODES: FrozenSet[ErrorCode] = frozenset(
    {
        ErrorCode.STORAGE_FULL,
        ErrorCode.CONFLICT_ERROR,
        ErrorCode.NETWORK_ERROR,
        ErrorCode.TIMEOUT_ERROR,
    }
)

CRITICAL_CODES: FrozenSet[ErrorCode] = frozenset(
    {ErrorCode.PERMISSION_DENIED, ErrorCode.ENCRYPTION_ERROR}
)

_CATEGORY_BY_CODE: Dict[ErrorCode, ErrorCategory] = {
    ErrorCode.STORAGE_NOT_AVAILABLE: ErrorCategory.PERMANENT,
    ErrorCode.STORAGE_FULL: ErrorCategory.TRANSIENT,
    ErrorCode.STORAGE_CORRUPT: ErrorCategory.PERMANENT,
    ErrorCode.NOT_FOUND: ErrorCategory.PERMANENT,
    ErrorCode.VALIDATION_ERROR: ErrorCategory.PERMANENT,
    ErrorCode.CONFLICT_ERROR: ErrorCategory.TRANSIENT,
    ErrorCode.SCHEMA_ERROR: ErrorCategory.PERMANENT,
    ErrorCode.NETWORK_ERROR: ErrorCategory.TRANSIENT,
    ErrorCode.TIMEOUT_ERROR: ErrorCategory.TRANSIENT,
    ErrorCode.PERMISSION_DENIED: ErrorCategory.SECURITY,
    ErrorCode.ENCRYPTION_ERROR: ErrorCategory.SECURITY,
    ErrorCode.INITIALIZATION_ERROR: ErrorCategory.PERMANENT,
    ErrorCode.UNKNOWN_ERROR: ErrorCategory.UNKNOWN,
}


class RepositoryError(Exception):
    """A storage failure normalized to one error code.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        operation: Name of the repository operation that failed
        context: Additional structured context about the error
        cause: The raw exception this error was normalized from, if any
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        operation: str = "unknown",
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        self.message = message
        self.code = code
        self.operation = operation
        self.context: Dict[str, Any] = dict(context) if context else {}
        self.cause = cause
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause

    @property
    def is_retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    @property
    def is_critical(self) -> bool:
        """Critical errors must not expose their context in logs or UI."""
        return self.code in CRITICAL_CODES

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORY_BY_CODE[self.code]

    @property
    def is_circuit_open(self) -> bool:
        return bool(self.context.get("circuit_open"))

    def safe_context(self) -> Any:
        """Return the context, or a redaction marker for critical errors."""
        return REDACTED if self.is_critical else dict(self.context)

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        """Convert the error to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "operation": self.operation,
            "context": self.safe_context() if redact else dict(self.context),
            "retryable": self.is_retryable,
            "critical": self.is_critical,
        }

    def __str__(self) -> str:
        if self.context and not self.is_critical:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"

    # ------------------------------------------------------------------
    # Named constructors
    # ------------------------------------------------------------------

    @classmethod
    def not_found(
        cls, operation: str, entity_id: str, entity_type: str = "Entity"
    ) -> "RepositoryError":
        return cls(
            f"{entity_type} with ID '{entity_id}' not found",
            code=ErrorCode.NOT_FOUND,
            operation=operation,
            context={"entity_id": entity_id, "entity_type": entity_type},
        )

    @classmethod
    def validation_failed(
        cls, operation: str, errors: Any, value: Optional[Any] = None
    ) -> "RepositoryError":
        if isinstance(errors, str):
            errors = [errors]
        context: Dict[str, Any] = {"validation_errors": list(errors)}
        if value is not None:
            context["value"] = str(value)[:100]  # Truncate for safety
        return cls(
            f"Validation failed: {', '.join(errors)}",
            code=ErrorCode.VALIDATION_ERROR,
            operation=operation,
            context=context,
        )

    @classmethod
    def storage_not_available(
        cls, operation: str, reason: Optional[str] = None
    ) -> "RepositoryError":
        context = {"reason": reason} if reason else {}
        return cls(
            "Storage system is not available",
            code=ErrorCode.STORAGE_NOT_AVAILABLE,
            operation=operation,
            context=context,
        )

    @classmethod
    def storage_full(
        cls, operation: str, used: int = 0, limit: int = 0
    ) -> "RepositoryError":
        return cls(
            f"Storage is full ({used}/{limit} used)",
            code=ErrorCode.STORAGE_FULL,
            operation=operation,
            context={"used": used, "limit": limit},
        )

    @classmethod
    def conflict(
        cls,
        operation: str,
        entity_id: str,
        intended: Optional[Any] = None,
        latest: Optional[Any] = None,
        **details: Any,
    ) -> "RepositoryError":
        context: Dict[str, Any] = {"entity_id": entity_id, **details}
        if intended is not None:
            context["intended_version"] = intended
        if latest is not None:
            context["latest_version"] = latest
        return cls(
            f"Conflict detected for entity {entity_id}",
            code=ErrorCode.CONFLICT_ERROR,
            operation=operation,
            context=context,
        )

    @classmethod
    def permission_denied(
        cls, operation: str, resource: str = "storage"
    ) -> "RepositoryError":
        return cls(
            f"Permission denied for {operation}",
            code=ErrorCode.PERMISSION_DENIED,
            operation=operation,
            context={"resource": resource},
        )

    @classmethod
    def encryption_failed(cls, operation: str, reason: str) -> "RepositoryError":
        return cls(
            f"Encryption/decryption failed for {operation}",
            code=ErrorCode.ENCRYPTION_ERROR,
            operation=operation,
            context={"reason": reason},
        )

    @classmethod
    def timeout(cls, operation: str, timeout_ms: float) -> "RepositoryError":
        return cls(
            f"Operation timed out after {timeout_ms:.0f}ms",
            code=ErrorCode.TIMEOUT_ERROR,
            operation=operation,
            context={"timeout_ms": timeout_ms},
        )

    @classmethod
    def circuit_open(
        cls, operation: str, state: str, failures: int
    ) -> "RepositoryError":
        """Rejection issued by an open circuit breaker."""
        return cls(
            "Circuit breaker is open - operation not allowed",
            code=ErrorCode.STORAGE_NOT_AVAILABLE,
            operation=operation,
            context={
                "circuit_open": True,
                "circuit_state": state,
                "failures": failures,
            },
        )


class SyncErrorCode(Enum):
    """Error codes raised by the sync engine itself."""

    SYNC_IN_PROGRESS = 5001
    CONFLICT_NOT_FOUND = 5002
    CONFLICT_ALREADY_RESOLVED = 5003
    UNRESOLVED_CONFLICTS = 5004
    INVALID_STRATEGY = 5005
    TYPE_MISMATCH = 5006


class SyncError(Exception):
    """Raised for sync engine failures (not storage failures)."""

    def __init__(
        self,
        message: str,
        code: SyncErrorCode,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
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
