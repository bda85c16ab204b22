"""Resilience executor: circuit breaker, retry, timeout and error logging.

Every repository call is funnelled through ``ResilienceExecutor``. The
pipeline for one call is::

    circuit breaker gate -> retry loop -> per-attempt timeout -> normalization

The breaker sees the outcome of the whole retry loop, so one failed call
counts as one failure and a half-open trial is one call.
"""
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from notevault.exceptions import ErrorCategory, RepositoryError
from notevault.models.schema import (
    CircuitBreakerConfig,
    CircuitBreakerState,
    RetryConfig,
)
from notevault import observability
from notevault.observability import MetricsCollector
from notevault.resilience.circuit_breaker import CircuitBreaker
from notevault.resilience.classifier import classify_error, normalize_error
from notevault.resilience.retry import DEFAULT_TIMEOUT_MS, RetryHandler

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class OperationResult(Generic[T]):
    """Outcome of one executed operation."""

    success: bool
    operation_id: str
    data: Optional[T] = None
    error: Optional[RepositoryError] = None
    duration_ms: float = 0.0
    attempts: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def unwrap(self) -> T:
        """Return the data or raise the error."""
        if not self.success:
            raise self.error or RepositoryError(
                f"Operation {self.operation_id} failed", operation=self.operation_id
            )
        return self.data  # type: ignore[return-value]


def _operation_id(operation_name: str) -> str:
    return f"{operation_name}_{uuid.uuid4().hex[:12]}"


class ResilienceExecutor:
    """Wrap async storage operations with retry and circuit-breaker protection.

    Breaker and retry state belong to the instance. Repositories that should
    share one breaker must share one executor.
    """

    def __init__(
        self,
        retry_config: Optional[RetryConfig] = None,
        circuit_breaker_config: Optional[CircuitBreakerConfig] = None,
        timeout_ms: Optional[float] = DEFAULT_TIMEOUT_MS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        metrics_collector: Optional[MetricsCollector] = None,
    ) -> None:
        retry_kwargs: Dict[str, Any] = {"timeout_ms": timeout_ms}
        if sleep is not None:
            retry_kwargs["sleep"] = sleep
        self.retry_handler = RetryHandler(retry_config, **retry_kwargs)

        breaker_config = circuit_breaker_config or CircuitBreakerConfig()
        self.circuit_breaker: Optional[CircuitBreaker] = (
            CircuitBreaker(breaker_config, clock=clock)
            if breaker_config.enabled
            else None
        )
        self._metrics = metrics_collector

    def _collector(self) -> MetricsCollector:
        if self._metrics is not None:
            return self._metrics
        return observability.metrics

    async def execute_operation(
        self, operation: Callable[[], Awaitable[T]], operation_name: str
    ) -> OperationResult[T]:
        """Execute ``operation`` with full protection.

        Never raises for operation failures; the normalized error is returned
        in the result instead.
        """
        start = time.perf_counter()
        operation_id = _operation_id(operation_name)
        attempts = 0

        async def _counted() -> T:
            nonlocal attempts
            attempts += 1
            return await operation()

        async def _with_retry() -> T:
            return await self.retry_handler.execute_with_retry(_counted, operation_name)

        try:
            if self.circuit_breaker is not None:
                data = await self.circuit_breaker.call(_with_retry, operation_name)
            else:
                data = await _with_retry()
        except Exception as exc:
            error = normalize_error(exc, operation_name)
            duration_ms = (time.perf_counter() - start) * 1000
            self._log_error(error, duration_ms)
            self._collector().record_operation(
                operation_name, duration_ms, False, error, attempts=attempts
            )
            return OperationResult(
                success=False,
                operation_id=operation_id,
                error=error,
                duration_ms=duration_ms,
                attempts=attempts,
            )

        duration_ms = (time.perf_counter() - start) * 1000
        self._collector().record_operation(
            operation_name, duration_ms, True, attempts=attempts
        )
        return OperationResult(
            success=True,
            operation_id=operation_id,
            data=data,
            duration_ms=duration_ms,
            attempts=attempts,
        )

    async def run(
        self, operation: Callable[[], Awaitable[T]], operation_name: str
    ) -> T:
        """Execute ``operation`` and return its value, raising on failure."""
        result = await self.execute_operation(operation, operation_name)
        return result.unwrap()

    def get_circuit_breaker_state(self) -> Optional[CircuitBreakerState]:
        """Get circuit breaker state for monitoring (None when disabled)."""
        if self.circuit_breaker is None:
            return None
        return self.circuit_breaker.get_state()

    @staticmethod
    def _log_error(error: RepositoryError, duration_ms: float) -> None:
        """Log by classification; critical errors never log their context."""
        classification = classify_error(error)
        log_data = (
            f"operation={error.operation} code={error.code.name} "
            f"category={classification.category.value} "
            f"retryable={classification.is_retryable} "
            f"duration={duration_ms:.1f}ms context={error.safe_context()}"
        )

        if classification.category == ErrorCategory.SECURITY or error.is_critical:
            logger.error(f"Security-related repository error: {log_data}")
        elif error.is_circuit_open:
            logger.debug(f"Call rejected by open circuit: {log_data}")
        elif classification.category == ErrorCategory.PERMANENT:
            logger.error(f"Permanent repository error: {error.message} | {log_data}")
        else:
            logger.warning(f"Repository error: {error.message} | {log_data}")
