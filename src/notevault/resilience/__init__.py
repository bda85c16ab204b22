"""Resilience layer: error classification, retry, circuit breaker."""

from notevault.resilience.cancellation import CancelToken, current_token
from notevault.resilience.circuit_breaker import CircuitBreaker
from notevault.resilience.classifier import classify_error, normalize_error
from notevault.resilience.executor import OperationResult, ResilienceExecutor
from notevault.resilience.retry import RetryHandler

__all__ = [
    "CancelToken",
    "CircuitBreaker",
    "OperationResult",
    "ResilienceExecutor",
    "RetryHandler",
    "classify_error",
    "current_token",
    "normalize_error",
]
