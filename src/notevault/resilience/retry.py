"""Retry with exponential backoff and per-attempt timeout."""
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

import anyio

from notevault.exceptions import RepositoryError
from notevault.models.schema import RetryConfig
from notevault.resilience.cancellation import CancelToken, attempt_scope
from notevault.resilience.classifier import normalize_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_MS = 10_000
JITTER_FRACTION = 0.1


class RetryHandler:
    """Run an async operation up to ``max_attempts`` times.

    Each attempt runs under its own timeout and its own ``CancelToken``.
    A failed attempt is normalized into a ``RepositoryError``; retrying
    stops at the first non-retryable error or after the last attempt.

    Args:
        config: Backoff settings.
        timeout_ms: Per-attempt timeout. ``None`` disables the timeout.
        sleep: Awaitable sleep in seconds. Injected by tests.
        rng: Random source for jitter.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        timeout_ms: Optional[float] = DEFAULT_TIMEOUT_MS,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config or RetryConfig()
        self.timeout_ms = timeout_ms
        self._sleep = sleep
        self._rng = rng or random.Random()

    def calculate_delay(self, attempt: int) -> float:
        """Backoff delay in milliseconds after the given (1-based) attempt."""
        if self.config.exponential_backoff:
            delay = self.config.base_delay_ms * (2 ** (attempt - 1))
        else:
            delay = self.config.base_delay_ms * attempt

        delay = min(delay, self.config.max_delay_ms)

        if self.config.jitter:
            jitter_amount = delay * JITTER_FRACTION
            delay += self._rng.uniform(-jitter_amount, jitter_amount)

        return max(delay, 0.0)

    async def _run_attempt(
        self, operation: Callable[[], Awaitable[T]], operation_name: str
    ) -> T:
        token = CancelToken()
        try:
            with attempt_scope(token):
                if self.timeout_ms is None:
                    return await operation()
                with anyio.fail_after(self.timeout_ms / 1000):
                    return await operation()
        except TimeoutError as exc:
            token.cancel("timeout")
            raise RepositoryError.timeout(operation_name, self.timeout_ms or 0) from exc
        except Exception as exc:
            token.cancel("failed")
            error = normalize_error(exc, operation_name)
            if error is exc:
                raise
            raise error from exc

    async def execute_with_retry(
        self, operation: Callable[[], Awaitable[T]], operation_name: str
    ) -> T:
        """Execute ``operation`` with retries.

        Raises:
            RepositoryError: The last attempt's normalized error, with
                ``retry_attempts`` added to its context.
        """
        max_attempts = self.config.max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                return await self._run_attempt(operation, operation_name)
            except RepositoryError as error:
                if attempt == max_attempts or not error.is_retryable:
                    error.context["retry_attempts"] = attempt
                    error.context["final_attempt"] = True
                    raise

                delay_ms = self.calculate_delay(attempt)
                logger.warning(
                    f"Repository operation '{operation_name}' failed "
                    f"(attempt {attempt}/{max_attempts}, {error.code.name}). "
                    f"Retrying in {delay_ms:.0f}ms..."
                )
                await self._sleep(delay_ms / 1000)

        # Unreachable: the loop either returns or raises
        raise RepositoryError(f"Operation '{operation_name}' made no attempts")
