"""Circuit breaker for storage operations.

States:
    CLOSED    -> Normal operation, calls go through.
    OPEN      -> Failure threshold reached, calls rejected without running.
    HALF_OPEN -> Cool-down elapsed, exactly one trial call allowed.
"""
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

from notevault.exceptions import RepositoryError
from notevault.models.schema import (
    CircuitBreakerConfig,
    CircuitBreakerState,
    CircuitState,
)
from notevault.resilience.classifier import normalize_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitBreaker:
    """Stop invoking a repeatedly failing backend for a cool-down period.

    Every failure counts toward the threshold, whatever its retry
    classification: a backend that fails permanently on every call must
    still trip the breaker. Failures are counted only while consecutive;
    any success in the closed state resets the counter. A success that
    arrives after the circuit opened is ignored unless it is the trial.

    Args:
        config: Threshold and cool-down settings.
        clock: Monotonic clock in seconds. Injected by tests.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def get_state(self) -> CircuitBreakerState:
        """Snapshot for monitoring."""
        return CircuitBreakerState(
            state=self._state,
            consecutive_failures=self._failures,
            last_failure_at=self._last_failure_at,
        )

    def _cool_down_elapsed(self) -> bool:
        if self._last_failure_at is None:
            return True
        elapsed_ms = (self._clock() - self._last_failure_at) * 1000
        return elapsed_ms >= self.config.reset_timeout_ms

    def _admit(self, operation_name: str) -> bool:
        """Decide whether a call may run. Returns True if it is the trial."""
        if self._state == CircuitState.CLOSED:
            return False

        if self._state == CircuitState.OPEN and self._cool_down_elapsed():
            self._state = CircuitState.HALF_OPEN
            logger.info(
                f"Circuit half-open, allowing trial call for '{operation_name}'"
            )

        if self._state == CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True

        raise RepositoryError.circuit_open(
            operation_name, self._state.value, self._failures
        )

    def record_success(self, trial: bool = False) -> None:
        """Count a success. Only the trial may close an open circuit."""
        if self._state != CircuitState.CLOSED and not trial:
            # Admitted before the circuit opened; says nothing about recovery
            return
        if self._state == CircuitState.HALF_OPEN:
            logger.info("Circuit closed (backend recovered)")
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_at = None

    def record_failure(self) -> None:
        self._failures += 1
        self._last_failure_at = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            logger.warning(
                f"Circuit re-opened after failed trial "
                f"(cool-down {self.config.reset_timeout_ms:.0f}ms restarted)"
            )
        elif (
            self._state == CircuitState.CLOSED
            and self._failures >= self.config.failure_threshold
        ):
            self._state = CircuitState.OPEN
            logger.warning(
                f"Circuit opened after {self._failures} consecutive failures "
                f"(threshold {self.config.failure_threshold}, "
                f"cool-down {self.config.reset_timeout_ms:.0f}ms)"
            )

    def reset(self) -> None:
        """Force the breaker back to closed (administrative use)."""
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_at = None
        self._trial_in_flight = False

    async def call(
        self, operation: Callable[[], Awaitable[T]], operation_name: str
    ) -> T:
        """Run ``operation`` behind the breaker.

        Raises:
            RepositoryError: The circuit-open rejection, or the operation's
                own failure normalized to a RepositoryError.
        """
        if not self.config.enabled:
            return await operation()

        is_trial = self._admit(operation_name)
        try:
            result = await operation()
        except Exception as exc:
            error = normalize_error(exc, operation_name)
            self.record_failure()
            if error is exc:
                raise
            raise error from exc
        finally:
            if is_trial:
                self._trial_in_flight = False

        self.record_success(trial=is_trial)
        return result
