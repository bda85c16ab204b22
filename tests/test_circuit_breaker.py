"""Tests for the circuit breaker state machine."""

import anyio
import pytest

from notevault.exceptions import ErrorCode, RepositoryError
from notevault.models.schema import CircuitBreakerConfig, CircuitState
from notevault.resilience.circuit_breaker import CircuitBreaker
from tests.fakes import FakeClock, FlakyOperation


def _breaker(clock, threshold=2, reset_ms=1000, enabled=True) -> CircuitBreaker:
    return CircuitBreaker(
        CircuitBreakerConfig(
            enabled=enabled, failure_threshold=threshold, reset_timeout_ms=reset_ms
        ),
        clock=clock,
    )


async def _fail(breaker: CircuitBreaker, operation: FlakyOperation) -> None:
    with pytest.raises(RepositoryError):
        await breaker.call(operation, "get_notes")


class TestCircuitBreaker:
    @pytest.mark.anyio
    async def test_opens_at_threshold_and_rejects_without_invoking(self):
        breaker = _breaker(FakeClock())
        failing = FlakyOperation(always=ConnectionError("down"))

        await _fail(breaker, failing)
        assert breaker.state == CircuitState.CLOSED
        await _fail(breaker, failing)
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(RepositoryError) as exc_info:
            await breaker.call(failing, "get_notes")

        assert failing.calls == 2
        assert exc_info.value.is_circuit_open
        assert exc_info.value.code == ErrorCode.STORAGE_NOT_AVAILABLE

    @pytest.mark.anyio
    async def test_single_trial_after_cool_down_closes(self):
        clock = FakeClock()
        breaker = _breaker(clock)
        failing = FlakyOperation(always=ConnectionError("down"))
        await _fail(breaker, failing)
        await _fail(breaker, failing)

        clock.advance(1.0)
        trial = FlakyOperation(result="recovered")
        assert await breaker.call(trial, "get_notes") == "recovered"

        assert trial.calls == 1
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0

    @pytest.mark.anyio
    async def test_still_open_before_cool_down(self):
        clock = FakeClock()
        breaker = _breaker(clock)
        failing = FlakyOperation(always=ConnectionError("down"))
        await _fail(breaker, failing)
        await _fail(breaker, failing)

        clock.advance(0.999)
        trial = FlakyOperation()
        with pytest.raises(RepositoryError):
            await breaker.call(trial, "get_notes")
        assert trial.calls == 0

    @pytest.mark.anyio
    async def test_failed_trial_reopens_and_restarts_cool_down(self):
        clock = FakeClock()
        breaker = _breaker(clock)
        failing = FlakyOperation(always=ConnectionError("down"))
        await _fail(breaker, failing)
        await _fail(breaker, failing)

        clock.advance(1.0)
        await _fail(breaker, failing)
        assert failing.calls == 3
        assert breaker.state == CircuitState.OPEN

        # Cool-down counts from the failed trial
        clock.advance(0.5)
        await _fail(breaker, failing)
        assert failing.calls == 3

    @pytest.mark.anyio
    async def test_concurrent_callers_rejected_during_trial(self):
        clock = FakeClock()
        breaker = _breaker(clock)
        failing = FlakyOperation(always=ConnectionError("down"))
        await _fail(breaker, failing)
        await _fail(breaker, failing)
        clock.advance(1.0)

        started = anyio.Event()
        release = anyio.Event()

        async def slow_trial():
            started.set()
            await release.wait()
            return "ok"

        other = FlakyOperation()
        async with anyio.create_task_group() as tg:
            tg.start_soon(breaker.call, slow_trial, "get_notes")
            await started.wait()
            assert breaker.state == CircuitState.HALF_OPEN
            with pytest.raises(RepositoryError) as exc_info:
                await breaker.call(other, "get_notes")
            release.set()

        assert other.calls == 0
        assert exc_info.value.is_circuit_open
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.anyio
    async def test_late_success_does_not_close_open_circuit(self):
        breaker = _breaker(FakeClock(), threshold=1, reset_ms=60_000)
        started = anyio.Event()
        release = anyio.Event()

        async def slow_success():
            started.set()
            await release.wait()
            return "ok"

        async with anyio.create_task_group() as tg:
            tg.start_soon(breaker.call, slow_success, "get_notes")
            await started.wait()
            await _fail(breaker, FlakyOperation(always=ConnectionError("down")))
            assert breaker.state == CircuitState.OPEN
            release.set()

        assert breaker.state == CircuitState.OPEN
        assert breaker.consecutive_failures == 1
        with pytest.raises(RepositoryError) as exc_info:
            await breaker.call(FlakyOperation(), "get_notes")
        assert exc_info.value.is_circuit_open

    @pytest.mark.anyio
    async def test_permanent_failures_count(self):
        breaker = _breaker(FakeClock())
        failing = FlakyOperation(always=ValueError("bad"))
        await _fail(breaker, failing)
        await _fail(breaker, failing)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.anyio
    async def test_success_resets_consecutive_count(self):
        breaker = _breaker(FakeClock(), threshold=2)
        failing = FlakyOperation(always=ConnectionError("down"))
        await _fail(breaker, failing)
        await breaker.call(FlakyOperation(), "get_notes")
        await _fail(breaker, failing)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 1

    @pytest.mark.anyio
    async def test_disabled_breaker_passes_through(self):
        breaker = _breaker(FakeClock(), threshold=1, enabled=False)
        failing = FlakyOperation(always=ConnectionError("down"))
        for _ in range(3):
            with pytest.raises(ConnectionError):
                await breaker.call(failing, "get_notes")
        assert failing.calls == 3
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.anyio
    async def test_get_state_snapshot(self):
        clock = FakeClock(start=50.0)
        breaker = _breaker(clock)
        await _fail(breaker, FlakyOperation(always=ConnectionError("down")))

        state = breaker.get_state()
        assert state.state == CircuitState.CLOSED
        assert state.consecutive_failures == 1
        assert state.last_failure_at == 50.0

        breaker.reset()
        assert breaker.get_state().consecutive_failures == 0
