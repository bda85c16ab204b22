"""Cooperative cancellation tokens for storage attempts.

A timeout cancels the task that awaits a storage call, but blocking work
already handed to a worker thread keeps running. Each attempt therefore
carries a ``CancelToken``: the executor cancels it when the attempt is
abandoned and adapters check it before committing anything.
"""
import contextvars
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

import anyio

from notevault.exceptions import ErrorCode, RepositoryError

R = TypeVar("R")


class CancelToken:
    """Thread-safe, one-shot cancellation flag."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, operation: str = "unknown") -> None:
        """Abort the current step if the attempt has been abandoned."""
        if self._event.is_set():
            raise RepositoryError(
                f"Operation abandoned before commit ({self.reason})",
                code=ErrorCode.TIMEOUT_ERROR,
                operation=operation,
                context={"cancelled": True, "reason": self.reason},
            )


# Token for code running outside the executor; never cancelled
_NEVER_CANCELLED = CancelToken()

_current_token: contextvars.ContextVar[CancelToken] = contextvars.ContextVar(
    "notevault_cancel_token", default=_NEVER_CANCELLED
)


def current_token() -> CancelToken:
    """Return the token of the attempt running in this context."""
    return _current_token.get()


@contextmanager
def attempt_scope(token: CancelToken) -> Iterator[CancelToken]:
    """Bind ``token`` as the current token for the duration of one attempt."""
    reset = _current_token.set(token)
    try:
        yield token
    finally:
        _current_token.reset(reset)


async def run_in_worker(func: Callable[[], R]) -> R:
    """Run blocking ``func`` in a worker thread, abandoning it on cancellation.

    A cancelled wait returns immediately and cancels the current attempt's
    token, so the abandoned thread fails its next ``raise_if_cancelled``
    check instead of committing.
    """
    token = current_token()
    try:
        return await anyio.to_thread.run_sync(func, abandon_on_cancel=True)
    except anyio.get_cancelled_exc_class():
        token.cancel("abandoned")
        raise
