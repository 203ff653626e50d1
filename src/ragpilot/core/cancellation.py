"""
Cancellation and timeout plumbing for backend calls.

A pipeline run opens a call scope holding an optional CancellationToken and
an optional per-call time budget. The scope lives in a ContextVar, the same
way trace IDs propagate, so every backend call made while the run is active
(including calls inside asyncio.gather children) goes through `guarded`
without the budget being passed through every signature. Concurrent runs
each see only their own scope.

Cancelling the token raises asyncio.CancelledError at the next guarded call
(or interrupts one in flight). Exceeding the time budget raises
BackendTimeout, which stages treat like any other backend failure.
"""

import asyncio
from collections.abc import Awaitable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import TypeVar

from ..errors import BackendTimeout

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation signal shared between a caller and a pipeline run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError(self.reason)

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class CallScope:
    token: CancellationToken | None = None
    timeout: float | None = None


_call_scope: ContextVar[CallScope] = ContextVar("call_scope", default=CallScope())


@contextmanager
def call_scope(
    token: CancellationToken | None = None, timeout: float | None = None
) -> Iterator[CallScope]:
    """Install a cancellation token and per-call timeout for the current context."""
    scope = CallScope(token=token, timeout=timeout)
    reset = _call_scope.set(scope)
    try:
        yield scope
    finally:
        _call_scope.reset(reset)


def current_scope() -> CallScope:
    return _call_scope.get()


def check_cancelled() -> None:
    """Raise CancelledError if the current run has been cancelled."""
    token = _call_scope.get().token
    if token is not None:
        token.raise_if_cancelled()


async def guarded(awaitable: Awaitable[T], operation: str = "backend call") -> T:
    """Await a backend call under the current scope's token and time budget."""
    scope = _call_scope.get()
    token = scope.token

    if token is not None and token.cancelled:
        # Close the never-started coroutine to avoid a "never awaited" warning
        close = getattr(awaitable, "close", None)
        if close is not None:
            close()
        token.raise_if_cancelled()

    if token is None and scope.timeout is None:
        return await awaitable

    task = asyncio.ensure_future(awaitable)
    waiters: set[asyncio.Future] = {task}
    cancel_waiter = None
    if token is not None:
        cancel_waiter = asyncio.ensure_future(token.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(
            waiters, timeout=scope.timeout, return_when=asyncio.FIRST_COMPLETED
        )
    except BaseException:
        task.cancel()
        raise
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    await asyncio.wait({task})

    if token is not None and token.cancelled:
        token.raise_if_cancelled()
    raise BackendTimeout(f"{operation} exceeded {scope.timeout}s", operation=operation)
