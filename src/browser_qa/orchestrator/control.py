"""Cooperative cancellation and background task helpers for the orchestrator."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Optional, TypeVar

from ..errors import AbortedError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

# Tasks that are still running after the caller stopped waiting on them.
_DETACHED: set[asyncio.Task[Any]] = set()


class CancellationToken:
    """Signal shared between a caller and every suspension point of one command."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = "Aborted"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "Aborted") -> None:
        """Fire the signal. Calling it more than once keeps the first reason."""

        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AbortedError(self._reason)

    async def wait(self) -> None:
        await self._event.wait()


def raise_if_cancelled(token: Optional[CancellationToken]) -> None:
    if token is not None:
        token.raise_if_cancelled()


async def race_cancellation(
    awaitable: Awaitable[T],
    token: Optional[CancellationToken],
) -> T:
    """Await ``awaitable`` unless ``token`` fires first.

    When the token wins, the underlying work is not cancelled; it keeps
    running detached and only its eventual failure is logged. The caller gets
    :class:`AbortedError`.
    """

    if token is None:
        return await awaitable
    if token.cancelled:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise AbortedError(token.reason)

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        waiter.cancel()
        work.cancel()
        raise
    if work in done:
        waiter.cancel()
        return work.result()
    _detach(work)
    raise AbortedError(token.reason)


def fire_and_forget(coro: Awaitable[Any], *, name: str) -> asyncio.Task[Any]:
    """Run ``coro`` in the background; failures are logged and never re-raised."""

    task = asyncio.ensure_future(coro)
    task.set_name(name)
    _detach(task)
    return task


async def drain_background(timeout: float = 5.0) -> None:
    """Give detached tasks a bounded chance to finish, e.g. before shutdown."""

    pending = [task for task in _DETACHED if not task.done()]
    if not pending:
        return
    LOGGER.debug("Waiting for %d background task(s)", len(pending))
    await asyncio.wait(pending, timeout=timeout)


def _detach(task: asyncio.Task[Any]) -> None:
    _DETACHED.add(task)
    task.add_done_callback(_on_detached_done)


def _on_detached_done(task: asyncio.Task[Any]) -> None:
    _DETACHED.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.warning("Background task %s failed: %s", task.get_name(), exc)
