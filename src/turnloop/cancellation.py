"""Explicit cancellation context threaded through one invocation.

A single token is shared by the provider call, every stream read, the retry
backoff wait and each tool ``execute()``. Cancelling it makes whichever of
those is currently suspended raise ``TurnCancelledError``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, TypeVar

from turnloop.errors import TurnCancelledError

if TYPE_CHECKING:
    from collections.abc import Awaitable

T = TypeVar("T")

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag with awaitable helpers."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._timer: asyncio.TimerHandle | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Signal cancellation. Later calls keep the first reason."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        logger.debug("Cancellation requested: %s", reason)

    def cancel_after(self, delay_s: float) -> None:
        """Cancel with reason ``"timeout"`` after *delay_s* seconds.

        Must be called from inside a running event loop.
        """
        if delay_s < 0:
            raise ValueError("cancel_after delay must be >= 0")
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay_s, self.cancel, "timeout")

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelledError(
                f"Invocation {self._reason or 'cancelled'}",
                hint="The caller cancelled the token or its timeout elapsed.",
            )

    async def sleep(self, delay_s: float) -> None:
        """Sleep for *delay_s*, waking early with an error on cancellation."""
        self.raise_if_cancelled()
        if delay_s <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay_s)
        except (asyncio.TimeoutError, TimeoutError):
            return
        self.raise_if_cancelled()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable*, abandoning it if the token fires first."""
        self.raise_if_cancelled()
        task: asyncio.Future[Any] = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        # Let the abandoned operation unwind; its outcome is irrelevant now.
        await asyncio.gather(task, return_exceptions=True)
        self.raise_if_cancelled()
        raise TurnCancelledError("Invocation cancelled")  # pragma: no cover


async def guarded(awaitable: Awaitable[T], cancel: CancellationToken | None) -> T:
    """Await *awaitable* under *cancel* when one is supplied."""
    if cancel is None:
        return await awaitable
    return await cancel.guard(awaitable)
