"""Bounded async retry with exponential backoff.

Design goals:
- Deterministic delays: the wait before retry *k* is ``base * 2**k``
- Retry decisions come from error metadata, not message matching
- Cancellation is a hard stop, never a retry
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, TypeVar

import httpx

from turnloop._http import RETRYABLE_STATUS_CODES
from turnloop.errors import (
    APIError,
    RetryExhaustedError,
    TurnCancelledError,
    _walk_exception_chain,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from turnloop.cancellation import CancellationToken

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget: ``max_retries + 1`` attempts in total."""

    base_delay_ms: float = 1000
    max_retries: int = 3

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        if self.max_retries < 0:
            raise ValueError("RetryPolicy.max_retries must be >= 0")
        if self.base_delay_ms < 0:
            raise ValueError("RetryPolicy.base_delay_ms must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_s(self, retry_index: int) -> float:
        """Seconds to wait before retry number *retry_index* (1-based)."""
        return self.base_delay_ms * (2**retry_index) / 1000.0


def _is_transient_network_error(exc: BaseException) -> bool:
    for e in _walk_exception_chain(exc):
        if isinstance(e, (TimeoutError, asyncio.TimeoutError)):
            return True
        # RequestError is the stable base class for transport-level failures.
        if isinstance(e, (httpx.TimeoutException, httpx.RequestError)):
            return True
    return False


def should_retry_generate(exc: BaseException) -> bool:
    """Return True when a provider-call exception should be retried.

    Contract:
    - Cancellation (ours or asyncio's) is never retried.
    - APIError is retried only when the adapter marks it retryable or it
      carries a known retryable HTTP status code.
    - Raw timeouts and transport errors are retried as a pragmatic fallback.
    """
    if isinstance(exc, (asyncio.CancelledError, TurnCancelledError)):
        return False

    if isinstance(exc, APIError):
        if exc.retryable is not None:
            return exc.retryable
        return (
            isinstance(exc.status_code, int)
            and exc.status_code in RETRYABLE_STATUS_CODES
        )

    return _is_transient_network_error(exc)


def describe_error(exc: BaseException) -> str:
    """Render an exception for messages, never as an empty string."""
    text = str(exc)
    return text if text else repr(exc)


async def _sleep(delay_s: float, cancel: CancellationToken | None) -> None:
    if cancel is not None:
        await cancel.sleep(delay_s)
    elif delay_s > 0:
        await asyncio.sleep(delay_s)


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = should_retry_generate,
    cancel: CancellationToken | None = None,
    operation: str = "provider call",
) -> T:
    """Run an async factory with bounded retries.

    Non-retryable errors are re-raised untouched on first sight. When every
    attempt fails with a retryable error, ``RetryExhaustedError`` is raised
    with the attempt count and the last error's message.
    """
    last_exc: BaseException | None = None

    for attempt in range(1, policy.max_attempts + 1):
        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            if cancel is not None:
                return await cancel.guard(factory())
            return await factory()
        except TurnCancelledError:
            raise
        except Exception as exc:
            last_exc = exc
            if not should_retry(exc):
                raise
            if attempt >= policy.max_attempts:
                break

            delay = policy.delay_s(attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.3fs: %s",
                operation,
                attempt,
                policy.max_attempts,
                delay,
                describe_error(exc),
            )
            await _sleep(delay, cancel)

    if last_exc is None:  # pragma: no cover
        raise RuntimeError("retry_async exhausted without an exception")
    raise RetryExhaustedError(
        f"Failed after {policy.max_retries} retries. "
        f"Last error: {describe_error(last_exc)}",
        attempts=policy.max_attempts,
        last_error=last_exc,
        hint=getattr(last_exc, "hint", None),
    ) from last_exc
