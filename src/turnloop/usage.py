"""Usage ledger: additive token/cost accounting with user callbacks.

Callback failures are logged and swallowed; they never reach the caller's
result. Coroutine callbacks run as background tasks so a slow reporter
never holds up the turn; ``flush()`` waits for them.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
import inspect
import logging
import time
from typing import TYPE_CHECKING, Any

from turnloop.models import Costs, Usage

if TYPE_CHECKING:
    from turnloop.tokens import TokenCounter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    """Price per million tokens."""

    input_per_million: float
    output_per_million: float
    cached_input_per_million: float | None = None

    def costs_for(self, usage: Usage) -> Costs:
        cached = min(usage.cached_input_tokens, usage.input_tokens)
        cached_rate = (
            self.cached_input_per_million
            if self.cached_input_per_million is not None
            else self.input_per_million
        )
        billed_output = usage.output_tokens + usage.reasoning_tokens
        return Costs(
            input=(usage.input_tokens - cached) * self.input_per_million / 1e6,
            cached_input=cached * cached_rate / 1e6,
            output=billed_output * self.output_per_million / 1e6,
        )


@dataclass(frozen=True)
class UsageRecord:
    """What a usage callback receives."""

    caller_id: str
    usage: Usage
    timestamp_ms: int


UsageCallback = Callable[[UsageRecord], Awaitable[None] | None]


class UsageLedger:
    """Accumulates usage per invocation and over the ledger's lifetime."""

    def __init__(
        self,
        caller_id: str,
        *,
        callback: UsageCallback | None = None,
        pricing: ModelPricing | None = None,
    ) -> None:
        self.caller_id = caller_id
        self.pricing = pricing
        self._callback = callback
        self._invocation_total = Usage()
        self._lifetime_total = Usage()
        self._pending: set[asyncio.Task[Any]] = set()

    def set_callback(self, callback: UsageCallback | None) -> None:
        self._callback = callback

    @property
    def invocation_total(self) -> Usage:
        return self._invocation_total

    @property
    def lifetime_total(self) -> Usage:
        return self._lifetime_total

    def begin_invocation(self) -> None:
        """Start a fresh running total for one top-level call or stream."""
        self._invocation_total = Usage()

    def price(self, usage: Usage) -> Usage:
        if self.pricing is None or usage.costs.total:
            return usage
        return replace(usage, costs=self.pricing.costs_for(usage))

    def record(self, usage: Usage) -> Usage:
        """Add *usage* to both totals, notify the callback, return priced usage."""
        priced = self.price(usage)
        self._invocation_total = self._invocation_total + priced
        self._lifetime_total = self._lifetime_total + priced
        callback = self._callback
        if callback is not None:
            self._notify(
                callback,
                UsageRecord(
                    caller_id=self.caller_id,
                    usage=priced,
                    timestamp_ms=int(time.time() * 1000),
                ),
            )
        return priced

    def _notify(self, callback: UsageCallback, record: UsageRecord) -> None:
        try:
            outcome = callback(record)
        except Exception:
            logger.error("Usage callback failed", exc_info=True)
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._pending.add(task)
            task.add_done_callback(self._on_callback_done)

    def _on_callback_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Usage callback failed: %s", exc, exc_info=exc)

    async def flush(self) -> None:
        """Wait for scheduled async callbacks to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def estimate_usage(
    prompt_texts: list[str], output_text: str, count: TokenCounter
) -> Usage:
    """Estimate usage when the provider reports none."""
    return Usage(
        input_tokens=sum(count(text) for text in prompt_texts if text),
        output_tokens=count(output_text) if output_text else 0,
    )
