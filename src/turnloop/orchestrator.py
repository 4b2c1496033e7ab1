"""The tool loop: call, run requested tools, call again, until done.

All mutable state for one top-level invocation lives in an explicit
``InvocationContext`` (history handle, iteration counter, cancellation
token) that is threaded through every round.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
from typing import TYPE_CHECKING

from turnloop.errors import InternalError, IterationLimitExceeded
from turnloop.models import Message, TurnResult, Usage
from turnloop.options import Options
from turnloop.tools.executor import IterationCounter

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from turnloop.cancellation import CancellationToken
    from turnloop.history import ConversationHistory
    from turnloop.tools.executor import ToolExecutor, ToolRound
    from turnloop.turn import TurnExecutor

    Invoker = Callable[["InvocationContext"], Awaitable[TurnResult]]

logger = logging.getLogger(__name__)


@dataclass
class InvocationContext:
    """Per-invocation state shared by every round and every input piece."""

    history: ConversationHistory
    model: str
    counter: IterationCounter
    options: Options = field(default_factory=Options)
    system_message: str | None = None
    cancel: CancellationToken | None = None
    rounds: int = 0

    @classmethod
    def start(
        cls,
        history: ConversationHistory,
        *,
        model: str,
        max_tool_iterations: int,
        options: Options | None = None,
        system_message: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> InvocationContext:
        """Fresh context: the iteration counter starts at zero."""
        return cls(
            history=history,
            model=model,
            counter=IterationCounter(limit=max_tool_iterations),
            options=options or Options(),
            system_message=system_message,
            cancel=cancel,
        )


def _limit_exceeded(result: TurnResult, limit: int) -> TurnResult:
    return replace(
        result,
        is_complete=True,
        metadata={
            **result.metadata,
            "iteration_limit_exceeded": True,
            "error": str(IterationLimitExceeded(limit)),
        },
    )


def _sum_usage(total: Usage | None, usage: Usage | None) -> Usage | None:
    if usage is None:
        return total
    return usage if total is None else total + usage


class ToolLoopOrchestrator:
    """Drives rounds until the model stops asking for tools."""

    def __init__(self, turns: TurnExecutor, tools: ToolExecutor) -> None:
        self.turns = turns
        self.tools = tools

    def executor_invoker(self) -> Invoker:
        """Invoker that runs one non-streaming round from the context."""

        async def invoke(ctx: InvocationContext) -> TurnResult:
            return await self.turns.execute(
                ctx.model,
                ctx.system_message,
                ctx.history.snapshot(),
                ctx.options,
                cancel=ctx.cancel,
            )

        return invoke

    def drained_stream_invoker(self) -> Invoker:
        """Invoker that streams a round but returns only once fully drained."""

        async def invoke(ctx: InvocationContext) -> TurnResult:
            final: TurnResult | None = None
            async for chunk in self._stream_round(ctx):
                if chunk.is_complete:
                    final = chunk
            if final is None:
                raise InternalError("Stream round ended without a final chunk")
            return replace(final, content=final.metadata.get("content_text", ""))

        return invoke

    async def run_turn(
        self, ctx: InvocationContext, invoke: Invoker | None = None
    ) -> TurnResult:
        """Run rounds until the reply has no tool calls; return the final reply.

        The returned result's ``usage`` is the sum over every round of this
        turn.
        """
        invoke = invoke or self.executor_invoker()
        result = await self._invoke(ctx, invoke)
        turn_usage = result.usage

        while result.tool_calls:
            tool_round = await self.tools.run_round(
                result.tool_calls, counter=ctx.counter, cancel=ctx.cancel
            )
            if tool_round.iteration_limit_exceeded:
                logger.warning(
                    "Stopping tool loop after %d round(s)", ctx.counter.count
                )
                return replace(
                    _limit_exceeded(result, ctx.counter.limit), usage=turn_usage
                )
            self._append_round(ctx, result, tool_round)
            result = await self._invoke(ctx, invoke)
            turn_usage = _sum_usage(turn_usage, result.usage)

        ctx.history.append(result.to_message())
        return replace(result, usage=turn_usage)

    async def stream_turn(self, ctx: InvocationContext) -> AsyncIterator[TurnResult]:
        """Stream every round of one turn as a single logical stream.

        Each round opens a new provider stream. Chunks carry ``round`` in
        their metadata; a round that ends in tool calls closes with a chunk
        marked ``round_complete`` (and ``is_complete=False``). Only the very
        last chunk of the turn has ``is_complete=True``.
        """
        turn_usage: Usage | None = None
        while True:
            round_index = ctx.rounds
            final: TurnResult | None = None
            async for chunk in self._stream_round(ctx):
                if chunk.is_complete:
                    final = chunk
                    continue
                yield chunk.with_metadata(round=round_index)
            if final is None:
                raise InternalError("Stream round ended without a final chunk")
            ctx.rounds += 1
            turn_usage = _sum_usage(turn_usage, final.usage)
            final = replace(final, usage=turn_usage).with_metadata(round=round_index)

            if not final.tool_calls:
                content_text = final.metadata.get("content_text", "")
                ctx.history.append(
                    Message(role="assistant", content=content_text or None)
                )
                yield final
                return

            tool_round = await self.tools.run_round(
                final.tool_calls, counter=ctx.counter, cancel=ctx.cancel
            )
            if tool_round.iteration_limit_exceeded:
                logger.warning(
                    "Stopping tool loop after %d round(s)", ctx.counter.count
                )
                yield _limit_exceeded(final, ctx.counter.limit)
                return

            yield replace(final, is_complete=False).with_metadata(round_complete=True)
            self._append_round(
                ctx,
                replace(final, content=final.metadata.get("content_text", "")),
                tool_round,
            )

    async def _invoke(self, ctx: InvocationContext, invoke: Invoker) -> TurnResult:
        if ctx.cancel is not None:
            ctx.cancel.raise_if_cancelled()
        result = await invoke(ctx)
        ctx.rounds += 1
        return result

    async def _stream_round(self, ctx: InvocationContext) -> AsyncIterator[TurnResult]:
        if ctx.cancel is not None:
            ctx.cancel.raise_if_cancelled()
        stream = self.turns.stream(
            ctx.model,
            ctx.system_message,
            ctx.history.snapshot(),
            ctx.options,
            cancel=ctx.cancel,
        )
        try:
            async for chunk in stream:
                yield chunk
        finally:
            await stream.aclose()

    @staticmethod
    def _append_round(
        ctx: InvocationContext, result: TurnResult, tool_round: ToolRound
    ) -> None:
        ctx.history.append(result.to_message())
        ctx.history.extend(tool_round.messages)
        logger.debug(
            "Tool round %d appended %d result(s)",
            ctx.counter.count,
            len(tool_round.messages),
        )
