"""Caller: the public entry point for calls, streams, tools and history.

One ``Caller`` owns one conversation. Overlapping ``call``/``stream``
invocations on the same instance are serialized by a per-instance lock, so
they never interleave writes to the shared history.
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from dataclasses import replace
import logging
from typing import TYPE_CHECKING, Any
import uuid

from turnloop.errors import ConfigurationError
from turnloop.history import ConversationHistory, truncation_notice
from turnloop.models import Message, TurnResult, Usage
from turnloop.options import Options
from turnloop.orchestrator import InvocationContext, ToolLoopOrchestrator
from turnloop.providers.registry import get_provider
from turnloop.sequencer import ChunkSequencer, chunk_metadata
from turnloop.splitter import DEFAULT_OVERHEAD_TOKENS, split_request
from turnloop.tokens import count_message_tokens, estimate_tokens
from turnloop.tools.executor import ToolExecutor
from turnloop.tools.registry import ToolDefinition, ToolRegistry
from turnloop.turn import HISTORY_BUFFER_TOKENS, TurnExecutor
from turnloop.usage import UsageLedger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable
    from types import TracebackType

    from turnloop.cancellation import CancellationToken
    from turnloop.config import Config
    from turnloop.providers.base import Provider
    from turnloop.tokens import TokenCounter
    from turnloop.usage import UsageCallback

logger = logging.getLogger(__name__)


class Caller:
    """Conversation-scoped LLM caller.

    Example:
        config = Config(provider="openai", model="gpt-4o-mini")
        async with Caller(config, tools=[weather_tool]) as caller:
            results = await caller.call("What's the weather in Paris?")
            print(results[-1].content)
    """

    def __init__(
        self,
        config: Config,
        *,
        provider: Provider | None = None,
        tools: Iterable[ToolDefinition] = (),
        options: Options | None = None,
        usage_callback: UsageCallback | None = None,
        caller_id: str | None = None,
        count_tokens: TokenCounter | None = None,
        history: Iterable[Message] = (),
    ) -> None:
        self.config = config
        self.provider = provider if provider is not None else get_provider(config)
        self.options = options or Options()
        self.count_tokens = count_tokens or estimate_tokens

        self._history = ConversationHistory(
            system_message=config.system_message, messages=history
        )
        self._registry = ToolRegistry(tools)
        self._ledger = UsageLedger(
            caller_id or str(uuid.uuid4()),
            callback=usage_callback,
            pricing=config.pricing,
        )
        self._turns = TurnExecutor(
            self.provider,
            ledger=self._ledger,
            retry_policy=config.retry,
            tools=self._registry,
            count_tokens=self.count_tokens,
            max_request_tokens=config.max_request_tokens,
            max_response_tokens=config.max_response_tokens,
        )
        self._orchestrator = ToolLoopOrchestrator(
            self._turns, ToolExecutor(self._registry)
        )
        self._sequencer = ChunkSequencer(config.max_chunks)
        self._lock = asyncio.Lock()
        self._last_usage = Usage()

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    async def call(
        self,
        message: str,
        *,
        data: Any = None,
        ending: str | None = None,
        options: Options | None = None,
        cancel: CancellationToken | None = None,
    ) -> list[TurnResult]:
        """Run a full turn per input piece; return one final result per piece."""
        async with self._lock:
            opts = self.options.merged(options)
            pieces = self._split(message, data, ending, opts)
            ctx = self._begin(opts, cancel)

            async def run_piece(piece: str, index: int, total: int) -> TurnResult:
                self._history.append(Message(role="user", content=piece))
                result = await self._orchestrator.run_turn(ctx)
                return result.with_metadata(**chunk_metadata(index, total))

            try:
                return await self._sequencer.process_all(pieces, run_piece)
            finally:
                self._last_usage = self._ledger.invocation_total

    async def stream(
        self,
        message: str,
        *,
        data: Any = None,
        ending: str | None = None,
        options: Options | None = None,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[TurnResult]:
        """Stream every piece and every tool round as one sequence of chunks.

        Close the iterator (or exhaust it) to release the caller for the
        next invocation.
        """
        async with self._lock:
            opts = self.options.merged(options)
            pieces = self._split(message, data, ending, opts)
            ctx = self._begin(opts, cancel)

            async def stream_piece(
                piece: str, index: int, total: int
            ) -> AsyncIterator[TurnResult]:
                self._history.append(Message(role="user", content=piece))
                async with aclosing(self._orchestrator.stream_turn(ctx)) as chunks:
                    async for chunk in chunks:
                        yield chunk

            try:
                async with aclosing(
                    self._sequencer.stream_all(pieces, stream_piece)
                ) as merged:
                    async for chunk in merged:
                        yield chunk
            finally:
                self._last_usage = self._ledger.invocation_total

    def _begin(
        self, options: Options, cancel: CancellationToken | None
    ) -> InvocationContext:
        self._ledger.begin_invocation()
        return InvocationContext.start(
            self._history,
            model=self.config.model,
            max_tool_iterations=self.config.max_tool_iterations,
            options=options,
            system_message=self._history.system_message or self.config.system_message,
            cancel=cancel,
        )

    def _split(
        self, message: str, data: Any, ending: str | None, options: Options
    ) -> list[str]:
        reserve = options.max_tokens or self.config.max_response_tokens
        budget = self.config.max_request_tokens - reserve - self._history_cost(options)
        if budget < 1:
            raise ConfigurationError(
                "Conversation history already fills the request budget",
                hint="Trim the history, pass Options(history_mode='dynamic'), "
                "or raise max_request_tokens.",
            )
        return split_request(
            message,
            data,
            ending,
            token_budget=budget,
            count_tokens=self.count_tokens,
            overhead_tokens=DEFAULT_OVERHEAD_TOKENS,
        )

    def _history_cost(self, options: Options) -> int:
        """Tokens of stored history that every piece's request will carry."""
        messages = self._history.snapshot()
        if options.history_mode == "full":
            return count_message_tokens(messages, self.count_tokens)
        # Earlier exchanges are dropped before sending; only the system
        # message (and, when dynamic, the truncation notice) is certain.
        pinned = [m for m in messages[:1] if m.role == "system"]
        if options.history_mode == "stateless":
            return count_message_tokens(pinned, self.count_tokens)
        pinned.append(truncation_notice())
        return count_message_tokens(pinned, self.count_tokens) + HISTORY_BUFFER_TOKENS

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def add_tool(self, tool: ToolDefinition) -> None:
        self._ensure_idle("add a tool")
        self._registry.add(tool)

    def add_tools(self, tools: Iterable[ToolDefinition]) -> None:
        self._ensure_idle("add tools")
        for tool in tools:
            self._registry.add(tool)

    def remove_tool(self, name: str) -> bool:
        self._ensure_idle("remove a tool")
        return self._registry.remove(name)

    def get_tool(self, name: str) -> ToolDefinition | None:
        return self._registry.get(name)

    def list_tools(self) -> list[ToolDefinition]:
        return self._registry.list()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_history(self) -> list[Message]:
        return self._history.snapshot()

    def set_history(self, messages: Iterable[Message]) -> None:
        """Replace the conversation; keeps the current system message if none given."""
        self._ensure_idle("replace history")
        system = self._history.system_message
        self._history.replace(messages)
        if self._history.system_message is None and system is not None:
            self._history.rotate_system_message(system, preserve=True)

    def clear_history(self) -> None:
        """Drop every message except the system message."""
        self._ensure_idle("clear history")
        self._history.clear(keep_system=True)

    def rotate_system_message(self, text: str, *, preserve: bool = True) -> None:
        self._ensure_idle("change the system message")
        self._history.rotate_system_message(text, preserve=preserve)

    # ------------------------------------------------------------------
    # Usage and settings
    # ------------------------------------------------------------------

    @property
    def caller_id(self) -> str:
        return self._ledger.caller_id

    @caller_id.setter
    def caller_id(self, value: str) -> None:
        self._ledger.caller_id = value

    @property
    def last_usage(self) -> Usage:
        """Total usage of the most recent call or stream."""
        return self._last_usage

    @property
    def total_usage(self) -> Usage:
        return self._ledger.lifetime_total

    def set_usage_callback(self, callback: UsageCallback | None) -> None:
        self._ledger.set_callback(callback)

    def update_options(self, **changes: Any) -> None:
        """Change default options for later invocations."""
        self.options = replace(self.options, **changes)

    def _ensure_idle(self, action: str) -> None:
        if self._lock.locked():
            raise ConfigurationError(
                f"Cannot {action} while a call or stream is in progress",
                hint="Wait for the current invocation to finish first.",
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        """Wait for pending usage callbacks and close the provider."""
        await self._ledger.flush()
        aclose = getattr(self.provider, "aclose", None)
        if callable(aclose):
            try:
                await aclose()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # Cleanup should never mask the primary failure.
                logger.warning("Provider cleanup failed: %s", exc)

    async def __aenter__(self) -> Caller:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()
