"""Single-round execution against a provider.

``TurnExecutor`` makes exactly one logical provider call (plus retries) and
turns the reply into a ``TurnResult``. Running the tools it asks for is the
orchestrator's job.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
import logging
from typing import TYPE_CHECKING
import uuid

from turnloop.cancellation import guarded
from turnloop.errors import APIError, ContentRetryError, TurnCancelledError
from turnloop.history import fit_to_budget, stateless_view
from turnloop.models import (
    FINISH_STOP,
    FINISH_TOOL_CALLS,
    Message,
    ToolCallRequest,
    TurnResult,
    Usage,
    parse_tool_arguments,
)
from turnloop.options import Options
from turnloop.providers._errors import wrap_provider_error
from turnloop.providers.models import ProviderRequest
from turnloop.retry import RetryPolicy, retry_async
from turnloop.streaming import StreamAggregator
from turnloop.tokens import estimate_tokens
from turnloop.usage import estimate_usage

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from turnloop.cancellation import CancellationToken
    from turnloop.providers.base import Provider
    from turnloop.providers.models import ProviderResponse, StreamEvent
    from turnloop.tokens import TokenCounter
    from turnloop.tools.registry import ToolRegistry
    from turnloop.usage import UsageLedger

logger = logging.getLogger(__name__)

# Short replies containing one of these are treated as a transient refusal.
_REFUSAL_PHRASES: tuple[str, ...] = (
    "i cannot assist with that",
    "i cannot provide that information",
    "i cannot provide this information",
)
_REFUSAL_MAX_CHARS = 200

# Slack for token-count estimation error when trimming history to the budget.
HISTORY_BUFFER_TOKENS = 50


def looks_like_refusal(text: str) -> bool:
    if not text or len(text) > _REFUSAL_MAX_CHARS:
        return False
    lowered = text.lower()
    return any(phrase in lowered for phrase in _REFUSAL_PHRASES)


def _assemble_tool_call(call: ToolCallRequest) -> ToolCallRequest:
    """Parse raw JSON arguments when possible; keep the raw text otherwise."""
    call_id = call.id or f"call_{uuid.uuid4().hex[:12]}"
    arguments = call.arguments
    if isinstance(arguments, str):
        try:
            arguments = parse_tool_arguments(arguments)
        except ValueError:
            logger.debug("Tool call %s has unparseable arguments", call_id)
    return ToolCallRequest(id=call_id, name=call.name, arguments=arguments)


class TurnExecutor:
    """Run one provider round through the retry policy and usage ledger."""

    def __init__(
        self,
        provider: Provider,
        *,
        ledger: UsageLedger,
        retry_policy: RetryPolicy | None = None,
        tools: ToolRegistry | None = None,
        count_tokens: TokenCounter = estimate_tokens,
        max_request_tokens: int | None = None,
        max_response_tokens: int = 4_096,
    ) -> None:
        self.provider = provider
        self.ledger = ledger
        self.retry_policy = retry_policy or RetryPolicy()
        self.tools = tools
        self.count_tokens = count_tokens
        #: Context window used by ``history_mode="dynamic"``; None sends all.
        self.max_request_tokens = max_request_tokens
        self.max_response_tokens = max_response_tokens

    @property
    def provider_name(self) -> str:
        return getattr(self.provider, "name", type(self.provider).__name__)

    def build_request(
        self,
        model: str,
        system_message: str | None,
        history: Sequence[Message],
        options: Options | None = None,
    ) -> ProviderRequest:
        """Build provider-neutral parameters, prepending the system message.

        ``options.history_mode`` selects which part of *history* is sent.
        """
        options = options or Options()
        messages = tuple(history)
        has_system = bool(messages) and messages[0].role == "system"
        if system_message and not has_system:
            messages = (Message(role="system", content=system_message), *messages)
        messages = self._history_view(messages, options)

        tools = None
        if self.tools is not None and len(self.tools) and options.tools_enabled:
            tools = self.tools.schemas()
        return ProviderRequest(
            model=model, messages=messages, options=options, tools=tools
        )

    def _history_view(
        self, messages: tuple[Message, ...], options: Options
    ) -> tuple[Message, ...]:
        if options.history_mode == "stateless":
            return tuple(stateless_view(messages))
        if options.history_mode == "dynamic" and self.max_request_tokens is not None:
            reserve = options.max_tokens or self.max_response_tokens
            budget = self.max_request_tokens - reserve - HISTORY_BUFFER_TOKENS
            return tuple(fit_to_budget(messages, budget, self.count_tokens))
        return messages

    async def execute(
        self,
        model: str,
        system_message: str | None,
        history: Sequence[Message],
        options: Options | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> TurnResult:
        request = self.build_request(model, system_message, history, options)
        logger.debug(
            "Calling %s model=%s with %d message(s)",
            self.provider_name,
            model,
            len(request.messages),
        )
        response = await retry_async(
            lambda: self._generate(request),
            policy=self.retry_policy,
            cancel=cancel,
            operation=f"{self.provider_name} generate",
        )

        tool_calls = tuple(_assemble_tool_call(tc) for tc in response.tool_calls or ())
        finish_reason = response.finish_reason or (
            FINISH_TOOL_CALLS if tool_calls else FINISH_STOP
        )
        usage = self._record_usage(
            Usage.from_provider(response.usage), request, response.text
        )
        metadata = {"response_id": response.response_id} if response.response_id else {}
        return TurnResult(
            content=response.text,
            is_complete=True,
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            usage=usage,
            metadata=metadata,
        )

    async def stream(
        self,
        model: str,
        system_message: str | None,
        history: Sequence[Message],
        options: Options | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[TurnResult]:
        """Stream one round; the last chunk yielded has ``is_complete=True``."""
        request = self.build_request(model, system_message, history, options)
        logger.debug(
            "Opening %s stream model=%s with %d message(s)",
            self.provider_name,
            model,
            len(request.messages),
        )
        events = await retry_async(
            lambda: self._open_stream(request),
            policy=self.retry_policy,
            cancel=cancel,
            operation=f"{self.provider_name} stream",
        )

        aggregator = StreamAggregator()
        iterator = events.__aiter__()
        try:
            while True:
                try:
                    event = await guarded(iterator.__anext__(), cancel)
                except StopAsyncIteration:
                    break
                except (asyncio.CancelledError, TurnCancelledError) as e:
                    aggregator.fail(e)
                    raise
                except APIError as e:
                    aggregator.fail(e)
                    raise wrap_provider_error(
                        e, provider=self.provider_name, phase="stream"
                    )
                except Exception as e:
                    aggregator.fail(e)
                    raise wrap_provider_error(
                        e, provider=self.provider_name, phase="stream"
                    ) from e

                chunk = aggregator.feed(event)
                if chunk is None:
                    continue
                if chunk.is_complete:
                    yield self._finalize_stream(chunk, aggregator, request)
                    return
                yield chunk

            yield self._finalize_stream(aggregator.finish(), aggregator, request)
        finally:
            aclose = getattr(iterator, "aclose", None)
            if callable(aclose):
                await aclose()

    async def _generate(self, request: ProviderRequest) -> ProviderResponse:
        try:
            response = await self.provider.generate(request)
        except (asyncio.CancelledError, TurnCancelledError):
            raise
        except APIError as e:
            raise wrap_provider_error(e, provider=self.provider_name, phase="generate")
        except Exception as e:
            raise wrap_provider_error(
                e, provider=self.provider_name, phase="generate"
            ) from e

        if (
            request.options.retry_on_refusal
            and not response.tool_calls
            and looks_like_refusal(response.text)
        ):
            raise ContentRetryError(
                f"Model reply looks like a refusal: {response.text!r}",
                provider=self.provider_name,
                phase="generate",
            )
        return response

    async def _open_stream(
        self, request: ProviderRequest
    ) -> AsyncIterator[StreamEvent]:
        try:
            return await self.provider.stream(request)
        except (asyncio.CancelledError, TurnCancelledError):
            raise
        except APIError as e:
            raise wrap_provider_error(e, provider=self.provider_name, phase="stream")
        except Exception as e:
            raise wrap_provider_error(
                e, provider=self.provider_name, phase="stream"
            ) from e

    def _finalize_stream(
        self,
        chunk: TurnResult,
        aggregator: StreamAggregator,
        request: ProviderRequest,
    ) -> TurnResult:
        usage = self._record_usage(chunk.usage, request, aggregator.content)
        return replace(chunk, usage=usage)

    def _record_usage(
        self, usage: Usage | None, request: ProviderRequest, output_text: str
    ) -> Usage:
        if usage is None:
            usage = estimate_usage(
                [m.content or "" for m in request.messages],
                output_text,
                self.count_tokens,
            )
        return self.ledger.record(usage)
