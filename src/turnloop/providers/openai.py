"""OpenAI provider implementation (Chat Completions API)."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from turnloop.errors import APIError, TurnCancelledError
from turnloop.models import ToolCallRequest
from turnloop.providers._errors import wrap_provider_error
from turnloop.providers.base import ProviderCapabilities
from turnloop.providers.models import (
    ProviderRequest,
    ProviderResponse,
    StreamEvent,
    ToolCallDelta,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from turnloop.models import Message


class OpenAIProvider:
    """OpenAI Chat Completions provider with streamed tool-call deltas."""

    name = "openai"

    def __init__(self, api_key: str, *, base_url: str | None = None) -> None:
        """Initialize with an API key and optional compatible endpoint."""
        self.api_key = api_key
        self.base_url = base_url
        self._client: Any = None

    def _get_client(self) -> Any:
        """Lazily initialize and return the OpenAI client."""
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError as e:
                raise APIError(
                    "openai package not installed",
                    hint="pip install openai",
                ) from e
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Return supported feature flags."""
        return ProviderCapabilities(streaming=True, tool_calls=True)

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        """Run one non-streaming chat completion."""
        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                **_build_create_kwargs(request)
            )
        except (asyncio.CancelledError, TurnCancelledError):
            raise
        except APIError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider=self.name,
                phase="generate",
                allow_network_errors=True,
            ) from e

        choices = getattr(response, "choices", None) or []
        if not choices:
            raise APIError(
                "OpenAI returned no choices",
                retryable=True,
                provider=self.name,
                phase="generate",
            )
        choice = choices[0]
        message = choice.message

        tool_calls = [
            ToolCallRequest(
                id=tc.id,
                name=tc.function.name,
                arguments=tc.function.arguments or "{}",
            )
            for tc in (getattr(message, "tool_calls", None) or [])
            if getattr(tc, "function", None) is not None
        ]
        response_id = getattr(response, "id", None)
        return ProviderResponse(
            text=getattr(message, "content", None) or "",
            usage=_usage_dict(getattr(response, "usage", None)),
            tool_calls=tool_calls or None,
            finish_reason=_normalize_finish_reason(choice.finish_reason),
            response_id=response_id if isinstance(response_id, str) else None,
        )

    async def stream(self, request: ProviderRequest) -> AsyncIterator[StreamEvent]:
        """Open a streaming chat completion.

        Usage arrives in a trailing chunk after the finish reason, so the
        finishing ``StreamEvent`` is emitted once the SDK stream is drained.
        """
        client = self._get_client()
        try:
            raw = await client.chat.completions.create(
                **_build_create_kwargs(request),
                stream=True,
                stream_options={"include_usage": True},
            )
        except (asyncio.CancelledError, TurnCancelledError):
            raise
        except APIError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider=self.name,
                phase="stream",
                allow_network_errors=True,
            ) from e
        return self._events(raw)

    async def _events(self, raw: Any) -> AsyncIterator[StreamEvent]:
        finish_reason: str | None = None
        usage: dict[str, int] | None = None
        try:
            try:
                async for chunk in raw:
                    if getattr(chunk, "usage", None) is not None:
                        usage = _usage_dict(chunk.usage)
                    if not chunk.choices:
                        continue
                    choice = chunk.choices[0]
                    event = _event_from_delta(choice.delta)
                    if event is not None:
                        yield event
                    if choice.finish_reason:
                        finish_reason = choice.finish_reason
            except (asyncio.CancelledError, TurnCancelledError):
                raise
            except APIError:
                raise
            except Exception as e:
                raise wrap_provider_error(
                    e,
                    provider=self.name,
                    phase="stream",
                    allow_network_errors=True,
                ) from e
            yield StreamEvent(
                finish_reason=_normalize_finish_reason(finish_reason) or "stop",
                usage=usage,
            )
        finally:
            close = getattr(raw, "close", None)
            if callable(close):
                await close()

    async def aclose(self) -> None:
        """Close underlying async client resources."""
        client = self._client
        if client is None:
            return
        self._client = None
        await client.close()


def _build_create_kwargs(request: ProviderRequest) -> dict[str, Any]:
    options = request.options
    kwargs: dict[str, Any] = {
        "model": request.model,
        "messages": [
            m
            for m in (_to_openai_message(msg) for msg in request.messages)
            if m is not None
        ],
    }
    if options.temperature is not None:
        kwargs["temperature"] = options.temperature
    if options.top_p is not None:
        kwargs["top_p"] = options.top_p
    if options.max_tokens is not None:
        kwargs["max_completion_tokens"] = options.max_tokens
    if options.stop:
        kwargs["stop"] = list(options.stop)

    if request.tools:
        kwargs["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": t["name"],
                    "description": t.get("description", ""),
                    "parameters": t.get("parameters")
                    or {"type": "object", "properties": {}},
                },
            }
            for t in request.tools
        ]
        choice = options.tool_choice
        if isinstance(choice, str):
            kwargs["tool_choice"] = choice
        elif isinstance(choice, dict):
            kwargs["tool_choice"] = {
                "type": "function",
                "function": {"name": choice["name"]},
            }
    return kwargs


def _to_openai_message(message: Message) -> dict[str, Any] | None:
    if message.role == "tool":
        # Synthetic markers without a call id are not part of the wire history.
        if not message.tool_call_id:
            return None
        return {
            "role": "tool",
            "tool_call_id": message.tool_call_id,
            "content": message.content or "",
        }

    data: dict[str, Any] = {"role": message.role, "content": message.content}
    if message.name and message.role in {"user", "system", "developer"}:
        data["name"] = message.name
    if message.role == "assistant" and message.tool_calls:
        data["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {"name": tc.name, "arguments": tc.arguments_json},
            }
            for tc in message.tool_calls
        ]
    elif data["content"] is None:
        data["content"] = ""
    return data


def _event_from_delta(delta: Any) -> StreamEvent | None:
    if delta is None:
        return None
    text = getattr(delta, "content", None) or ""
    fragments: list[ToolCallDelta] = []
    for tc in getattr(delta, "tool_calls", None) or ():
        function = getattr(tc, "function", None)
        fragments.append(
            ToolCallDelta(
                index=getattr(tc, "index", None),
                id=getattr(tc, "id", None),
                name=getattr(function, "name", None) if function else None,
                arguments=(getattr(function, "arguments", None) or "")
                if function
                else "",
            )
        )
    if not text and not fragments:
        return None
    return StreamEvent(text=text, tool_call_deltas=tuple(fragments))


def _usage_dict(usage_raw: Any) -> dict[str, int]:
    if usage_raw is None:
        return {}
    usage = {
        "input_tokens": int(getattr(usage_raw, "prompt_tokens", 0) or 0),
        "output_tokens": int(getattr(usage_raw, "completion_tokens", 0) or 0),
    }
    prompt_details = getattr(usage_raw, "prompt_tokens_details", None)
    cached = getattr(prompt_details, "cached_tokens", None) if prompt_details else None
    if cached is not None:
        usage["cached_input_tokens"] = int(cached)
    completion_details = getattr(usage_raw, "completion_tokens_details", None)
    reasoning = (
        getattr(completion_details, "reasoning_tokens", None)
        if completion_details
        else None
    )
    if reasoning is not None:
        # Chat Completions counts reasoning inside completion_tokens.
        usage["output_tokens"] -= int(reasoning)
        usage["reasoning_tokens"] = int(reasoning)
    return usage


def _normalize_finish_reason(reason: str | None) -> str | None:
    if reason == "function_call":
        return "tool_calls"
    return reason
