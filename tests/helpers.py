"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off provider subclasses as coverage expands.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import json
from typing import Any

from turnloop.config import Config
from turnloop.models import ToolCallRequest
from turnloop.providers.models import (
    ProviderRequest,
    ProviderResponse,
    StreamEvent,
    ToolCallDelta,
)
from turnloop.retry import RetryPolicy
from turnloop.tools.registry import ToolDefinition
from tests.conftest import FakeProvider

StreamScript = list[StreamEvent | BaseException]


@dataclass
class ScriptedProvider(FakeProvider):
    """FakeProvider that returns scripted responses and streams in order.

    ``script`` feeds ``generate()``; ``stream_script`` feeds ``stream()``.
    Exceptions are raised where they appear. An exhausted script answers
    with plain ``"ok"``.
    """

    script: list[ProviderResponse | BaseException] = field(default_factory=list)
    stream_script: list[StreamScript | BaseException] = field(default_factory=list)
    requests: list[ProviderRequest] = field(default_factory=list)
    generate_calls: int = 0
    stream_calls: int = 0

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        self.generate_calls += 1
        self.requests.append(request)
        if not self.script:
            return ProviderResponse(text="ok", usage={"input_tokens": 1})
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def stream(self, request: ProviderRequest):
        self.stream_calls += 1
        self.requests.append(request)
        if not self.stream_script:
            return _events(text_stream("ok"))
        item = self.stream_script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return _events(item)


@dataclass
class AlwaysToolProvider(FakeProvider):
    """A model that asks for the same tool on every single call."""

    tool_name: str = "get_weather"
    generate_calls: int = 0
    stream_calls: int = 0

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        _ = request
        self.generate_calls += 1
        return tool_call_response(
            self.tool_name, {"city": "Paris"}, call_id=f"call_{self.generate_calls}"
        )

    async def stream(self, request: ProviderRequest):
        _ = request
        self.stream_calls += 1
        return _events(
            tool_call_stream(
                self.tool_name, {"city": "Paris"}, call_id=f"call_{self.stream_calls}"
            )
        )


async def _events(script: StreamScript):
    for item in script:
        await asyncio.sleep(0)
        if isinstance(item, BaseException):
            raise item
        yield item


def text_response(text: str, *, input_tokens: int = 10, output_tokens: int = 5):
    return ProviderResponse(
        text=text,
        usage={"input_tokens": input_tokens, "output_tokens": output_tokens},
        finish_reason="stop",
    )


def tool_call_response(
    name: str,
    arguments: dict[str, Any] | str,
    *,
    call_id: str = "call_1",
    input_tokens: int = 10,
    output_tokens: int = 5,
) -> ProviderResponse:
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return ProviderResponse(
        text="",
        usage={"input_tokens": input_tokens, "output_tokens": output_tokens},
        tool_calls=[ToolCallRequest(id=call_id, name=name, arguments=raw)],
        finish_reason="tool_calls",
    )


def text_stream(
    *parts: str, usage: dict[str, int] | None = None
) -> list[StreamEvent | BaseException]:
    events: list[StreamEvent | BaseException] = [StreamEvent(text=p) for p in parts]
    events.append(
        StreamEvent(
            finish_reason="stop",
            usage=usage or {"input_tokens": 10, "output_tokens": 5},
        )
    )
    return events


def tool_call_stream(
    name: str,
    arguments: dict[str, Any],
    *,
    call_id: str = "call_1",
    usage: dict[str, int] | None = None,
) -> list[StreamEvent | BaseException]:
    """Name in the first event, arguments split over the next two."""
    raw = json.dumps(arguments)
    middle = len(raw) // 2
    return [
        StreamEvent(tool_call_deltas=(ToolCallDelta(index=0, id=call_id, name=name),)),
        StreamEvent(tool_call_deltas=(ToolCallDelta(index=0, arguments=raw[:middle]),)),
        StreamEvent(tool_call_deltas=(ToolCallDelta(index=0, arguments=raw[middle:]),)),
        StreamEvent(
            finish_reason="tool_calls",
            usage=usage or {"input_tokens": 10, "output_tokens": 5},
        ),
    ]


@dataclass
class WeatherTool:
    """Records the arguments it was called with."""

    calls: list[dict[str, Any]] = field(default_factory=list)

    def __call__(self, args: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(args)
        return {"city": args.get("city"), "forecast": "sunny", "temp_c": 21}

    def definition(self, name: str = "get_weather") -> ToolDefinition:
        return ToolDefinition(
            name=name,
            description="Current weather for a city.",
            execute=self,
            parameters={
                "type": "object",
                "properties": {"city": {"type": "string"}},
                "required": ["city"],
            },
        )


def make_config(**overrides: Any) -> Config:
    """Mock-provider config with instant retries."""
    settings: dict[str, Any] = {
        "provider": "mock",
        "model": "mock-model",
        "retry": RetryPolicy(base_delay_ms=0, max_retries=2),
    }
    settings.update(overrides)
    return Config(**settings)


async def collect(stream) -> list[Any]:
    return [chunk async for chunk in stream]
