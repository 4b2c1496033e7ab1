"""Mock provider for offline use and testing."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import TYPE_CHECKING

from turnloop.providers.base import ProviderCapabilities
from turnloop.providers.models import ProviderRequest, ProviderResponse, StreamEvent
from turnloop.tokens import estimate_tokens

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable, Sequence


class MockProvider:
    """Deterministic provider that echoes the last user message.

    Pass ``responses`` and/or ``streams`` to script replies; each call pops
    the next item. Exceptions in a script are raised at that point: a bare
    exception in ``streams`` fails the stream open, an exception inside an
    event sequence fails mid-stream. Once a script runs dry the provider
    falls back to echoing.
    """

    name = "mock"

    def __init__(
        self,
        responses: Iterable[ProviderResponse | BaseException] = (),
        streams: Iterable[Sequence[StreamEvent | BaseException] | BaseException] = (),
    ) -> None:
        self._responses = deque(responses)
        self._streams = deque(streams)
        self.requests: list[ProviderRequest] = []

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Return supported feature flags."""
        return ProviderCapabilities(streaming=True, tool_calls=True)

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        """Return the next scripted response, or an echo of the prompt."""
        self.requests.append(request)
        if self._responses:
            item = self._responses.popleft()
            if isinstance(item, BaseException):
                raise item
            return item
        text = f"echo: {_last_user_text(request)[:100]}"
        return ProviderResponse(
            text=text,
            usage=_echo_usage(request, text),
            finish_reason="stop",
        )

    async def stream(self, request: ProviderRequest) -> AsyncIterator[StreamEvent]:
        """Open the next scripted stream, or an echo split into words."""
        self.requests.append(request)
        if self._streams:
            item = self._streams.popleft()
            if isinstance(item, BaseException):
                raise item
            return _replay(list(item))

        text = f"echo: {_last_user_text(request)[:100]}"
        words = text.split(" ")
        events: list[StreamEvent | BaseException] = [
            StreamEvent(text=word if i == 0 else f" {word}")
            for i, word in enumerate(words)
        ]
        events.append(
            StreamEvent(finish_reason="stop", usage=_echo_usage(request, text))
        )
        return _replay(events)

    async def aclose(self) -> None:
        """Nothing to release; present for parity with real adapters."""


async def _replay(
    events: list[StreamEvent | BaseException],
) -> AsyncIterator[StreamEvent]:
    for event in events:
        # Yield control so consumers observe genuinely incremental delivery.
        await asyncio.sleep(0)
        if isinstance(event, BaseException):
            raise event
        yield event


def _last_user_text(request: ProviderRequest) -> str:
    for message in reversed(request.messages):
        if message.role == "user" and message.content:
            return message.content
    return ""


def _echo_usage(request: ProviderRequest, text: str) -> dict[str, int]:
    prompt = sum(estimate_tokens(m.content or "") for m in request.messages)
    return {"input_tokens": prompt, "output_tokens": estimate_tokens(text)}
