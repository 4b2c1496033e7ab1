"""Provider protocol: minimal interface for chat providers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from turnloop.providers.models import ProviderRequest, ProviderResponse, StreamEvent


@dataclass(frozen=True)
class ProviderCapabilities:
    """Feature flags exposed by providers."""

    streaming: bool = True
    tool_calls: bool = True


@runtime_checkable
class Provider(Protocol):
    """Minimal provider protocol: generate and stream.

    Adapters raise ``APIError`` subclasses with ``retryable`` set, which is
    all the retry loop looks at.
    """

    name: str

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        """Run one non-streaming chat call."""
        ...

    async def stream(self, request: ProviderRequest) -> AsyncIterator[StreamEvent]:
        """Open a stream; the returned iterator yields events in order."""
        ...

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Feature capabilities for option validation."""
        ...
