"""Provider abstraction, built-in adapters and the provider registry."""

from __future__ import annotations

from turnloop.providers.base import Provider, ProviderCapabilities
from turnloop.providers.mock import MockProvider
from turnloop.providers.models import (
    ProviderRequest,
    ProviderResponse,
    StreamEvent,
    ToolCallDelta,
)
from turnloop.providers.registry import (
    available_providers,
    get_provider,
    register_provider,
)

__all__ = [
    "MockProvider",
    "Provider",
    "ProviderCapabilities",
    "ProviderRequest",
    "ProviderResponse",
    "StreamEvent",
    "ToolCallDelta",
    "available_providers",
    "get_provider",
    "register_provider",
]
