"""Domain models for the provider transport layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from turnloop.models import Message, ToolCallRequest
    from turnloop.options import Options


@dataclass(frozen=True)
class ProviderRequest:
    """A provider-neutral request for one chat call.

    ``messages`` already includes the system message at position 0 when
    there is one.
    """

    model: str
    messages: tuple[Message, ...]
    options: Options
    tools: list[dict[str, Any]] | None = None


@dataclass
class ProviderResponse:
    """A standardized response from a non-streaming provider call."""

    text: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    #: Arguments may still be a raw JSON string; parsing happens downstream.
    tool_calls: list[ToolCallRequest] | None = None
    finish_reason: str | None = None
    response_id: str | None = None


@dataclass(frozen=True)
class ToolCallDelta:
    """One streamed fragment of a tool call.

    Fragments for the same call share ``index`` (or ``id`` when a provider
    does not number its calls). ``name`` and ``arguments`` may arrive in
    separate fragments.
    """

    index: int | None = None
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass(frozen=True)
class StreamEvent:
    """One incremental event from a provider stream.

    A non-None ``finish_reason`` marks the finishing event; adapters emit
    exactly one and attach final usage to it when the provider reports any.
    """

    text: str = ""
    tool_call_deltas: tuple[ToolCallDelta, ...] = ()
    finish_reason: str | None = None
    usage: dict[str, int] | None = None
