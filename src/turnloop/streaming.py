"""Streaming delta aggregation.

``StreamAggregator`` is an explicit state machine fed one provider event at a
time. Each transition yields zero or one output chunk:

- text deltas are emitted immediately, never buffered;
- tool-call fragments are accumulated by index (or id) and surfaced only as
  a partial snapshot until the finishing event;
- the finishing event produces the terminal chunk with parsed tool calls
  and final usage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import enum
import logging
from typing import TYPE_CHECKING
import uuid

from turnloop.errors import InternalError, StreamDecodeError
from turnloop.models import (
    FINISH_STOP,
    FINISH_TOOL_CALLS,
    PartialToolCall,
    ToolCallRequest,
    TurnResult,
    Usage,
    parse_tool_arguments,
)

if TYPE_CHECKING:
    from turnloop.providers.models import StreamEvent, ToolCallDelta

logger = logging.getLogger(__name__)


class StreamState(enum.Enum):
    AWAITING_FIRST_CHUNK = "awaiting_first_chunk"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class _ToolCallBuffer:
    position: int
    id: str | None = None
    name: str | None = None
    fragments: list[str] = field(default_factory=list)

    @property
    def arguments_text(self) -> str:
        return "".join(self.fragments)

    def snapshot(self) -> PartialToolCall:
        return PartialToolCall(
            index=self.position,
            id=self.id,
            name=self.name,
            arguments_text=self.arguments_text,
        )


class StreamAggregator:
    """Assemble one provider stream into output chunks."""

    def __init__(self) -> None:
        self._state = StreamState.AWAITING_FIRST_CHUNK
        self._text: list[str] = []
        self._buffers: dict[int | str, _ToolCallBuffer] = {}
        self._ids: dict[str, int | str] = {}
        self._last_key: int | str | None = None
        self._usage: dict[str, int] | None = None
        self.error: BaseException | None = None

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def content(self) -> str:
        """All text received so far."""
        return "".join(self._text)

    @property
    def usage(self) -> Usage | None:
        return Usage.from_provider(self._usage)

    def feed(self, event: StreamEvent) -> TurnResult | None:
        """Apply one event; return the chunk it produces, if any."""
        if self._state in (StreamState.COMPLETED, StreamState.FAILED):
            raise InternalError(f"Stream event received after {self._state.value}")
        self._state = StreamState.STREAMING

        if event.usage:
            self._usage = dict(event.usage)
        if event.text:
            self._text.append(event.text)
        for delta in event.tool_call_deltas:
            self._accumulate(delta)

        if event.finish_reason is not None:
            return self._complete(event.text, event.finish_reason)
        if not event.text and not event.tool_call_deltas:
            return None

        partials: tuple[PartialToolCall, ...] = ()
        metadata: dict[str, int] = {}
        if event.tool_call_deltas:
            partials = tuple(b.snapshot() for b in self._buffers.values())
            metadata = {"tool_calls_in_progress": len(self._buffers)}
        return TurnResult(
            content=event.text,
            is_complete=False,
            partial_tool_calls=partials,
            metadata=metadata,
        )

    def finish(self) -> TurnResult:
        """Complete a stream whose source ended without a finishing event."""
        if self._state in (StreamState.COMPLETED, StreamState.FAILED):
            raise InternalError(f"finish() called after {self._state.value}")
        reason = FINISH_TOOL_CALLS if self._buffers else FINISH_STOP
        logger.debug("Stream ended without finish reason; assuming %r", reason)
        return self._complete("", reason)

    def fail(self, exc: BaseException) -> None:
        self._state = StreamState.FAILED
        self.error = exc

    def _buffer_for(
        self, delta: ToolCallDelta
    ) -> tuple[int | str, _ToolCallBuffer]:
        key: int | str
        if delta.id is not None and delta.id in self._ids:
            key = self._ids[delta.id]
        elif delta.index is not None:
            key = delta.index
        elif delta.id is not None:
            key = f"id:{delta.id}"
        elif self._last_key is not None:
            key = self._last_key
        else:
            key = 0

        buffer = self._buffers.get(key)
        if buffer is None:
            buffer = _ToolCallBuffer(position=len(self._buffers))
            self._buffers[key] = buffer
        self._last_key = key
        return key, buffer

    def _accumulate(self, delta: ToolCallDelta) -> None:
        key, buffer = self._buffer_for(delta)
        if delta.id and buffer.id is None:
            buffer.id = delta.id
            self._ids[delta.id] = key
        if delta.name and not buffer.name:
            buffer.name = delta.name
        if delta.arguments:
            buffer.fragments.append(delta.arguments)

    def _assemble(self) -> tuple[ToolCallRequest, ...]:
        calls: list[ToolCallRequest] = []
        for buffer in self._buffers.values():
            call_id = buffer.id or f"call_{uuid.uuid4().hex[:12]}"
            if not buffer.name:
                raise StreamDecodeError(
                    f"Tool call {call_id} finished without a name",
                    tool_call_id=call_id,
                    raw_arguments=buffer.arguments_text,
                )
            try:
                arguments = parse_tool_arguments(buffer.arguments_text)
            except ValueError as e:
                raise StreamDecodeError(
                    f"Malformed arguments for tool {buffer.name!r} ({call_id}): {e}",
                    hint="The provider streamed tool-call arguments that are not a "
                    "JSON object.",
                    tool_call_id=call_id,
                    raw_arguments=buffer.arguments_text,
                ) from e
            calls.append(
                ToolCallRequest(id=call_id, name=buffer.name, arguments=arguments)
            )
        return tuple(calls)

    def _complete(self, text: str, finish_reason: str) -> TurnResult:
        tool_calls: tuple[ToolCallRequest, ...] = ()
        if finish_reason == FINISH_TOOL_CALLS:
            try:
                tool_calls = self._assemble()
            except StreamDecodeError as e:
                self.fail(e)
                raise
        elif self._buffers:
            logger.warning(
                "Discarding %d partial tool call(s); finish_reason=%r",
                len(self._buffers),
                finish_reason,
            )
        self._state = StreamState.COMPLETED
        return TurnResult(
            content=text,
            is_complete=True,
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            usage=self.usage,
            metadata={"content_text": self.content},
        )
