"""Core data model: messages, tool calls, usage and turn results."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import json
from typing import Any, Literal

Role = Literal["system", "user", "assistant", "tool", "developer"]
ROLES: frozenset[str] = frozenset({"system", "user", "assistant", "tool", "developer"})

FinishReason = Literal["stop", "length", "tool_calls", "content_filter", "error"]
FINISH_STOP = "stop"
FINISH_LENGTH = "length"
FINISH_TOOL_CALLS = "tool_calls"
FINISH_CONTENT_FILTER = "content_filter"
FINISH_ERROR = "error"


@dataclass(frozen=True)
class ToolCallRequest:
    """A tool call requested by the model.

    ``arguments`` is a parsed mapping once assembled. A raw string is kept
    when the provider sent JSON that did not parse, so the tool round can
    report it back to the model instead of crashing.
    """

    id: str
    name: str
    arguments: dict[str, Any] | str = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCallRequest:
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            arguments=data.get("arguments") or {},
        )

    @property
    def arguments_json(self) -> str:
        """Arguments as a JSON string, the shape most wire formats want."""
        if isinstance(self.arguments, str):
            return self.arguments
        return json.dumps(self.arguments, sort_keys=True)


def parse_tool_arguments(raw: str | dict[str, Any] | None) -> dict[str, Any]:
    """Parse tool-call arguments into a JSON object.

    Raises ``ValueError`` when *raw* is not a JSON object.
    """
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    if not raw.strip():
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError(
            f"tool arguments must be a JSON object, got {type(parsed).__name__}"
        )
    return parsed


@dataclass(frozen=True)
class Message:
    """One conversation message. Immutable once appended to history."""

    role: Role
    content: str | None = None
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: tuple[ToolCallRequest, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role: {self.role!r}")
        if not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))
        object.__setattr__(self, "metadata", dict(self.metadata))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name is not None:
            data["name"] = self.name
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            role=data["role"],
            content=data.get("content"),
            name=data.get("name"),
            tool_call_id=data.get("tool_call_id"),
            tool_calls=tuple(
                ToolCallRequest.from_dict(tc) for tc in data.get("tool_calls") or ()
            ),
            metadata=data.get("metadata") or {},
        )


def system_message(text: str) -> Message:
    return Message(role="system", content=text)


def user_message(text: str) -> Message:
    return Message(role="user", content=text)


@dataclass(frozen=True)
class Costs:
    """Monetary cost of one usage record, in the pricing table's currency."""

    input: float = 0.0
    cached_input: float = 0.0
    output: float = 0.0

    @property
    def total(self) -> float:
        return self.input + self.cached_input + self.output

    def __add__(self, other: Costs) -> Costs:
        return Costs(
            input=self.input + other.input,
            cached_input=self.cached_input + other.cached_input,
            output=self.output + other.output,
        )


@dataclass(frozen=True)
class Usage:
    """Token usage for one or more provider calls.

    ``cached_input_tokens`` is the subset of ``input_tokens`` served from a
    provider-side prompt cache.
    """

    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0
    reasoning_tokens: int = 0
    costs: Costs = field(default_factory=Costs)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.reasoning_tokens

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cached_input_tokens=self.cached_input_tokens + other.cached_input_tokens,
            reasoning_tokens=self.reasoning_tokens + other.reasoning_tokens,
            costs=self.costs + other.costs,
        )

    @classmethod
    def from_provider(cls, raw: dict[str, int] | None) -> Usage | None:
        """Normalize a provider usage dict; None when nothing was reported."""
        if not raw:
            return None
        input_tokens = raw.get("input_tokens", raw.get("prompt_tokens", 0))
        output_tokens = raw.get("output_tokens", raw.get("completion_tokens", 0))
        return cls(
            input_tokens=int(input_tokens or 0),
            output_tokens=int(output_tokens or 0),
            cached_input_tokens=int(raw.get("cached_input_tokens", 0) or 0),
            reasoning_tokens=int(raw.get("reasoning_tokens", 0) or 0),
        )


@dataclass(frozen=True)
class PartialToolCall:
    """Snapshot of a tool call still being streamed."""

    index: int
    id: str | None
    name: str | None
    arguments_text: str


@dataclass(frozen=True)
class TurnResult:
    """A complete response, or one streamed chunk of one.

    For streams only the final chunk has ``is_complete=True`` together with
    parsed ``tool_calls`` and ``usage``.
    """

    content: str = ""
    role: Role = "assistant"
    is_complete: bool = True
    tool_calls: tuple[ToolCallRequest, ...] = ()
    finish_reason: str | None = None
    usage: Usage | None = None
    partial_tool_calls: tuple[PartialToolCall, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def requires_tool_round(self) -> bool:
        return bool(self.tool_calls)

    @property
    def iteration_limit_exceeded(self) -> bool:
        return bool(self.metadata.get("iteration_limit_exceeded"))

    def with_metadata(self, **updates: Any) -> TurnResult:
        return replace(self, metadata={**self.metadata, **updates})

    def to_message(self) -> Message:
        """Render this result as the assistant message stored in history."""
        return Message(
            role="assistant",
            content=self.content or None,
            tool_calls=self.tool_calls,
        )
