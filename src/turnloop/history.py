"""Ordered, in-memory conversation log.

Messages are only ever appended, replaced wholesale, or trimmed by an
explicit call. At most one system message exists and it always sits at
position 0.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from turnloop.models import Message
from turnloop.tokens import count_message_tokens, estimate_tokens

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

    from turnloop.tokens import TokenCounter

logger = logging.getLogger(__name__)

TRUNCATION_NOTICE = "[History truncated due to context limit]"


class ConversationHistory:
    """Append-only message log with system-message rotation."""

    def __init__(
        self,
        system_message: str | None = None,
        messages: Iterable[Message] = (),
    ) -> None:
        self._messages: list[Message] = []
        self.replace(messages)
        if system_message is not None and self.system_message is None:
            self._messages.insert(0, Message(role="system", content=system_message))

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    def __repr__(self) -> str:
        return f"ConversationHistory(messages={len(self._messages)})"

    @property
    def system_message(self) -> str | None:
        if self._messages and self._messages[0].role == "system":
            return self._messages[0].content
        return None

    def append(self, message: Message) -> None:
        """Append a non-system message.

        System messages are positional; use `rotate_system_message`.
        """
        if message.role == "system":
            raise ValueError(
                "system messages cannot be appended; use rotate_system_message()"
            )
        self._messages.append(message)

    def extend(self, messages: Iterable[Message]) -> None:
        for message in messages:
            self.append(message)

    def snapshot(self) -> list[Message]:
        """Return a copy of the log; mutating it does not touch history."""
        return list(self._messages)

    def replace(self, messages: Iterable[Message]) -> None:
        """Replace the whole log.

        The last system message supplied moves to position 0; any other
        system messages are dropped.
        """
        incoming = list(messages)
        system = None
        rest: list[Message] = []
        for message in incoming:
            if message.role == "system":
                system = message
            else:
                rest.append(message)
        self._messages = ([system] if system is not None else []) + rest

    def clear(self, *, keep_system: bool = True) -> None:
        system = self._messages[0] if self.system_message is not None else None
        self._messages = [system] if keep_system and system is not None else []

    def rotate_system_message(self, text: str, *, preserve: bool = True) -> None:
        """Swap in a new system message.

        With ``preserve=False`` every other message is cleared as well.
        """
        new_system = Message(role="system", content=text)
        if not preserve:
            self._messages = [new_system]
            return
        if self.system_message is not None:
            self._messages[0] = new_system
        else:
            self._messages.insert(0, new_system)

    def last_message(self, role: str | None = None) -> Message | None:
        for message in reversed(self._messages):
            if role is None or message.role == role:
                return message
        return None

    def trim(self, max_messages: int) -> int:
        """Keep the system message plus the newest messages; return removed count.

        The cut never leaves tool results whose assistant tool-call message
        was trimmed away.
        """
        if max_messages < 1:
            raise ValueError("max_messages must be >= 1")
        has_system = self.system_message is not None
        head = self._messages[:1] if has_system else []
        body = self._messages[1:] if has_system else list(self._messages)
        keep = max(max_messages - len(head), 0)
        if len(body) <= keep:
            return 0
        kept = body[len(body) - keep :] if keep else []
        while kept and kept[0].role == "tool":
            kept.pop(0)
        removed = len(body) - len(kept)
        self._messages = head + kept
        logger.debug("Trimmed %d message(s) from history", removed)
        return removed

    def remove_unanswered_tool_calls(self) -> int:
        """Drop assistant tool-call messages lacking a result for every call."""
        answered = {
            m.tool_call_id
            for m in self._messages
            if m.role == "tool" and m.tool_call_id
        }
        kept: list[Message] = []
        orphaned: set[str] = set()
        removed = 0
        for message in self._messages:
            if message.role == "assistant" and message.tool_calls:
                if any(call.id not in answered for call in message.tool_calls):
                    orphaned.update(call.id for call in message.tool_calls)
                    removed += 1
                    continue
            if message.role == "tool" and message.tool_call_id in orphaned:
                removed += 1
                continue
            kept.append(message)
        self._messages = kept
        return removed

    def to_json(self) -> str:
        return json.dumps([m.to_dict() for m in self._messages])

    @classmethod
    def from_json(cls, payload: str) -> ConversationHistory:
        raw: Any = json.loads(payload)
        if not isinstance(raw, list):
            raise ValueError("history JSON must be a list of messages")
        return cls(messages=[Message.from_dict(item) for item in raw])


# =============================================================================
# Request views
# =============================================================================
#
# These build the message list sent for one provider call. They never touch
# the stored history.


def truncation_notice() -> Message:
    return Message(
        role="assistant",
        content=TRUNCATION_NOTICE,
        metadata={"truncation_notice": True},
    )


def _partition(
    messages: Sequence[Message],
) -> tuple[list[Message], list[Message], list[Message]]:
    """Split into (system, earlier, current).

    The current exchange starts at the last user message and includes every
    tool round that followed it.
    """
    system = [m for m in messages[:1] if m.role == "system"]
    rest = list(messages[len(system) :])
    start = 0
    for index in range(len(rest) - 1, -1, -1):
        if rest[index].role == "user":
            start = index
            break
    return system, rest[:start], rest[start:]


def _exchange_units(messages: Sequence[Message]) -> list[list[Message]]:
    """Group an assistant tool-call message with the tool results after it."""
    units: list[list[Message]] = []
    for message in messages:
        if message.role == "tool" and units and units[-1][0].tool_calls:
            units[-1].append(message)
        else:
            units.append([message])
    return units


def stateless_view(messages: Sequence[Message]) -> list[Message]:
    """The system message plus the current exchange only."""
    system, _, current = _partition(messages)
    return [*system, *current]


def fit_to_budget(
    messages: Sequence[Message],
    token_budget: int,
    count_tokens: TokenCounter = estimate_tokens,
) -> list[Message]:
    """Drop the oldest earlier exchanges until *messages* fit *token_budget*.

    The system message and the current exchange are always kept. A tool-call
    message and its results are kept or dropped together. When anything is
    dropped, a notice takes its place right after the system message.
    """
    if count_message_tokens(messages, count_tokens) <= token_budget:
        return list(messages)
    system, earlier, current = _partition(messages)
    if not earlier:
        return list(messages)

    notice = truncation_notice()
    remaining = token_budget - count_message_tokens(
        [*system, notice, *current], count_tokens
    )
    kept: list[list[Message]] = []
    for unit in reversed(_exchange_units(earlier)):
        cost = count_message_tokens(unit, count_tokens)
        if cost > remaining:
            break
        kept.append(unit)
        remaining -= cost
    kept.reverse()
    while kept and kept[0][0].role == "tool":
        kept.pop(0)

    sent = [m for unit in kept for m in unit]
    logger.debug(
        "Truncated history: sending %d of %d earlier message(s)",
        len(sent),
        len(earlier),
    )
    return [*system, notice, *sent, *current]
