from __future__ import annotations

import sys

import pytest

from turnloop.errors import ConfigurationError
from turnloop.models import Message, ToolCallRequest
from turnloop.tokens import TiktokenCounter, count_message_tokens, estimate_tokens

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    ("text", "expected"),
    [("", 0), ("a", 1), ("abcd", 1), ("abcde", 2), ("x" * 400, 100)],
)
def test_estimate_tokens(text: str, expected: int) -> None:
    assert estimate_tokens(text) == expected


def test_message_tokens_include_overhead_and_tool_calls() -> None:
    messages = [
        Message(role="user", content="abcd"),
        Message(
            role="assistant",
            tool_calls=(ToolCallRequest(id="c1", name="fn", arguments={}),),
        ),
    ]

    # 4 overhead per message, then len() of the content, name and arguments.
    assert count_message_tokens(messages, len) == 4 + 4 + 4 + 2 + 2


def test_tiktoken_counter_without_tiktoken(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(sys.modules, "tiktoken", None)
    counter = TiktokenCounter("gpt-4o")

    assert counter("") == 0
    with pytest.raises(ConfigurationError, match="tiktoken") as exc_info:
        counter("hello")
    assert "turnloop[tiktoken]" in (exc_info.value.hint or "")
