from __future__ import annotations

import pytest

from turnloop.history import (
    TRUNCATION_NOTICE,
    ConversationHistory,
    fit_to_budget,
    stateless_view,
)
from turnloop.models import Message, ToolCallRequest

pytestmark = pytest.mark.unit


def user(text: str) -> Message:
    return Message(role="user", content=text)


def assistant_calls(*ids: str) -> Message:
    return Message(
        role="assistant",
        tool_calls=tuple(ToolCallRequest(id=i, name="lookup") for i in ids),
    )


def tool_result(call_id: str) -> Message:
    return Message(role="tool", content="42", name="lookup", tool_call_id=call_id)


def test_system_message_sits_at_position_zero() -> None:
    history = ConversationHistory("Be terse.", [user("hi")])

    messages = history.snapshot()
    assert [m.role for m in messages] == ["system", "user"]
    assert history.system_message == "Be terse."


def test_append_preserves_order_and_rejects_system() -> None:
    history = ConversationHistory()
    history.append(user("one"))
    history.extend([user("two"), user("three")])

    assert [m.content for m in history] == ["one", "two", "three"]
    with pytest.raises(ValueError, match="rotate_system_message"):
        history.append(Message(role="system", content="nope"))


def test_snapshot_is_a_copy() -> None:
    history = ConversationHistory(messages=[user("hi")])

    snapshot = history.snapshot()
    snapshot.append(user("sneaky"))

    assert len(history) == 1


def test_replace_keeps_only_the_last_system_message_first() -> None:
    history = ConversationHistory()
    history.replace(
        [
            Message(role="system", content="old"),
            user("a"),
            Message(role="system", content="new"),
            user("b"),
        ]
    )

    assert [(m.role, m.content) for m in history] == [
        ("system", "new"),
        ("user", "a"),
        ("user", "b"),
    ]


def test_clear_keeps_system_unless_asked() -> None:
    history = ConversationHistory("sys", [user("a"), user("b")])

    history.clear()
    assert [m.role for m in history] == ["system"]

    history.clear(keep_system=False)
    assert len(history) == 0


def test_rotate_system_message() -> None:
    history = ConversationHistory("v1", [user("a")])

    history.rotate_system_message("v2")
    assert history.system_message == "v2"
    assert len(history) == 2

    history.rotate_system_message("v3", preserve=False)
    assert [(m.role, m.content) for m in history] == [("system", "v3")]


def test_last_message_filters_by_role() -> None:
    history = ConversationHistory(
        "sys", [user("q"), Message(role="assistant", content="a"), user("q2")]
    )

    assert history.last_message().content == "q2"
    assert history.last_message("assistant").content == "a"
    assert history.last_message("tool") is None


def test_trim_keeps_system_and_newest_without_orphan_tool_results() -> None:
    history = ConversationHistory(
        "sys",
        [user("q1"), assistant_calls("c1"), tool_result("c1"), user("q2")],
    )

    removed = history.trim(3)

    # The cut would have started at the tool result; it is dropped too.
    assert removed == 3
    assert [m.role for m in history] == ["system", "user"]
    assert history.last_message().content == "q2"


def test_trim_rejects_non_positive_limit() -> None:
    with pytest.raises(ValueError):
        ConversationHistory().trim(0)


def test_remove_unanswered_tool_calls() -> None:
    history = ConversationHistory(
        messages=[
            user("q"),
            assistant_calls("c1"),
            tool_result("c1"),
            assistant_calls("c2", "c3"),
            tool_result("c2"),
        ]
    )

    removed = history.remove_unanswered_tool_calls()

    assert removed == 2
    assert [m.role for m in history] == ["user", "assistant", "tool"]


def test_json_round_trip_preserves_tool_calls() -> None:
    original = ConversationHistory(
        "sys",
        [
            user("weather?"),
            Message(
                role="assistant",
                tool_calls=(
                    ToolCallRequest(
                        id="c1", name="get_weather", arguments={"city": "Oslo"}
                    ),
                ),
            ),
            Message(
                role="tool",
                content="rain",
                name="get_weather",
                tool_call_id="c1",
                metadata={"error": False},
            ),
        ],
    )

    restored = ConversationHistory.from_json(original.to_json())

    assert restored.snapshot() == original.snapshot()


def test_from_json_rejects_non_list() -> None:
    with pytest.raises(ValueError, match="list of messages"):
        ConversationHistory.from_json('{"role": "user"}')


# =============================================================================
# Request views
# =============================================================================

SYSTEM = Message(role="system", content="sys")


def reply(text: str) -> Message:
    return Message(role="assistant", content=text)


def test_stateless_view_keeps_system_and_current_exchange() -> None:
    messages = [
        SYSTEM,
        user("first question"),
        reply("first answer"),
        user("second question"),
        assistant_calls("c1"),
        tool_result("c1"),
    ]

    view = stateless_view(messages)

    assert view == [SYSTEM, *messages[3:]]


def test_fit_to_budget_returns_everything_that_fits() -> None:
    messages = [SYSTEM, user("a"), reply("b"), user("c")]

    assert fit_to_budget(messages, 1_000, len) == messages


def test_fit_to_budget_keeps_newest_exchanges_and_adds_notice() -> None:
    old = [user("a" * 40), reply("b" * 40), user("c" * 40), reply("d" * 40)]
    current = user("q")
    messages = [SYSTEM, *old, current]

    view = fit_to_budget(messages, 150, len)

    assert view[0] is SYSTEM
    assert view[1].content == TRUNCATION_NOTICE
    assert view[1].metadata == {"truncation_notice": True}
    assert view[2:] == [old[2], old[3], current]


def test_fit_to_budget_never_separates_tool_results_from_their_call() -> None:
    answer = reply("d" * 10)
    current = user("q")
    messages = [
        SYSTEM,
        user("x" * 200),
        assistant_calls("c1"),
        Message(role="tool", content="r" * 60, tool_call_id="c1"),
        answer,
        current,
    ]

    view = fit_to_budget(messages, 140, len)

    # The tool result alone would fit; its call message would not.
    assert view == [SYSTEM, view[1], answer, current]
    assert view[1].content == TRUNCATION_NOTICE


def test_fit_to_budget_always_keeps_the_current_exchange() -> None:
    current = [user("now"), assistant_calls("c9"), tool_result("c9")]
    messages = [SYSTEM, user("old " * 50), *current]

    view = fit_to_budget(messages, 10, len)

    assert view[0] is SYSTEM
    assert view[1].content == TRUNCATION_NOTICE
    assert view[2:] == current
