"""Tool loop: rounds, history writes and the iteration ceiling."""

from __future__ import annotations

import pytest

from turnloop.errors import InternalError
from turnloop.history import ConversationHistory
from turnloop.models import Message, TurnResult
from turnloop.orchestrator import InvocationContext, ToolLoopOrchestrator
from turnloop.retry import RetryPolicy
from turnloop.tools.executor import ToolExecutor
from turnloop.tools.registry import ToolRegistry
from turnloop.turn import TurnExecutor
from turnloop.usage import UsageLedger
from tests.helpers import (
    AlwaysToolProvider,
    ScriptedProvider,
    WeatherTool,
    collect,
    text_response,
    text_stream,
    tool_call_response,
    tool_call_stream,
)

pytestmark = pytest.mark.unit


def build(provider, *tools):
    registry = ToolRegistry(tools)
    turns = TurnExecutor(
        provider,
        ledger=UsageLedger("test"),
        retry_policy=RetryPolicy(base_delay_ms=0, max_retries=0),
        tools=registry,
    )
    return ToolLoopOrchestrator(turns, ToolExecutor(registry))


def start(limit: int = 5) -> InvocationContext:
    history = ConversationHistory("sys", [Message(role="user", content="weather?")])
    return InvocationContext.start(
        history, model="m", max_tool_iterations=limit, system_message="sys"
    )


@pytest.mark.asyncio
async def test_plain_reply_appends_one_assistant_message() -> None:
    orchestrator = build(ScriptedProvider(script=[text_response("Hello!")]))
    ctx = start()

    result = await orchestrator.run_turn(ctx)

    assert result.content == "Hello!"
    assert [m.role for m in ctx.history] == ["system", "user", "assistant"]
    assert ctx.rounds == 1


@pytest.mark.asyncio
async def test_one_tool_round_then_answer() -> None:
    weather = WeatherTool()
    provider = ScriptedProvider(
        script=[
            tool_call_response("get_weather", {"city": "Paris"}, call_id="c1"),
            text_response("It's sunny in Paris."),
        ]
    )
    orchestrator = build(provider, weather.definition())
    ctx = start()

    result = await orchestrator.run_turn(ctx)

    messages = ctx.history.snapshot()
    assert [m.role for m in messages] == [
        "system",
        "user",
        "assistant",
        "tool",
        "assistant",
    ]
    assert messages[2].tool_calls[0].id == "c1"
    assert messages[3].tool_call_id == "c1"
    assert result.content == "It's sunny in Paris."
    assert result.usage.input_tokens == 20
    assert weather.calls == [{"city": "Paris"}]
    # The second call saw the tool result.
    assert provider.requests[1].messages[-1].role == "tool"


@pytest.mark.asyncio
async def test_always_tool_model_stops_at_the_ceiling() -> None:
    weather = WeatherTool()
    provider = AlwaysToolProvider()
    orchestrator = build(provider, weather.definition())
    ctx = start(limit=3)

    result = await orchestrator.run_turn(ctx)

    assert result.iteration_limit_exceeded
    assert result.is_complete
    assert result.metadata["error"] == "Tool iteration limit of 3 exceeded"
    assert len(weather.calls) == 3
    assert provider.generate_calls == 4
    # The unexecuted fourth request never reaches history.
    assert sum(1 for m in ctx.history if m.role == "tool") == 3


@pytest.mark.asyncio
async def test_zero_iterations_never_runs_a_tool() -> None:
    weather = WeatherTool()
    orchestrator = build(AlwaysToolProvider(), weather.definition())

    result = await orchestrator.run_turn(start(limit=0))

    assert result.iteration_limit_exceeded
    assert weather.calls == []


@pytest.mark.asyncio
async def test_counter_is_shared_across_turns_of_one_invocation() -> None:
    weather = WeatherTool()
    provider = ScriptedProvider(
        script=[
            tool_call_response("get_weather", {"city": "A"}, call_id="c1"),
            text_response("first"),
            tool_call_response("get_weather", {"city": "B"}, call_id="c2"),
        ]
    )
    orchestrator = build(provider, weather.definition())
    ctx = start(limit=1)

    await orchestrator.run_turn(ctx)
    ctx.history.append(Message(role="user", content="and B?"))
    second = await orchestrator.run_turn(ctx)

    assert second.iteration_limit_exceeded
    assert weather.calls == [{"city": "A"}]


@pytest.mark.asyncio
async def test_drained_stream_invoker_runs_the_same_loop() -> None:
    provider = ScriptedProvider(
        stream_script=[
            tool_call_stream("get_weather", {"city": "Oslo"}),
            text_stream("Rain", " later."),
        ]
    )
    orchestrator = build(provider, WeatherTool().definition())
    ctx = start()

    result = await orchestrator.run_turn(ctx, orchestrator.drained_stream_invoker())

    assert result.content == "Rain later."
    assert provider.stream_calls == 2
    assert ctx.history.last_message().content == "Rain later."


@pytest.mark.asyncio
async def test_stream_turn_tags_rounds_and_completes_once() -> None:
    provider = ScriptedProvider(
        stream_script=[
            tool_call_stream("get_weather", {"city": "Paris"}),
            text_stream("Sun", "ny"),
        ]
    )
    orchestrator = build(provider, WeatherTool().definition())
    ctx = start()

    chunks = await collect(orchestrator.stream_turn(ctx))

    assert [c.is_complete for c in chunks].count(True) == 1
    assert chunks[-1].is_complete
    round_end = [c for c in chunks if c.metadata.get("round_complete")]
    assert len(round_end) == 1
    assert round_end[0].metadata["round"] == 0
    assert {c.metadata["round"] for c in chunks} == {0, 1}
    assert "".join(c.content for c in chunks) == "Sunny"
    assert chunks[-1].usage.input_tokens == 20
    assert [m.role for m in ctx.history] == [
        "system",
        "user",
        "assistant",
        "tool",
        "assistant",
    ]
    assert ctx.history.last_message().content == "Sunny"


@pytest.mark.asyncio
async def test_stream_turn_stops_at_the_ceiling() -> None:
    orchestrator = build(AlwaysToolProvider(), WeatherTool().definition())
    ctx = start(limit=2)

    chunks = await collect(orchestrator.stream_turn(ctx))

    assert chunks[-1].is_complete
    assert chunks[-1].iteration_limit_exceeded
    assert ctx.rounds == 3


@pytest.mark.asyncio
async def test_empty_final_reply_is_still_recorded() -> None:
    provider = ScriptedProvider(
        script=[
            tool_call_response("get_weather", {"city": "Lima"}),
            text_response(""),
        ]
    )
    orchestrator = build(provider, WeatherTool().definition())
    ctx = start()

    result = await orchestrator.run_turn(ctx)

    assert result.content == ""
    assert [m.role for m in ctx.history] == [
        "system",
        "user",
        "assistant",
        "tool",
        "assistant",
    ]
    assert ctx.history.last_message().content is None


@pytest.mark.asyncio
async def test_stream_turn_records_an_empty_final_reply() -> None:
    provider = ScriptedProvider(
        stream_script=[
            tool_call_stream("get_weather", {"city": "Lima"}),
            text_stream(),
        ]
    )
    orchestrator = build(provider, WeatherTool().definition())
    ctx = start()

    chunks = await collect(orchestrator.stream_turn(ctx))

    assert chunks[-1].is_complete
    assert [m.role for m in ctx.history][-3:] == ["assistant", "tool", "assistant"]
    assert ctx.history.last_message().content is None
    assert ctx.history.last_message().tool_calls == ()


class TruncatedTurns:
    """Round executor whose streams end without a terminal chunk."""

    async def stream(self, model, system_message, history, options, *, cancel=None):
        yield TurnResult(content="half", is_complete=False)


@pytest.mark.asyncio
async def test_round_without_terminal_chunk_is_an_internal_error() -> None:
    orchestrator = ToolLoopOrchestrator(
        TruncatedTurns(), ToolExecutor(ToolRegistry())
    )

    with pytest.raises(InternalError, match="without a final chunk"):
        await collect(orchestrator.stream_turn(start()))
    with pytest.raises(InternalError, match="without a final chunk"):
        await orchestrator.run_turn(start(), orchestrator.drained_stream_invoker())
