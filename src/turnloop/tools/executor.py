"""Run one round of tool calls and render the outcomes as messages.

Tool failures never escape a round. A missing tool, unparseable arguments
or an exception inside ``execute`` all become error-carrying tool-result
messages, so the model sees the problem on its next turn. Only
cancellation propagates.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import inspect
import json
import logging
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from turnloop.cancellation import guarded
from turnloop.errors import (
    IterationLimitExceeded,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
    TurnCancelledError,
)
from turnloop.models import Message, ToolCallRequest, parse_tool_arguments

if TYPE_CHECKING:
    from collections.abc import Sequence

    from turnloop.cancellation import CancellationToken
    from turnloop.tools.registry import ToolDefinition, ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class IterationCounter:
    """Tool rounds used by one top-level invocation."""

    limit: int
    count: int = 0

    def __post_init__(self) -> None:
        if self.limit < 0:
            raise ValueError("IterationCounter.limit must be >= 0")

    def try_advance(self) -> bool:
        """Consume one round; False when the ceiling is already reached."""
        if self.count >= self.limit:
            return False
        self.count += 1
        return True

    def reset(self) -> None:
        self.count = 0


@dataclass(frozen=True)
class ToolOutcome:
    """How one tool call ended."""

    request: ToolCallRequest
    content: str
    error: ToolError | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_message(self) -> Message:
        metadata: dict[str, Any] = {}
        if self.error is not None:
            metadata = {"error": True, "error_type": type(self.error).__name__}
        return Message(
            role="tool",
            content=self.content,
            name=self.request.name,
            tool_call_id=self.request.id,
            metadata=metadata,
        )


@dataclass(frozen=True)
class ToolRound:
    """Messages produced by one round, in request order."""

    messages: tuple[Message, ...]
    outcomes: tuple[ToolOutcome, ...] = ()

    @property
    def iteration_limit_exceeded(self) -> bool:
        return any(
            m.metadata.get("error_type") == IterationLimitExceeded.__name__
            for m in self.messages
        )


def iteration_limit_message(limit: int) -> Message:
    """Synthetic marker returned instead of running an over-budget round."""
    error = IterationLimitExceeded(limit)
    return Message(
        role="tool",
        content=f"Error: {error}",
        metadata={
            "error": True,
            "error_type": IterationLimitExceeded.__name__,
            "limit": limit,
        },
    )


def render_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    if result is None:
        return ""
    return json.dumps(result, ensure_ascii=False, default=str)


class ToolExecutor:
    """Looks tools up by name and runs them one at a time, in request order."""

    def __init__(self, registry: ToolRegistry) -> None:
        self.registry = registry

    async def run_round(
        self,
        requests: Sequence[ToolCallRequest],
        *,
        counter: IterationCounter,
        cancel: CancellationToken | None = None,
    ) -> ToolRound:
        if not counter.try_advance():
            logger.warning(
                "Tool iteration limit (%d) reached; skipping %d call(s)",
                counter.limit,
                len(requests),
            )
            return ToolRound(messages=(iteration_limit_message(counter.limit),))

        outcomes: list[ToolOutcome] = []
        for request in requests:
            if cancel is not None:
                cancel.raise_if_cancelled()
            outcomes.append(await self._run_one(request, cancel))
        return ToolRound(
            messages=tuple(o.to_message() for o in outcomes),
            outcomes=tuple(outcomes),
        )

    async def _run_one(
        self, request: ToolCallRequest, cancel: CancellationToken | None
    ) -> ToolOutcome:
        tool = self.registry.get(request.name)
        if tool is None:
            error: ToolError = ToolNotFoundError(request.name)
            logger.warning("%s", error)
            return ToolOutcome(request=request, content=f"Error: {error}", error=error)

        try:
            arguments = parse_tool_arguments(request.arguments)
            content = await self._invoke(tool, arguments, cancel)
        except (TurnCancelledError, asyncio.CancelledError):
            raise
        except json.JSONDecodeError as e:
            error = ToolExecutionError(request.name, f"invalid JSON arguments: {e}")
        except ValidationError as e:
            error = ToolExecutionError(
                request.name,
                f"invalid arguments: {e.error_count()} validation error(s)",
            )
        except Exception as e:
            error = ToolExecutionError(request.name, str(e) or type(e).__name__)
        else:
            logger.debug("Tool %r (%s) completed", request.name, request.id)
            return ToolOutcome(request=request, content=content)

        logger.warning("%s", error)
        return ToolOutcome(request=request, content=f"Error: {error}", error=error)

    async def _invoke(
        self,
        tool: ToolDefinition,
        arguments: dict[str, Any],
        cancel: CancellationToken | None,
    ) -> str:
        result = tool.execute(tool.coerce_arguments(arguments))
        if inspect.isawaitable(result):
            result = await guarded(result, cancel)

        if tool.post_call is None:
            return render_result(result)
        processed = tool.post_call(result)
        if inspect.isawaitable(processed):
            processed = await guarded(processed, cancel)
        return render_result(processed)
