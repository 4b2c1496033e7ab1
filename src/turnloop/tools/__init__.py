"""Tool registry and per-round tool execution."""

from __future__ import annotations

from turnloop.tools.executor import (
    IterationCounter,
    ToolExecutor,
    ToolOutcome,
    ToolRound,
)
from turnloop.tools.registry import ToolDefinition, ToolRegistry

__all__ = [
    "IterationCounter",
    "ToolDefinition",
    "ToolExecutor",
    "ToolOutcome",
    "ToolRegistry",
    "ToolRound",
]
