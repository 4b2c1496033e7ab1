"""Per-call generation settings."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Literal

from turnloop.errors import ConfigurationError

ToolChoice = Literal["auto", "required", "none"] | dict[str, Any]
HistoryMode = Literal["full", "dynamic", "stateless"]


@dataclass(frozen=True)
class Options:
    """Optional generation settings for `Caller.call()` and `Caller.stream()`.

    ``None`` means "provider default"; only set fields are sent.
    """

    #: Generation tuning parameters
    temperature: float | None = None
    top_p: float | None = None
    #: Hard limit on the model's output tokens for one provider call.
    max_tokens: int | None = None
    #: Stop sequences, passed through to the provider.
    stop: tuple[str, ...] | None = None
    #: ``"none"`` hides registered tools from the provider for this call.
    tool_choice: ToolChoice | None = None
    #: Treat short refusal-style replies as retryable (non-streaming only).
    retry_on_refusal: bool = True
    #: How much stored history is sent: all of it, the newest part that fits
    #: the request budget, or only the system message and current exchange.
    history_mode: HistoryMode = "full"

    def __post_init__(self) -> None:
        """Validate option shapes early for clear errors."""
        if self.temperature is not None and not 0 <= self.temperature <= 2:
            raise ConfigurationError(
                f"temperature must be between 0 and 2, got {self.temperature}",
                hint="Pass temperature=0.2 for focused answers.",
            )
        if self.top_p is not None and not 0 < self.top_p <= 1:
            raise ConfigurationError(
                f"top_p must be in (0, 1], got {self.top_p}",
            )
        if self.max_tokens is not None and (
            not isinstance(self.max_tokens, int) or self.max_tokens <= 0
        ):
            raise ConfigurationError(
                "max_tokens must be a positive integer",
                hint="Pass max_tokens=1024 or leave it unset.",
            )
        if isinstance(self.stop, list):
            object.__setattr__(self, "stop", tuple(self.stop))
        if isinstance(self.tool_choice, str) and self.tool_choice not in {
            "auto",
            "required",
            "none",
        }:
            raise ConfigurationError(
                f"Unknown tool_choice: {self.tool_choice!r}",
                hint="Use 'auto', 'required', 'none' or {'name': <tool>}.",
            )
        if isinstance(self.tool_choice, dict) and "name" not in self.tool_choice:
            raise ConfigurationError(
                "tool_choice dict must name a tool",
                hint="Pass tool_choice={'name': 'get_weather'}.",
            )
        if self.history_mode not in {"full", "dynamic", "stateless"}:
            raise ConfigurationError(
                f"Unknown history_mode: {self.history_mode!r}",
                hint="Use 'full', 'dynamic' or 'stateless'.",
            )

    def merged(self, other: Options | None) -> Options:
        """Overlay *other*'s explicitly set fields onto these options."""
        if other is None:
            return self
        defaults = Options()
        updates = {
            f.name: getattr(other, f.name)
            for f in fields(other)
            if getattr(other, f.name) != getattr(defaults, f.name)
        }
        return replace(self, **updates) if updates else self

    @property
    def tools_enabled(self) -> bool:
        return self.tool_choice != "none"
