"""Exception hierarchy for turnloop.

Only provider failures, stream decode failures and cancellation ever reach
the caller as raised exceptions. Tool failures are rendered into the
conversation as tool-result messages so the model can react to them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class TurnloopError(Exception):
    """Base exception for all turnloop errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(TurnloopError):
    """Configuration validation or resolution failed."""


class InternalError(TurnloopError):
    """A turnloop internal error (bug) or invariant violation."""


class APIError(TurnloopError):
    """Provider call failed.

    Adapters attach retry metadata so the retry loop can make bounded,
    deterministic decisions without brittle substring matching.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.phase = phase


class TransientProviderError(APIError):
    """Network, 5xx or rate-limit failure. Retried by RetryPolicy."""

    def __init__(self, message: str, **kwargs: object) -> None:
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class RateLimitError(TransientProviderError):
    """Rate limit exceeded (HTTP 429)."""


class ContentRetryError(TransientProviderError):
    """The model answered with a short refusal; worth asking again."""


class PermanentProviderError(APIError):
    """Validation, auth or other non-retryable 4xx failure."""

    def __init__(self, message: str, **kwargs: object) -> None:
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class RetryExhaustedError(TransientProviderError):
    """All attempts failed with retryable errors.

    Still a transient failure, but marked ``retryable=False`` so an outer
    retry loop does not multiply the attempts.

    ``attempts`` is the total number of calls made and ``last_error`` the
    final underlying exception (also chained as ``__cause__``).
    """

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        last_error: BaseException,
        hint: str | None = None,
    ) -> None:
        status = last_error.status_code if isinstance(last_error, APIError) else None
        provider = last_error.provider if isinstance(last_error, APIError) else None
        super().__init__(
            message,
            hint=hint,
            retryable=False,
            status_code=status,
            provider=provider,
        )
        self.attempts = attempts
        self.last_error = last_error


class StreamDecodeError(TurnloopError):
    """Streamed tool-call arguments could not be assembled into JSON."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        tool_call_id: str | None = None,
        raw_arguments: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.tool_call_id = tool_call_id
        self.raw_arguments = raw_arguments


class TurnCancelledError(TurnloopError):
    """The invocation was cancelled or timed out. Never retried."""


class ChunkLimitError(TurnloopError):
    """The request split into more pieces than the caller allows."""


class ToolError(TurnloopError):
    """Base class for tool failures rendered into the conversation."""

    def __init__(self, message: str, *, tool_name: str | None = None) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """The model asked for a tool that is not registered."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f'Tool "{tool_name}" not found', tool_name=tool_name)


class ToolExecutionError(ToolError):
    """A tool raised, or was called with arguments it cannot accept."""

    def __init__(self, tool_name: str, reason: str) -> None:
        super().__init__(
            f'Execution of tool "{tool_name}" failed: {reason}', tool_name=tool_name
        )
        self.reason = reason


class IterationLimitExceeded(ToolError):
    """The tool loop hit its per-invocation round ceiling."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"Tool iteration limit of {limit} exceeded")
        self.limit = limit


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
