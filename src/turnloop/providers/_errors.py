"""Shared provider-side error helpers.

Adapters attach retry metadata via APIError subclasses so the core retry
loop can be bounded and deterministic without brittle substring matching.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx

from turnloop._http import (
    API_KEY_ENV_VARS,
    AUTH_STATUS_CODES,
    RETRYABLE_STATUS_CODES,
)
from turnloop.errors import (
    APIError,
    PermanentProviderError,
    RateLimitError,
    TransientProviderError,
    TurnCancelledError,
    _walk_exception_chain,
)


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        for attr in ("status_code", "status"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def extract_retry_after_s(exc: BaseException) -> float | None:
    """Walk the exception chain to find a retry-after delay in seconds."""
    for e in _walk_exception_chain(exc):
        value = getattr(e, "retry_after", None)
        if isinstance(value, (int, float)) and value >= 0:
            return float(value)

        response = getattr(e, "response", None)
        headers: Any = getattr(response, "headers", None)
        if headers is None or not hasattr(headers, "get"):
            continue
        raw = headers.get("Retry-After")
        if not isinstance(raw, str) or not raw.strip():
            continue
        try:
            seconds = float(raw)
        except ValueError:
            # HTTP-date form; not worth parsing for a metadata hint.
            continue
        if seconds >= 0:
            return seconds
    return None


def _auth_hint(
    provider: str, status_code: int | None, cause_message: str
) -> str | None:
    """Generate a hint for auth errors where naming the env var is useful."""
    cause_lower = cause_message.lower()
    if status_code in AUTH_STATUS_CODES or (
        status_code == 400 and ("api key" in cause_lower or "api_key" in cause_lower)
    ):
        env_var = API_KEY_ENV_VARS.get(provider, "API key")
        return (
            f"Check credentials/permissions (try setting {env_var} or Config.api_key)."
        )
    return None


def wrap_provider_error(
    exc: BaseException,
    *,
    provider: str,
    phase: str,
    allow_network_errors: bool = True,
    message: str | None = None,
    hint: str | None = None,
) -> APIError:
    """Map provider SDK exceptions into APIError with stable retry metadata."""
    if isinstance(exc, (asyncio.CancelledError, TurnCancelledError)):
        raise exc

    # Already wrapped: fill in missing context only.
    if isinstance(exc, APIError):
        if exc.provider is None:
            exc.provider = provider
        if exc.phase is None:
            exc.phase = phase
        if hint is not None and exc.hint is None:
            exc.hint = hint
        return exc

    status_code = extract_status_code(exc)
    retry_after_s = extract_retry_after_s(exc)

    retryable = retry_after_s is not None
    if isinstance(status_code, int) and status_code in RETRYABLE_STATUS_CODES:
        retryable = True
    elif status_code is None and allow_network_errors:
        for e in _walk_exception_chain(exc):
            if isinstance(
                e, (httpx.TimeoutException, httpx.RequestError, TimeoutError)
            ):
                retryable = True
                break

    derived_hint = (
        hint if hint is not None else _auth_hint(provider, status_code, str(exc))
    )

    msg = message or f"{provider} {phase} failed"

    err_cls: type[APIError]
    if status_code == 429:
        err_cls = RateLimitError
    elif retryable:
        err_cls = TransientProviderError
    else:
        err_cls = PermanentProviderError

    status_note = f" (status={status_code})" if isinstance(status_code, int) else ""
    cause = str(exc)
    return err_cls(
        f"{msg}{status_note}: {cause}" if cause else f"{msg}{status_note}",
        hint=derived_hint,
        retryable=retryable or status_code == 429,
        status_code=status_code,
        retry_after_s=retry_after_s,
        provider=provider,
        phase=phase,
    )
