"""Pytest configuration and fixtures.

Provides environment isolation, logging configuration, a backoff-sleep
recorder and automatic API test skipping. Fixtures are autouse unless noted.
"""

from __future__ import annotations

from contextlib import suppress
from dataclasses import dataclass, field
import logging
import os

import pytest

from turnloop.providers.base import ProviderCapabilities

# =============================================================================
# Test Doubles
# =============================================================================


@dataclass
class FakeProvider:
    """Provider test double base: a name and capability flags, no behavior.

    Subclasses in ``tests/helpers.py`` add scripted ``generate``/``stream``.
    """

    name: str = "fake"
    aclose_calls: int = 0
    _capabilities: ProviderCapabilities = field(
        default_factory=lambda: ProviderCapabilities(streaming=True, tool_calls=True)
    )

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self._capabilities

    async def aclose(self) -> None:
        self.aclose_calls += 1


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Ensure a clean provider environment for each test.

    Clears OPENAI_* and TURNLOOP_* env vars to prevent test pollution.
    Opt-out: @pytest.mark.allow_env_pollution or @pytest.mark.api
    """
    if request.node.get_closest_marker("allow_env_pollution") or (
        "api" in request.node.keywords
    ):
        return

    for key in list(os.environ.keys()):
        if key.startswith(("OPENAI_", "TURNLOOP_")):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)


# =============================================================================
# Backoff
# =============================================================================


@pytest.fixture
def no_sleep(monkeypatch):
    """Record retry backoff delays instead of sleeping (not autouse).

    Cancellation is still honored so cancel-during-backoff tests behave.
    """
    delays: list[float] = []

    async def _record(delay_s, cancel):
        if cancel is not None:
            cancel.raise_if_cancelled()
        delays.append(delay_s)

    monkeypatch.setattr("turnloop.retry._sleep", _record)
    return delays


# =============================================================================
# Pytest Hooks
# =============================================================================

API_TESTS_REASON = "API tests require ENABLE_API_TESTS=1"


def _api_tests_enabled() -> bool:
    return bool(os.getenv("ENABLE_API_TESTS"))


def pytest_collection_modifyitems(items):
    """Automatically skip API tests when not explicitly enabled."""
    if _api_tests_enabled():
        return
    skip_api = pytest.mark.skip(reason=API_TESTS_REASON)
    for item in items:
        if "api" in item.keywords:
            item.add_marker(skip_api)


# =============================================================================
# API Test Configuration
# =============================================================================

# Cheapest current model that supports tool calls and streamed usage.
_OPENAI_TEST_MODEL = "gpt-4o-mini"


@pytest.fixture
def openai_api_key():
    """Return OPENAI_API_KEY or skip the test if unavailable."""
    key = os.getenv("OPENAI_API_KEY")
    if not key:
        pytest.skip("OPENAI_API_KEY not set")
    return key


@pytest.fixture
def openai_test_model():
    """Return the model to use for OpenAI API tests."""
    return _OPENAI_TEST_MODEL
