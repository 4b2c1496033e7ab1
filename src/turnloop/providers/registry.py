"""Provider registry: explicit name -> factory lookup.

This is the single seam where a provider implementation is chosen. Built-in
adapters are imported lazily so an unused SDK is never loaded.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from turnloop.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Callable

    from turnloop.config import Config
    from turnloop.providers.base import Provider

    ProviderFactory = Callable[[Config], Provider]


def _mock_factory(config: Config) -> Provider:
    from turnloop.providers.mock import MockProvider

    _ = config
    return MockProvider()


def _openai_factory(config: Config) -> Provider:
    from turnloop.providers.openai import OpenAIProvider

    if not config.api_key:
        raise ConfigurationError(
            "api_key required for real API",
            hint="Set OPENAI_API_KEY or pass Config(api_key=...).",
        )
    return OpenAIProvider(config.api_key, base_url=config.base_url)


_FACTORIES: dict[str, ProviderFactory] = {
    "mock": _mock_factory,
    "openai": _openai_factory,
}


def register_provider(name: str, factory: ProviderFactory) -> None:
    """Register *factory* under *name*, replacing any previous entry."""
    if not name:
        raise ConfigurationError("Provider name must be non-empty")
    _FACTORIES[name] = factory


def unregister_provider(name: str) -> None:
    if name in {"mock", "openai"}:
        raise ConfigurationError(f"Built-in provider {name!r} cannot be removed")
    _FACTORIES.pop(name, None)


def available_providers() -> list[str]:
    return sorted(_FACTORIES)


def is_registered(name: str) -> bool:
    return name in _FACTORIES


def get_provider(config: Config) -> Provider:
    """Build the provider *config* names (the mock when ``use_mock`` is set)."""
    if config.use_mock:
        return _mock_factory(config)
    factory = _FACTORIES.get(config.provider)
    if factory is None:
        raise ConfigurationError(
            f"Unknown provider: {config.provider!r}",
            hint=f"Registered providers: {', '.join(available_providers())}",
        )
    return factory(config)
