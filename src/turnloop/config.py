"""Configuration: frozen Config with explicit provider/model requirements."""

from __future__ import annotations

from dataclasses import dataclass, field
import os

from dotenv import load_dotenv

from turnloop._http import API_KEY_ENV_VARS
from turnloop.errors import ConfigurationError
from turnloop.providers.registry import available_providers, is_registered
from turnloop.retry import RetryPolicy
from turnloop.usage import ModelPricing

load_dotenv()

DEFAULT_SYSTEM_MESSAGE = "You are a helpful assistant."


@dataclass(frozen=True)
class Config:
    """Immutable configuration for one Caller.

    Provider and model are required: turnloop does not guess what you want.
    API keys for built-in providers are auto-resolved from the environment.

    Example:
        config = Config(provider="openai", model="gpt-4o-mini")
        # API key is automatically resolved from OPENAI_API_KEY
    """

    provider: str
    model: str
    #: Auto-resolved from ``OPENAI_API_KEY`` when *None*.
    api_key: str | None = None
    use_mock: bool = False
    #: Alternate endpoint for OpenAI-compatible servers.
    base_url: str | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    #: Tool rounds allowed per top-level call/stream.
    max_tool_iterations: int = 5
    #: Model input window; the splitter budget is this minus the response reserve.
    max_request_tokens: int = 128_000
    max_response_tokens: int = 4_096
    #: Upper bound on pieces one oversized request may split into.
    max_chunks: int = 20
    system_message: str = DEFAULT_SYSTEM_MESSAGE
    pricing: ModelPricing | None = None

    def __post_init__(self) -> None:
        """Auto-resolve API key and validate configuration."""
        if not self.use_mock and not is_registered(self.provider):
            raise ConfigurationError(
                f"Unknown provider: {self.provider!r}",
                hint=f"Registered providers: {', '.join(available_providers())}",
            )
        if not self.model:
            raise ConfigurationError(
                "model is required",
                hint="Pass model='gpt-4o-mini' (or your provider's model id).",
            )

        if self.max_tool_iterations < 0:
            raise ConfigurationError(
                f"max_tool_iterations must be ≥ 0, got {self.max_tool_iterations}",
                hint="0 disables tool rounds; 5 is a sensible default.",
            )
        if self.max_chunks < 1:
            raise ConfigurationError(
                f"max_chunks must be ≥ 1, got {self.max_chunks}",
            )
        if self.max_response_tokens < 1:
            raise ConfigurationError(
                f"max_response_tokens must be ≥ 1, got {self.max_response_tokens}",
            )
        if self.max_request_tokens <= self.max_response_tokens:
            raise ConfigurationError(
                "max_request_tokens must exceed max_response_tokens",
                hint="max_request_tokens is the model's full context window.",
            )

        # Auto-resolve API key from environment if not provided
        env_var = API_KEY_ENV_VARS.get(self.provider)
        if self.api_key is None and not self.use_mock and env_var is not None:
            object.__setattr__(self, "api_key", os.environ.get(env_var))

        # Validate: real API calls to built-in providers need a key
        if not self.use_mock and env_var is not None and not self.api_key:
            raise ConfigurationError(
                f"API key required for {self.provider}",
                hint=f"Set {env_var} environment variable or pass api_key=...",
            )

    @property
    def request_token_budget(self) -> int:
        return self.max_request_tokens - self.max_response_tokens

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        return (
            f"Config(provider={self.provider!r}, model={self.model!r}, "
            f"api_key={'[REDACTED]' if self.api_key else None}, use_mock={self.use_mock})"
        )

    __repr__ = __str__
