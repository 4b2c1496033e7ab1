"""turnloop: turn execution for LLM calls.

Retries, tool-call loops, streaming aggregation and oversized-input chunking
behind one conversation-scoped object.

Public API:
    - Caller: call(), stream(), tools, history and usage callbacks
    - Config: Configuration dataclass
    - Options: Per-call generation settings
    - ToolDefinition: A tool the model may call
    - CancellationToken: Cancel or time out an in-flight invocation
"""

from __future__ import annotations

import logging

from turnloop.caller import Caller
from turnloop.cancellation import CancellationToken
from turnloop.config import Config
from turnloop.errors import (
    APIError,
    ChunkLimitError,
    ConfigurationError,
    ContentRetryError,
    InternalError,
    IterationLimitExceeded,
    PermanentProviderError,
    RateLimitError,
    RetryExhaustedError,
    StreamDecodeError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
    TransientProviderError,
    TurnCancelledError,
    TurnloopError,
)
from turnloop.history import ConversationHistory
from turnloop.models import Message, ToolCallRequest, TurnResult, Usage
from turnloop.options import Options
from turnloop.providers import (
    MockProvider,
    Provider,
    ProviderRequest,
    ProviderResponse,
    StreamEvent,
    ToolCallDelta,
    register_provider,
)
from turnloop.retry import RetryPolicy
from turnloop.tools import ToolDefinition, ToolRegistry
from turnloop.usage import ModelPricing, UsageRecord

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("turnloop")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("turnloop").addHandler(logging.NullHandler())

__all__ = [
    "APIError",
    "Caller",
    "CancellationToken",
    "ChunkLimitError",
    "Config",
    "ConfigurationError",
    "ContentRetryError",
    "ConversationHistory",
    "InternalError",
    "IterationLimitExceeded",
    "Message",
    "MockProvider",
    "ModelPricing",
    "Options",
    "PermanentProviderError",
    "Provider",
    "ProviderRequest",
    "ProviderResponse",
    "RateLimitError",
    "RetryExhaustedError",
    "RetryPolicy",
    "StreamDecodeError",
    "StreamEvent",
    "ToolCallDelta",
    "ToolCallRequest",
    "ToolDefinition",
    "ToolError",
    "ToolExecutionError",
    "ToolNotFoundError",
    "ToolRegistry",
    "TransientProviderError",
    "TurnCancelledError",
    "TurnResult",
    "TurnloopError",
    "Usage",
    "UsageRecord",
    "register_provider",
]
