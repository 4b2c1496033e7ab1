"""Token counting.

The engine treats token counting as an opaque ``Callable[[str], int]``. The
default is a deterministic character heuristic; ``TiktokenCounter`` gives
exact counts for OpenAI-family models when ``tiktoken`` is installed.
"""

from __future__ import annotations

from collections.abc import Callable
import math
from typing import TYPE_CHECKING, Any

from turnloop.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from turnloop.models import Message

TokenCounter = Callable[[str], int]

_CHARS_PER_TOKEN = 4
# Role markers and separators each message costs on the wire.
_MESSAGE_OVERHEAD_TOKENS = 4


def estimate_tokens(text: str) -> int:
    """Approximate token count: about four characters per token."""
    if not text:
        return 0
    return max(1, math.ceil(len(text) / _CHARS_PER_TOKEN))


class TiktokenCounter:
    """Exact token counts via ``tiktoken``.

    The encoding is resolved lazily so constructing the counter never
    touches the network-backed encoding cache.
    """

    def __init__(self, model: str = "gpt-4", *, encoding: str | None = None) -> None:
        self.model = model
        self.encoding_name = encoding
        self._encoding: Any = None

    def _get_encoding(self) -> Any:
        if self._encoding is None:
            try:
                import tiktoken
            except ImportError as e:
                raise ConfigurationError(
                    "tiktoken package not installed",
                    hint="pip install 'turnloop[tiktoken]' or use estimate_tokens.",
                ) from e
            if self.encoding_name is not None:
                self._encoding = tiktoken.get_encoding(self.encoding_name)
            else:
                try:
                    self._encoding = tiktoken.encoding_for_model(self.model)
                except KeyError:
                    self._encoding = tiktoken.get_encoding("cl100k_base")
        return self._encoding

    def __call__(self, text: str) -> int:
        if not text:
            return 0
        return len(self._get_encoding().encode(text))


def count_message_tokens(
    messages: Iterable[Message], count: TokenCounter = estimate_tokens
) -> int:
    """Estimate the prompt size of *messages*, including per-message overhead."""
    total = 0
    for message in messages:
        total += _MESSAGE_OVERHEAD_TOKENS
        if message.content:
            total += count(message.content)
        for call in message.tool_calls:
            total += count(call.name) + count(call.arguments_json)
    return total
