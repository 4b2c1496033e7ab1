"""Split an oversized request into pieces that each fit a token budget.

Each piece is rendered as ``message``, the data segment and the trailing
``ending`` text, joined by blank lines. Only the data payload is ever split.
Segments break at paragraph boundaries first, then line boundaries, then
mid-line as a last resort, and always concatenate back to the serialized
payload exactly.
"""

from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from turnloop.errors import ConfigurationError
from turnloop.tokens import estimate_tokens

if TYPE_CHECKING:
    from collections.abc import Callable

    from turnloop.tokens import TokenCounter

    _Splitter = Callable[[str, int, TokenCounter], list[str]]

logger = logging.getLogger(__name__)

SEPARATOR = "\n\n"
#: Headroom kept free for role markers and request framing.
DEFAULT_OVERHEAD_TOKENS = 50

_PARAGRAPH_BOUNDARY = re.compile(r"(?<=\n\n)")


def serialize_data(data: Any) -> str:
    """Serialize *data* for a prompt with stable key ordering.

    Strings pass through untouched. Pydantic models are dumped in JSON mode
    first so they serialize like plain dicts.
    """
    if isinstance(data, str):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False, default=str)


def render_piece(message: str, data_segment: str | None, ending: str | None) -> str:
    return SEPARATOR.join(part for part in (message, data_segment, ending) if part)


def split_request(
    message: str,
    data: Any = None,
    ending: str | None = None,
    *,
    token_budget: int,
    count_tokens: TokenCounter = estimate_tokens,
    overhead_tokens: int = 0,
) -> list[str]:
    """Return ordered request pieces that each fit *token_budget*.

    A request without data is returned as a single piece even when it is
    over budget; there is nothing that can be split.
    """
    if token_budget < 1:
        raise ConfigurationError(
            f"token_budget must be >= 1, got {token_budget}",
            hint="Check max_request_tokens and max_response_tokens in Config.",
        )

    serialized = serialize_data(data) if data is not None else ""
    whole = render_piece(message, serialized, ending)
    if not serialized:
        if count_tokens(whole) + overhead_tokens > token_budget:
            logger.warning(
                "Request has no data to split but exceeds the budget (%d tokens)",
                token_budget,
            )
        return [whole]

    if count_tokens(whole) + overhead_tokens <= token_budget:
        return [whole]

    separators = int(bool(message)) + int(bool(ending))
    fixed = (
        count_tokens(message)
        + count_tokens(ending or "")
        + separators * count_tokens(SEPARATOR)
        + overhead_tokens
    )
    available = token_budget - fixed
    if available < 1:
        raise ConfigurationError(
            f"Message and ending use {fixed} of {token_budget} tokens; "
            "no room left for data",
            hint="Shorten the message, or raise max_request_tokens.",
        )

    segments = _split_text(serialized, available, count_tokens)
    logger.debug(
        "Split %d-char payload into %d piece(s) of <= %d tokens",
        len(serialized),
        len(segments),
        available,
    )
    return [render_piece(message, segment, ending) for segment in segments]


def _split_text(text: str, limit: int, count: TokenCounter) -> list[str]:
    paragraphs = [p for p in _PARAGRAPH_BOUNDARY.split(text) if p]
    return _pack(paragraphs, limit, count, _split_paragraph)


def _split_paragraph(paragraph: str, limit: int, count: TokenCounter) -> list[str]:
    lines = paragraph.splitlines(keepends=True)
    return _pack(lines, limit, count, _hard_split)


def _pack(
    units: list[str], limit: int, count: TokenCounter, finer: _Splitter
) -> list[str]:
    """Greedily join *units* into segments of at most *limit* tokens.

    A unit that is too large on its own is handed to *finer* for a smaller
    split before packing resumes.
    """
    segments: list[str] = []
    current: list[str] = []
    current_tokens = 0

    for unit in units:
        tokens = count(unit)
        if tokens > limit:
            if current:
                segments.append("".join(current))
                current, current_tokens = [], 0
            segments.extend(finer(unit, limit, count))
            continue
        if current and current_tokens + tokens > limit:
            segments.append("".join(current))
            current, current_tokens = [], 0
        current.append(unit)
        current_tokens += tokens

    if current:
        segments.append("".join(current))
    return segments


def _hard_split(text: str, limit: int, count: TokenCounter) -> list[str]:
    """Cut *text* at the longest prefixes that fit, found by binary search."""
    parts: list[str] = []
    rest = text
    while rest:
        if count(rest) <= limit:
            parts.append(rest)
            break
        lo, hi = 1, len(rest)
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if count(rest[:mid]) <= limit:
                lo = mid
            else:
                hi = mid - 1
        parts.append(rest[:lo])
        rest = rest[lo:]
    return parts
