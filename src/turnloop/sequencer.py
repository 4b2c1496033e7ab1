"""Drive an oversized request through the tool loop one piece at a time.

Pieces are never processed concurrently: each one sees the history left by
the previous one.
"""

from __future__ import annotations

from dataclasses import replace
import logging
from typing import TYPE_CHECKING, TypeVar

from turnloop.errors import ChunkLimitError
from turnloop.models import TurnResult, Usage
from turnloop.splitter import SEPARATOR

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Sequence

T = TypeVar("T")

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHUNKS = 20


def chunk_metadata(index: int, total: int) -> dict[str, int]:
    return {"current_chunk": index + 1, "total_chunks": total}


class ChunkSequencer:
    """Strictly sequential per-piece driver."""

    def __init__(self, max_chunks: int = DEFAULT_MAX_CHUNKS) -> None:
        if max_chunks < 1:
            raise ValueError("max_chunks must be >= 1")
        self.max_chunks = max_chunks

    def check(self, pieces: Sequence[str]) -> None:
        if not pieces:
            raise ValueError("at least one piece is required")
        if len(pieces) > self.max_chunks:
            raise ChunkLimitError(
                f"Request split into {len(pieces)} pieces; limit is {self.max_chunks}",
                hint="Send less data per call or raise Config.max_chunks.",
            )

    async def process_all(
        self,
        pieces: Sequence[str],
        turn_fn: Callable[[str, int, int], Awaitable[T]],
    ) -> list[T]:
        """Await ``turn_fn(piece, index, total)`` for each piece, in order."""
        self.check(pieces)
        total = len(pieces)
        results: list[T] = []
        for index, piece in enumerate(pieces):
            if total > 1:
                logger.debug("Processing piece %d/%d", index + 1, total)
            results.append(await turn_fn(piece, index, total))
        return results

    async def stream_all(
        self,
        pieces: Sequence[str],
        stream_fn: Callable[[str, int, int], AsyncIterator[TurnResult]],
    ) -> AsyncIterator[TurnResult]:
        """Concatenate each piece's stream into one.

        A paragraph separator chunk sits between pieces. Every chunk carries
        ``current_chunk``/``total_chunks``. Only the final chunk of the last
        piece is complete; its usage totals all pieces.
        """
        self.check(pieces)
        total = len(pieces)
        usage: Usage | None = None

        for index, piece in enumerate(pieces):
            meta = chunk_metadata(index, total)
            last_piece = index == total - 1
            if index > 0:
                yield TurnResult(
                    content=SEPARATOR,
                    is_complete=False,
                    metadata={**meta, "separator": True},
                )

            stream = stream_fn(piece, index, total)
            try:
                async for chunk in stream:
                    if not chunk.is_complete:
                        yield chunk.with_metadata(**meta)
                        continue
                    if chunk.usage is not None:
                        usage = chunk.usage if usage is None else usage + chunk.usage
                    if last_piece:
                        yield replace(chunk, usage=usage).with_metadata(**meta)
                    else:
                        yield replace(chunk, is_complete=False).with_metadata(
                            **meta, piece_complete=True
                        )
            finally:
                aclose = getattr(stream, "aclose", None)
                if callable(aclose):
                    await aclose()
