"""Chunked scatter/gather helpers for per-app checks."""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

MIN_CHUNK_SIZE = 3
MAX_CHUNK_SIZE = 10


def optimal_chunks(
    items: Sequence[T],
    min_chunk_size: int = MIN_CHUNK_SIZE,
    max_chunk_size: int = MAX_CHUNK_SIZE,
    cpu_count: int | None = None,
) -> list[list[T]]:
    """Split items into chunks sized by CPU parallelism, clamped to [min, max].

    Args:
        items: Items to split
        min_chunk_size: Smallest chunk size
        max_chunk_size: Largest chunk size
        cpu_count: Override for the detected CPU count

    Returns:
        List of chunks preserving item order
    """
    if not items:
        return []
    cpus = cpu_count or os.cpu_count() or 1
    size = min(max(len(items) // cpus, min_chunk_size), max_chunk_size)
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


async def gather_chunked(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R | None]],
    label: str = "item",
) -> list[R]:
    """Run ``worker`` over every item, all chunks concurrently.

    A worker that raises is logged and counted as no result; ``None`` results
    are dropped. Output order is not guaranteed to follow input order.
    """

    async def guarded(item: T) -> R | None:
        try:
            return await worker(item)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Check failed for %s %r: %s", label, item, e)
            return None

    async def run_chunk(chunk: list[T]) -> list[R | None]:
        return await asyncio.gather(*(guarded(item) for item in chunk))

    chunk_results = await asyncio.gather(*(run_chunk(chunk) for chunk in optimal_chunks(items)))
    return [r for chunk in chunk_results for r in chunk if r is not None]
