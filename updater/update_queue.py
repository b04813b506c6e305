"""Bounded queue of in-process Sparkle updates."""

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

MAX_CONCURRENT_UPDATES = 3


@dataclass
class _Operation:
    bundle_id: str
    task: asyncio.Task | None = None
    started: bool = False
    cancelled: bool = False


class UpdateQueue:
    """Runs at most ``max_concurrent`` operations at once, one per bundle id.

    Cancellation is cooperative: ``cancel_all`` marks queued operations and
    each one checks the mark when it reaches the front of the queue. Running
    operations are left to finish.
    """

    def __init__(self, max_concurrent: int = MAX_CONCURRENT_UPDATES):
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._lock = threading.Lock()
        self._operations: dict[str, _Operation] = {}

    def contains_operation(self, bundle_id: str) -> bool:
        with self._lock:
            return bundle_id in self._operations

    def add_operation(self, bundle_id: str, work: Callable[[], Awaitable]) -> asyncio.Task | None:
        """Queue ``work`` for ``bundle_id``.

        Returns:
            The scheduled task, or None if the app is already queued
        """
        with self._lock:
            if bundle_id in self._operations:
                logger.debug("%s is already queued", bundle_id)
                return None
            operation = _Operation(bundle_id)
            self._operations[bundle_id] = operation
            operation.task = asyncio.ensure_future(self._run(operation, work))
        return operation.task

    def cancel_all(self) -> int:
        """Cancel every operation that has not started; returns how many."""
        count = 0
        with self._lock:
            for operation in self._operations.values():
                if not operation.started and not operation.cancelled:
                    operation.cancelled = True
                    count += 1
        if count:
            logger.info("Cancelled %d queued updates", count)
        return count

    @property
    def operation_count(self) -> int:
        with self._lock:
            return len(self._operations)

    async def join(self) -> None:
        """Wait until every queued operation has finished."""
        with self._lock:
            tasks = [op.task for op in self._operations.values() if op.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, operation: _Operation, work: Callable[[], Awaitable]):
        try:
            async with self._semaphore:
                with self._lock:
                    if operation.cancelled:
                        logger.debug("Skipping cancelled update for %s", operation.bundle_id)
                        return None
                    operation.started = True
                return await work()
        finally:
            with self._lock:
                self._operations.pop(operation.bundle_id, None)
