# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 Chetter Contributors

"""Per-key task sequencing.

Tasks submitted under the same key run one at a time, in submission order.
Tasks under different keys run concurrently. Each active key owns one worker
task draining its private queue; the worker exits once the queue is empty.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Hashable
from typing import Any

from chetter.errors import SequencerBusy

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


class Sequencer:
    """Runs tasks serially per key and concurrently across keys."""

    def __init__(self, max_pending_per_key: int = 32) -> None:
        if max_pending_per_key < 1:
            raise ValueError("max_pending_per_key must be >= 1")
        self._max_pending = max_pending_per_key
        self._queues: dict[Hashable, deque[tuple[TaskFactory, asyncio.Future]]] = {}
        self._workers: dict[Hashable, asyncio.Task] = {}
        self._running: set[Hashable] = set()
        self._closed = False

    def submit(self, key: Hashable, task: TaskFactory) -> asyncio.Future:
        """Queue *task* under *key* and return a future for its result.

        Raises ``SequencerBusy`` if the key's backlog is full or the sequencer
        is shutting down.
        """
        if self._closed:
            raise SequencerBusy("Sequencer is shutting down")

        queue = self._queues.setdefault(key, deque())
        if self.pending(key) >= self._max_pending:
            raise SequencerBusy(f"Backlog full for {key} ({self._max_pending} tasks)")

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        queue.append((task, future))
        if key not in self._workers:
            self._workers[key] = asyncio.create_task(
                self._drain(key), name=f"sequencer-{key}"
            )
        return future

    def pending(self, key: Hashable) -> int:
        """Queued plus running tasks for *key*."""
        queued = len(self._queues.get(key, ()))
        return queued + (1 if key in self._running else 0)

    @property
    def active_keys(self) -> int:
        return len(self._workers)

    @property
    def closed(self) -> bool:
        return self._closed

    async def _drain(self, key: Hashable) -> None:
        queue = self._queues[key]
        try:
            while queue:
                task, future = queue.popleft()
                if future.cancelled():
                    continue
                self._running.add(key)
                try:
                    result = await task()
                except asyncio.CancelledError:
                    future.cancel()
                    raise
                except Exception as exc:
                    if not future.done():
                        future.set_exception(exc)
                else:
                    if not future.done():
                        future.set_result(result)
                finally:
                    self._running.discard(key)
        finally:
            # Leftovers only exist after cancellation.
            while queue:
                _, future = queue.popleft()
                future.cancel()
            del self._queues[key]
            del self._workers[key]

    async def join(self) -> None:
        """Wait until every key's queue is empty."""
        while self._workers:
            await asyncio.gather(*self._workers.values(), return_exceptions=True)

    async def close(self, timeout: float = 30.0) -> None:
        """Stop accepting tasks and wait for queued work to finish.

        Workers still running after *timeout* seconds are cancelled.
        """
        self._closed = True
        workers = list(self._workers.values())
        if not workers:
            return
        logger.info("Waiting for %d key(s) to drain", len(workers))
        _, still_running = await asyncio.wait(workers, timeout=timeout)
        if still_running:
            logger.warning("Cancelling %d key(s) after %.0fs", len(still_running), timeout)
            for worker in still_running:
                worker.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)
