"""Asyncio work queue with per-key exclusivity.

A key is held in at most one place: queued (dirty), being processed, or
both when it was re-added during processing. A key being processed is never
handed to a second worker; re-adds during processing are deferred until
``done(key)``. Repeated adds of a queued key collapse into one.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Hashable

from platform_operator.metrics import queue_depth

logger = logging.getLogger(__name__)


class WorkQueue:
    def __init__(self):
        self._queue: deque = deque()
        self._dirty: set = set()
        self._processing: set = set()
        self._timers: dict[Hashable, asyncio.TimerHandle] = {}
        self._ready = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def _publish_depth(self) -> None:
        queue_depth.set(len(self._queue))

    def add(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._ready.set()
        self._publish_depth()

    def add_after(self, key: Hashable, delay: float) -> None:
        """Add ``key`` after ``delay`` seconds; an earlier pending add wins."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        due = loop.time() + delay
        existing = self._timers.get(key)
        if existing is not None:
            if existing.when() <= due:
                return
            existing.cancel()
        self._timers[key] = loop.call_at(due, self._fire, key)

    def _fire(self, key: Hashable) -> None:
        self._timers.pop(key, None)
        self.add(key)

    async def get(self) -> Hashable | None:
        """Next key to process, or None once the queue is shut down."""
        while True:
            if self._shutting_down:
                return None
            if self._queue:
                key = self._queue.popleft()
                self._dirty.discard(key)
                self._processing.add(key)
                self._publish_depth()
                return key
            self._ready.clear()
            await self._ready.wait()

    def done(self, key: Hashable) -> None:
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            self._ready.set()
            self._publish_depth()

    def is_processing(self, key: Hashable) -> bool:
        return key in self._processing

    def shutdown(self) -> None:
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._ready.set()
        logger.info("Work queue shut down")
