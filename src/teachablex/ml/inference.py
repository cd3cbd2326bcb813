"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> embed / predict

Embedding and prediction are blocking numpy/onnxruntime/torch calls, so async
routes hand them to this pool. Calls beyond the semaphore limit wait up to
``queue_timeout`` seconds, then raise TimeoutError (mapped to 503).
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from teachablex.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PoolCounters:
    active: int = 0
    queued: int = 0
    completed: int = 0


class InferencePool:
    """Bounds how many blocking ML calls run at once."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="teachablex-infer",
        )
        self._queue_timeout = settings.queue_timeout
        self._counters = PoolCounters()
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object, **kwargs: object) -> T:
        """Run a blocking function on the pool.

        Raises:
            TimeoutError: If no slot frees up within the queue timeout.
        """
        self._bump(queued=1)
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._queue_timeout)
        except TimeoutError:
            logger.warning("Inference queue full for %.1fs; rejecting call", self._queue_timeout)
            raise
        finally:
            self._bump(queued=-1)

        self._bump(active=1)
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, functools.partial(func, *args, **kwargs))
        finally:
            self._semaphore.release()
            self._bump(active=-1, completed=1)

    @property
    def active_count(self) -> int:
        """Number of calls currently running."""
        with self._counter_lock:
            return self._counters.active

    @property
    def queue_depth(self) -> int:
        """Number of calls waiting for a slot."""
        with self._counter_lock:
            return self._counters.queued

    @property
    def completed_count(self) -> int:
        with self._counter_lock:
            return self._counters.completed

    def shutdown(self) -> None:
        """Wait for running calls, then stop the worker threads."""
        self._executor.shutdown(wait=True)

    def _bump(self, active: int = 0, queued: int = 0, completed: int = 0) -> None:
        with self._counter_lock:
            self._counters.active += active
            self._counters.queued += queued
            self._counters.completed += completed
