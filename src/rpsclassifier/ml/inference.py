"""Bounded execution of classification jobs.

Pipeline:
    route (async) -> slot (asyncio.Semaphore, N) -> worker thread (N) -> ImageClassifier.classify

Decoding, model loading and model execution all block, so a job holds one
slot and one worker thread from start to finish. A job that waits longer
than the slot timeout fails with ClassifierBusyError.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from rpsclassifier.errors import ClassifierBusyError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from rpsclassifier.config import Settings
    from rpsclassifier.ml.classifier import ImageClassifier

logger = logging.getLogger(__name__)

SLOT_TIMEOUT_SECONDS: float = 5.0


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time job counts."""

    running: int = 0
    waiting: int = 0


class InferencePool:
    """Runs classification jobs on worker threads, at most max_concurrent at a time."""

    def __init__(self, settings: Settings, timeout: float = SLOT_TIMEOUT_SECONDS) -> None:
        self._slots = asyncio.Semaphore(settings.max_concurrent)
        self._workers = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="rpsclassifier-worker",
        )
        self._timeout = timeout
        self._stats = PoolStats()
        self._stats_lock = threading.Lock()

    async def classify(self, classifier: ImageClassifier, data: bytes) -> list[float]:
        """Classify an image blob on a worker thread.

        Raises:
            ClassifierBusyError: If no slot frees up within the timeout.
            ClassifierError: Whatever the classifier itself raises.
        """
        async with self._slot():
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._workers, classifier.classify, data)

    @property
    def stats(self) -> PoolStats:
        with self._stats_lock:
            return self._stats

    def shutdown(self) -> None:
        """Wait for running jobs, then stop the worker threads."""
        self._workers.shutdown(wait=True)

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        self._count(waiting=1)
        try:
            async with asyncio.timeout(self._timeout):
                await self._slots.acquire()
        except TimeoutError:
            logger.warning("No classification slot within %.1fs", self._timeout)
            raise ClassifierBusyError(f"No classification slot within {self._timeout:.1f}s") from None
        finally:
            self._count(waiting=-1)

        self._count(running=1)
        try:
            yield
        finally:
            self._slots.release()
            self._count(running=-1)

    def _count(self, *, running: int = 0, waiting: int = 0) -> None:
        with self._stats_lock:
            self._stats = replace(
                self._stats,
                running=self._stats.running + running,
                waiting=self._stats.waiting + waiting,
            )
