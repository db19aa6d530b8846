"""Concurrency limit that shrinks under memory pressure.

AutoscaledConcurrency behaves like a semaphore whose size is the desired
concurrency. The desired value starts at ``max_concurrency``, drops by one
(never below 1) on each sample taken while system memory usage is above
``max_memory_ratio``, and climbs back by one per sample once pressure
clears.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

import psutil

logger = logging.getLogger(__name__)


def system_memory_ratio() -> float:
    """Fraction of system memory in use, from psutil."""
    return psutil.virtual_memory().percent / 100.0


class AutoscaledConcurrency:
    """Bounded, memory-aware in-flight limit.

    Example::

        concurrency = AutoscaledConcurrency(max_concurrency=8)
        async with concurrency.slot():
            await fetch()
    """

    def __init__(
        self,
        max_concurrency: int,
        max_memory_ratio: float = 0.9,
        memory_probe: Callable[[], float] | None = None,
        sample_interval: float = 1.0,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency
        self.max_memory_ratio = max_memory_ratio
        self.sample_interval = sample_interval
        self._memory_probe = memory_probe or system_memory_ratio
        self._condition = asyncio.Condition()
        self._last_sample: float | None = None
        self.desired = max_concurrency
        self.in_flight = 0
        self.peak_in_flight = 0

    def sample(self) -> int:
        """Take one memory sample and adjust the desired concurrency."""
        ratio = self._memory_probe()
        self._last_sample = time.monotonic()
        if ratio > self.max_memory_ratio:
            if self.desired > 1:
                self.desired -= 1
                logger.warning(
                    f"Memory at {ratio:.0%}, lowering concurrency to "
                    f"{self.desired}"
                )
        elif self.desired < self.max_concurrency:
            self.desired += 1
            logger.info(f"Memory pressure cleared, concurrency {self.desired}")
        return self.desired

    def _maybe_sample(self) -> None:
        if (
            self._last_sample is None
            or time.monotonic() - self._last_sample >= self.sample_interval
        ):
            self.sample()

    async def acquire(self) -> None:
        async with self._condition:
            self._maybe_sample()
            await self._condition.wait_for(
                lambda: self.in_flight < self.desired
            )
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)

    async def release(self) -> None:
        async with self._condition:
            self.in_flight -= 1
            self._maybe_sample()
            self._condition.notify_all()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            await self.release()
