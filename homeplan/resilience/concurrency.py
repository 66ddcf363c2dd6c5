"""
Bounded concurrency for upstream calls using an asyncio semaphore.

Callers beyond the bound wait for a slot; there is no fairness guarantee
beyond what asyncio.Semaphore provides.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from typing import Callable, TypeVar

import structlog

logger = structlog.get_logger()
T = TypeVar("T")


class ConcurrencyLimiter:
    """Caps the number of in-flight upstream calls for one client instance."""

    def __init__(self, max_concurrent: int = 10) -> None:
        self._limit = max(1, max_concurrent)
        self._semaphore = asyncio.Semaphore(self._limit)
        self._in_flight = 0
        self._peak = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def peak(self) -> int:
        """Highest in_flight value observed since construction."""
        return self._peak

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[None]:
        if self._semaphore.locked():
            logger.debug("concurrency_limit_wait", in_flight=self._in_flight, limit=self._limit)
        async with self._semaphore:
            self._in_flight += 1
            self._peak = max(self._peak, self._in_flight)
            try:
                yield
            finally:
                self._in_flight -= 1

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        async with self.acquire():
            return await operation()
