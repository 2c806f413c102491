from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from vendor_ingestion.pipeline_config import RateLimitSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Permit:
    """Right to perform one request under the concurrency and rate ceilings."""
    city_id: str
    granted_at: float
    in_flight: int


class RateLimiter:
    """
    Bounds requests across every city of a run.

    acquire() waits until fewer than max_concurrent permits are outstanding AND fewer
    than max_requests_per_window permits were granted in the trailing window. All
    counters are mutated under one asyncio.Condition; release notifies waiters.
    """

    def __init__(
        self,
        *,
        max_concurrent: int,
        max_requests_per_window: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_concurrent < 1 or max_requests_per_window < 1 or window_seconds <= 0:
            raise ValueError("Rate limiter bounds must be positive")

        self.max_concurrent = max_concurrent
        self.max_requests_per_window = max_requests_per_window
        self.window_seconds = window_seconds
        self._clock = clock

        self._condition = asyncio.Condition()
        self._in_flight = 0
        self._grants: deque[float] = deque()
        self.peak_in_flight = 0
        self.total_granted = 0

    @classmethod
    def from_spec(cls, spec: RateLimitSpec) -> "RateLimiter":
        return cls(
            max_concurrent=spec.max_concurrent,
            max_requests_per_window=spec.max_requests_per_window,
            window_seconds=spec.window_seconds,
        )

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def _prune_window(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self._grants and self._grants[0] <= horizon:
            self._grants.popleft()

    def _window_wait(self, now: float) -> float:
        """Seconds until the window admits another grant (0 if it already does)."""
        self._prune_window(now)
        if len(self._grants) < self.max_requests_per_window:
            return 0.0
        return max(self._grants[0] + self.window_seconds - now, 0.0)

    async def _acquire(self, city_id: str) -> Permit:
        async with self._condition:
            while True:
                if self._in_flight >= self.max_concurrent:
                    await self._condition.wait()
                    continue

                now = self._clock()
                window_wait = self._window_wait(now)
                if window_wait > 0:
                    logger.debug("City %s waiting %.2fs for the request window", city_id, window_wait)
                    try:
                        # Released permits also wake us; the loop re-checks both limits.
                        await asyncio.wait_for(self._condition.wait(), timeout=window_wait)
                    except asyncio.TimeoutError:
                        pass
                    continue

                self._in_flight += 1
                self._grants.append(now)
                self.total_granted += 1
                self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
                return Permit(city_id=city_id, granted_at=now, in_flight=self._in_flight)

    async def _release(self) -> None:
        async with self._condition:
            self._in_flight -= 1
            self._condition.notify_all()

    @asynccontextmanager
    async def acquire(self, city_id: str) -> AsyncIterator[Permit]:
        permit = await self._acquire(city_id)
        try:
            yield permit
        finally:
            # shield: a cancelled holder must still give the slot back
            await asyncio.shield(self._release())
