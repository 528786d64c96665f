"""
Fixed-interval pacing for calls to external portals.
Replaces inline sleeps between pages/stores; sleep and clock are injectable so tests never wait.
"""
import asyncio
import time
from typing import Awaitable, Callable, Optional


class IntervalPacer:
    """Guarantees at least `interval` seconds between consecutive wait() returns."""

    def __init__(
        self,
        interval: float,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.interval = max(0.0, float(interval))
        self._sleep = sleep
        self._clock = clock
        self._last: Optional[float] = None

    async def wait(self) -> None:
        if self._last is not None and self.interval > 0:
            remaining = self.interval - (self._clock() - self._last)
            if remaining > 0:
                await self._sleep(remaining)
        self._last = self._clock()

    def reset(self) -> None:
        self._last = None
