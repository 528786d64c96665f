"""
Process-wide expiring cache for credentials obtained from external systems
(ERP session cookie, B2B bearer token).

One slot per cache. Renewal is single-flight: concurrent callers that find the
slot stale wait on the same lock and the first one refreshes; the rest re-check
and reuse the fresh value instead of issuing their own login.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CachedCredential(Generic[T]):
    value: T
    acquired_at: float
    lifetime: float

    def is_fresh(self, now: float, safety_margin: float = 0.0) -> bool:
        return (now - self.acquired_at) < (self.lifetime - safety_margin)


class ExpiringCache(Generic[T]):
    """
    Single-slot cache. A value is usable while now - acquired_at < lifetime - safety_margin.
    The slot is replaced wholesale on renewal and never mutated in place.
    """

    def __init__(self, name: str, safety_margin: float = 0.0, clock: Callable[[], float] = time.time):
        self.name = name
        self.safety_margin = safety_margin
        self._clock = clock
        self._entry: Optional[CachedCredential[T]] = None
        self._lock: Optional[asyncio.Lock] = None

    @property
    def entry(self) -> Optional[CachedCredential[T]]:
        return self._entry

    def peek(self) -> Optional[T]:
        """Return the cached value if still fresh, without renewing."""
        entry = self._entry
        if entry is not None and entry.is_fresh(self._clock(), self.safety_margin):
            return entry.value
        return None

    def store(self, value: T, lifetime: float) -> CachedCredential[T]:
        entry = CachedCredential(value=value, acquired_at=self._clock(), lifetime=float(lifetime))
        self._entry = entry
        return entry

    def clear(self) -> None:
        if self._entry is not None:
            logger.info("%s cache cleared", self.name)
        self._entry = None

    def _get_lock(self) -> asyncio.Lock:
        # Created lazily so the cache can be built at import time outside a running loop
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def get_or_refresh(self, refresh: Callable[[], Awaitable[tuple[T, float]]]) -> T:
        """
        Return the cached value, or call refresh() -> (value, lifetime_seconds) once
        and cache its result. Exceptions from refresh() propagate and leave the slot as it was.
        """
        cached = self.peek()
        if cached is not None:
            return cached
        async with self._get_lock():
            cached = self.peek()
            if cached is not None:
                return cached
            value, lifetime = await refresh()
            self.store(value, lifetime)
            return value
