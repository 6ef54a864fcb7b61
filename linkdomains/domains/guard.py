"""
Per-domain concurrency primitives.

`InFlightGuard` marks an operation as outstanding for one domain and rejects
a second attempt until the first is released (plus an optional cool-down).
`DomainLocks` serializes mutations of a single domain.
"""

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from .errors import DomainError

logger = logging.getLogger("linkdomains.domains.guard")


class InFlightGuard:
    """Map of outstanding (operation, domain) markers."""

    def __init__(self, cooldown: float = 2.0):
        self.cooldown = cooldown
        # key -> pending cool-down timer, None while the operation runs
        self._held: Dict[str, Optional[asyncio.TimerHandle]] = {}

    @staticmethod
    def key(operation: str, domain_id: str) -> str:
        return f"{operation}:{domain_id}"

    def is_held(self, key: str) -> bool:
        return key in self._held

    def is_running(self, key: str) -> bool:
        """Held and not merely cooling down."""
        return key in self._held and self._held[key] is None

    def acquire(self, key: str) -> bool:
        """Mark key as in flight. Returns False if it already is."""
        if key in self._held:
            return False
        self._held[key] = None
        return True

    def release(self, key: str, cooldown: Optional[float] = None) -> None:
        """Release key, keeping it held for the cool-down period."""
        if not self.is_running(key):
            return
        delay = self.cooldown if cooldown is None else cooldown
        if delay <= 0:
            self._held.pop(key, None)
            return
        loop = asyncio.get_running_loop()
        self._held[key] = loop.call_later(delay, self._expire, key)

    def _expire(self, key: str) -> None:
        self._held.pop(key, None)

    def release_all(self) -> None:
        """Drop every marker immediately, cancelling cool-down timers."""
        for handle in self._held.values():
            if handle is not None:
                handle.cancel()
        if self._held:
            logger.debug(f"Released {len(self._held)} in-flight markers")
        self._held.clear()

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        busy: DomainError,
        cooldown: Optional[float] = None,
    ) -> AsyncIterator[None]:
        """Hold key for the duration of the block; raise busy if taken."""
        if not self.acquire(key):
            raise busy
        try:
            yield
        finally:
            self.release(key, cooldown)

    def __len__(self) -> int:
        return len(self._held)


class DomainLocks:
    """
    One asyncio.Lock per key (a domain id or an account lock key).

    Entries live only while someone holds or waits on the lock, so keys of
    idle or deleted domains do not accumulate.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def __call__(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __contains__(self, key: str) -> bool:
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)
