import asyncio
import time
from typing import Callable


class DedupSet:
    """In-memory set of recently seen call ids with per-entry expiry.

    ``check_and_mark`` is atomic with respect to other coroutines, so two
    deliveries of the same call racing each other cannot both pass.
    """

    def __init__(self, ttl_seconds: float = 86400, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._expires_at: dict[str, float] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        self._purge(self._clock())
        return len(self._expires_at)

    def __contains__(self, call_id: object) -> bool:
        expires_at = self._expires_at.get(str(call_id))
        return expires_at is not None and expires_at > self._clock()

    def _purge(self, now: float) -> None:
        expired = [key for key, expires_at in self._expires_at.items() if expires_at <= now]
        for key in expired:
            del self._expires_at[key]

    async def check_and_mark(self, call_id: str) -> bool:
        """Mark the call as seen. Returns False if it was already seen."""
        key = str(call_id)
        async with self._lock:
            now = self._clock()
            self._purge(now)
            if key in self._expires_at:
                return False
            self._expires_at[key] = now + self.ttl_seconds
            return True
