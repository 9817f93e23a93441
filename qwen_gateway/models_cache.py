from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple


class ModelListCache:
    """Process-wide cache of the upstream model list (raw JSON text).

    Readers take the current ``(value, timestamp)`` pair without locking; the
    pair is replaced as a whole. Refreshes go through one lock so a burst of
    requests after expiry triggers a single upstream call.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entry: Optional[Tuple[str, float]] = None
        self._lock = asyncio.Lock()
        self.refreshes = 0

    def fresh(self) -> Optional[str]:
        entry = self._entry
        if entry is None:
            return None
        value, ts = entry
        if self._clock() - ts < self.ttl:
            return value
        return None

    async def get(self, loader: Callable[[], Awaitable[str]]) -> str:
        cached = self.fresh()
        if cached is not None:
            return cached
        async with self._lock:
            # Another request may have refreshed while we waited
            cached = self.fresh()
            if cached is not None:
                return cached
            value = await loader()
            self._entry = (value, self._clock())
            self.refreshes += 1
            return value

    def snapshot(self) -> Dict[str, Any]:
        entry = self._entry
        now = self._clock()
        if entry is None:
            return {"cached": False, "ttl": self.ttl, "refreshes": self.refreshes}
        value, ts = entry
        return {
            "cached": True,
            "age": round(now - ts, 3),
            "ttl": self.ttl,
            "fresh": now - ts < self.ttl,
            "size": len(value),
            "refreshes": self.refreshes,
        }

    def clear(self) -> bool:
        removed = self._entry is not None
        self._entry = None
        return removed
