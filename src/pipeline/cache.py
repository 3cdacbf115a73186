"""
In-memory TTL cache for extractor metadata.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    data: Any
    expires_at: float


class MetadataCache:
    """Time-to-live key/value store with a periodic background sweep.

    Reads past ``expires_at`` are misses and evict the entry on the spot; the
    sweep exists so keys that are never read again do not pile up.
    """

    def __init__(
        self,
        default_ttl: float = 60 * 60,
        sweep_interval: float = 5 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    def get(self, key: str) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if now > entry.expires_at:
                del self._entries[key]
                return None
            return entry.data

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + (self.default_ttl if ttl is None else ttl)
        with self._lock:
            self._entries[key] = CacheEntry(data=value, expires_at=expires_at)

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def sweep(self) -> int:
        """Remove expired entries. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Cache sweep removed {len(expired)} expired entries")
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        return {
            "size": len(self),
            "default_ttl_seconds": self.default_ttl,
            "sweep_interval_seconds": self.sweep_interval,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("Cache sweep failed")

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel the sweep task and drop all entries."""
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            await asyncio.wait({task})
        self.clear()
