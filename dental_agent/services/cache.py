"""Thread-safe in-memory LRU cache with per-entry expiry.

Design decisions
────────────────
• **OrderedDict** for O(1) LRU eviction and promotion.
• **Entry ceiling** rather than a byte budget: the cached values are small
  (tenant ids, clinic configs, service catalogues), so the count is what
  bounds memory.
• **TTL per entry** so an edited clinic config or a re-routed WhatsApp number
  is picked up without a restart.
• **threading.Lock** because FastAPI runs sync endpoints and background
  tasks on a thread pool.

Usage in ConversationService
────────────────────────────
>>> cache = TTLCache(max_entries=256, ttl_seconds=300)
>>> cache.put("tenant:1234567890", "luxury-dental")
>>> cache.get("tenant:1234567890")
'luxury-dental'
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 256
DEFAULT_TTL_SECONDS = 300.0

_MISSING = object()


class TTLCache:
    """Least-Recently-Used cache whose entries also expire after ``ttl_seconds``."""

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._clock = clock
        # key → (value, expires_at)
        self._store: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._lock = threading.Lock()

    # ── Core operations ──────────────────────────────────────────────

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value (promoting it to MRU) or *default*."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return default
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._store[key]
                logger.debug("Cache: expired %s", key)
                return default
            self._store.move_to_end(key)
            return value

    def put(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        """Insert or overwrite *key*.  Evicts the LRU entry when full."""
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        if ttl <= 0 or self._max_entries <= 0:
            return

        with self._lock:
            self._store.pop(key, None)
            while len(self._store) >= self._max_entries:
                evicted_key, _ = self._store.popitem(last=False)
                logger.debug("Cache: evicted %s", evicted_key)
            self._store[key] = (value, self._clock() + ttl)

    def get_or_load(self, key: str, loader: Callable[[], Any]) -> Any:
        """Return the cached value, or call *loader* and cache its result.

        ``None`` results are not cached, so a lookup miss is retried next
        time.  The loader runs outside the lock; two concurrent misses may
        both load, and the later write wins.
        """
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value
        value = loader()
        if value is not None:
            self.put(key, value)
        return value

    # ── Introspection ────────────────────────────────────────────────

    @property
    def entry_count(self) -> int:
        """Number of entries currently stored, expired ones included."""
        return len(self._store)
