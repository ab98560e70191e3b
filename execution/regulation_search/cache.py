"""
In-memory TTL cache for search responses.
"""

import json
import time
import logging
import threading
from collections import OrderedDict
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


def make_cache_key(prefix: str, params: dict) -> str:
    """Deterministic key: sorted parameter names, ``None`` values dropped."""
    cleaned = {k: params[k] for k in sorted(params) if params[k] is not None}
    return f"{prefix}:{json.dumps(cleaned, sort_keys=True, ensure_ascii=False, default=str)}"


class TTLCache:
    """
    Bounded LRU cache with per-entry expiry.

    Usage:
        cache = TTLCache(default_ttl=300)
        cache.set(key, response)
        hit = cache.get(key)  # None once expired
    """

    def __init__(
        self,
        default_ttl: Optional[float] = 300.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, tuple[Any, Optional[float]]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= self._clock():
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store ``value``; ``ttl`` seconds overrides the default; a ttl of 0 never expires."""
        ttl = self.default_ttl if ttl is None else ttl
        expires_at = self._clock() + ttl if ttl else None
        with self._lock:
            self._entries[key] = (value, expires_at)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Cache evicted {evicted[:80]}")

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)
