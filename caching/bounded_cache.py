"""
Bounded In-Memory TTL Cache
Holds short-lived, process-local state such as messaging cooldowns and alert suppression
"""

import time
import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, Hashable, Optional

logger = logging.getLogger(__name__)


class BoundedTTLCache:
    """In-memory cache with TTL expiry and a hard entry cap (oldest evicted first)"""

    def __init__(self, default_ttl: float = 300, max_entries: int = 10000,
                 clock: Callable[[], float] = time.monotonic):
        self._cache: "OrderedDict[Hashable, Dict[str, Any]]" = OrderedDict()
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "evictions": 0}

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._cache.get(key)
        if entry is not None:
            if entry["expires_at"] > self._clock():
                self.stats["hits"] += 1
                return entry["value"]
            del self._cache[key]
            self.stats["evictions"] += 1

        self.stats["misses"] += 1
        return default

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        if ttl is None:
            ttl = self.default_ttl

        self._cache.pop(key, None)
        self._cache[key] = {"value": value, "expires_at": self._clock() + ttl}
        self.stats["sets"] += 1

        if len(self._cache) > self.max_entries:
            self._cleanup_expired()
        while len(self._cache) > self.max_entries:
            self._cache.popitem(last=False)
            self.stats["evictions"] += 1

    def delete(self, key: Hashable) -> bool:
        return self._cache.pop(key, None) is not None

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._cache)

    def _cleanup_expired(self) -> None:
        """Remove expired entries"""
        now = self._clock()
        expired_keys = [key for key, entry in self._cache.items() if entry["expires_at"] <= now]
        for key in expired_keys:
            del self._cache[key]
            self.stats["evictions"] += 1

    def get_stats(self) -> Dict[str, Any]:
        total_requests = self.stats["hits"] + self.stats["misses"]
        hit_rate = (self.stats["hits"] / total_requests * 100) if total_requests > 0 else 0
        return {
            **self.stats,
            "total_requests": total_requests,
            "hit_rate_percent": round(hit_rate, 2),
            "cache_size": len(self._cache),
        }


class ActionCooldown:
    """Per-key cooldown: ``try_acquire`` succeeds at most once per window"""

    def __init__(self, seconds: float, max_entries: int = 10000,
                 clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._cache = BoundedTTLCache(default_ttl=seconds, max_entries=max_entries, clock=clock)
        self._clock = clock

    def try_acquire(self, key: Hashable) -> bool:
        if self.seconds <= 0:
            return True
        if key in self._cache:
            return False
        self._cache.set(key, self._clock(), ttl=self.seconds)
        return True

    def remaining(self, key: Hashable) -> float:
        started = self._cache.get(key)
        if started is None:
            return 0.0
        return max(0.0, self.seconds - (self._clock() - started))

    def reset(self, key: Hashable) -> None:
        self._cache.delete(key)
