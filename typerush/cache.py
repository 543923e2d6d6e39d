"""
In-memory TTL cache for leaderboard reads.
Sorted leaderboards are cached per game mode and dropped as soon as a
submission produces a new best for that mode.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .logging_utils import get_logger

logger = get_logger("typerush.cache")


@dataclass
class CacheEntry:
    value: Any
    expires_at: float
    created_at: float


class MemoryCache:
    """Thread-safe key/value store with per-entry expiry"""

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}
        # bumped on every delete; a value computed under an older generation is stale
        self._generations: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._stats = {'hits': 0, 'misses': 0, 'sets': 0, 'stale_sets': 0, 'evictions': 0, 'invalidations': 0}

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats['misses'] += 1
                return None
            if time.time() > entry.expires_at:
                del self._entries[key]
                self._stats['misses'] += 1
                self._stats['evictions'] += 1
                return None
            self._stats['hits'] += 1
            return entry.value

    def generation(self, key: str) -> int:
        with self._lock:
            return self._generations.get(key, 0)

    def set(self, key: str, value: Any, ttl_seconds: float = 300, generation: Optional[int] = None) -> bool:
        """Store a value. When `generation` is given and the key was deleted
        since it was read, the value is dropped and False is returned."""
        with self._lock:
            if generation is not None and generation != self._generations.get(key, 0):
                self._stats['stale_sets'] += 1
                return False
            now = time.time()
            self._entries[key] = CacheEntry(value=value, expires_at=now + ttl_seconds, created_at=now)
            self._stats['sets'] += 1
            return True

    def delete(self, key: str) -> bool:
        """Delete a key, return True if it was present"""
        with self._lock:
            self._generations[key] = self._generations.get(key, 0) + 1
            if self._entries.pop(key, None) is None:
                return False
            self._stats['invalidations'] += 1
            return True

    def clear(self) -> None:
        with self._lock:
            self._stats['evictions'] += len(self._entries)
            self._entries.clear()

    def cleanup_expired(self) -> int:
        """Remove expired entries, return how many were dropped"""
        with self._lock:
            now = time.time()
            expired = [k for k, e in self._entries.items() if now > e.expires_at]
            for key in expired:
                del self._entries[key]
            self._stats['evictions'] += len(expired)
            return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._stats['hits'] + self._stats['misses']
            hit_rate = (self._stats['hits'] / lookups * 100) if lookups > 0 else 0
            return {
                **self._stats,
                'total_requests': lookups,
                'hit_rate_percent': round(hit_rate, 2),
                'cache_size': len(self._entries),
            }


_cache = MemoryCache()


def get_cache() -> MemoryCache:
    return _cache


def _leaderboard_key(game_mode: int) -> str:
    return f"leaderboard:{game_mode}"


def leaderboard_generation(game_mode: int) -> int:
    """Read before querying the store; pass to cache_leaderboard afterwards"""
    return _cache.generation(_leaderboard_key(game_mode))


def cache_leaderboard(game_mode: int, leaders: List[dict], ttl_minutes: float = 5,
                      generation: Optional[int] = None) -> bool:
    """Store the full sorted leaderboard for a mode; readers slice it to their limit.

    A board read before the mode was last invalidated is not stored.
    """
    return _cache.set(_leaderboard_key(game_mode), leaders, ttl_minutes * 60, generation=generation)


def get_cached_leaderboard(game_mode: int) -> Optional[List[dict]]:
    return _cache.get(_leaderboard_key(game_mode))


def invalidate_leaderboard_cache(game_mode: int) -> None:
    _cache.delete(_leaderboard_key(game_mode))


def cleanup_cache_periodically() -> int:
    expired_count = _cache.cleanup_expired()
    if expired_count > 0:
        logger.info("cache_cleanup", extra={"count": expired_count})
    return expired_count
