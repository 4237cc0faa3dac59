"""In-memory LRU cache for diagram rendering results.

Entries are bounded by two simultaneous constraints: maximum entry count and
maximum aggregate byte size (the rendered file sizes). Eviction always walks
from the least recently used end.

The cache is volatile and process-local. All operations are synchronous and
never await, so on a single event loop they are atomic with respect to each
other.
"""

from __future__ import annotations

import hashlib
import time
from collections import OrderedDict
from typing import Any

from dbridge.models import CacheEntry, CacheStats, RenderingOutput

# Default maximum age used by pruning and validity checks (1 hour)
DEFAULT_MAX_AGE_MS = 3_600_000


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def generate_key(code: str, diagram_format: str, output_format: str) -> str:
    """Generate a cache key for a render request.

    The key is the SHA-256 hex digest of ``format:output:code``, so it has a
    fixed length of 64 characters and covers the whole source.

    Args:
        code: Diagram source code.
        diagram_format: Internal diagram format id.
        output_format: Output image format.

    Returns:
        Deterministic cache key.
    """
    payload = f"{diagram_format}:{output_format}:{code}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def create_cache_entry(output: RenderingOutput, now: int | None = None) -> CacheEntry:
    """Wrap a rendering output into a cache entry sized by its file size."""
    return CacheEntry(
        data=output,
        timestamp=now_ms() if now is None else now,
        size=output.file_size,
    )


def is_entry_valid(
    entry: CacheEntry, max_age_ms: int = DEFAULT_MAX_AGE_MS, now: int | None = None
) -> bool:
    """Check whether an entry is younger than max_age_ms."""
    current = now_ms() if now is None else now
    return (current - entry.timestamp) < max_age_ms


class DiagramLRUCache:
    """LRU cache keyed by generate_key().

    The OrderedDict order is the recency list: the first item is the least
    recently used, the last item the most recently used.
    """

    def __init__(self, max_entries: int = 100, max_memory_mb: float = 50) -> None:
        self.max_entries = max_entries
        self.max_bytes = int(max_memory_mb * 1024 * 1024)
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._memory_usage = 0
        self.hit_count = 0
        self.miss_count = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        # Membership test only, does not count as a hit or refresh recency
        return key in self._entries

    @property
    def memory_usage(self) -> int:
        return self._memory_usage

    def get(self, key: str) -> CacheEntry | None:
        """Get a cached entry and mark it most recently used."""
        entry = self._entries.get(key)
        if entry is None:
            self.miss_count += 1
            return None

        self._entries.move_to_end(key)
        self.hit_count += 1
        return entry

    def set(self, key: str, entry: CacheEntry) -> None:
        """Store an entry, evicting least recently used entries if needed.

        Storing is best effort: an entry larger than max_bytes is evicted
        straight away.
        """
        existing = self._entries.get(key)
        if existing is not None:
            self._memory_usage -= existing.size
            self._entries[key] = entry
            self._memory_usage += entry.size
            self._entries.move_to_end(key)
            return

        self._entries[key] = entry
        self._memory_usage += entry.size
        self._enforce_constraints()

    def delete(self, key: str) -> bool:
        """Remove a single entry. Returns False if the key was not cached."""
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._memory_usage -= entry.size
        return True

    def clear(self) -> None:
        """Drop all entries and reset statistics."""
        self._entries.clear()
        self._memory_usage = 0
        self.hit_count = 0
        self.miss_count = 0

    def stats(self) -> CacheStats:
        """Get size, hit rate (percent, 2 decimals) and memory usage."""
        total = self.hit_count + self.miss_count
        hit_rate = round(self.hit_count / total * 100, 2) if total > 0 else 0
        return CacheStats(
            size=len(self._entries),
            hit_rate=hit_rate,
            memory_usage=self._memory_usage,
        )

    def prune_expired(
        self, max_age_ms: int = DEFAULT_MAX_AGE_MS, now: int | None = None
    ) -> int:
        """Remove entries older than max_age_ms.

        Not called implicitly by get/set; stale entries stay servable until
        pruned or evicted.

        Returns:
            Number of entries removed.
        """
        current = now_ms() if now is None else now
        expired = [
            key
            for key, entry in self._entries.items()
            if current - entry.timestamp > max_age_ms
        ]
        for key in expired:
            self.delete(key)
        return len(expired)

    def debug_info(self) -> dict[str, Any]:
        """Snapshot of limits, counters and entries (most recent first)."""
        stats = self.stats()
        entries = [
            {"key": key, "timestamp": entry.timestamp, "size": entry.size}
            for key, entry in reversed(self._entries.items())
        ]
        return {
            "size": stats.size,
            "max_entries": self.max_entries,
            "memory_usage": stats.memory_usage,
            "max_bytes": self.max_bytes,
            "hit_count": self.hit_count,
            "miss_count": self.miss_count,
            "hit_rate": stats.hit_rate,
            "entries": entries,
        }

    def _evict_lru(self) -> bool:
        if not self._entries:
            return False
        _, entry = self._entries.popitem(last=False)
        self._memory_usage -= entry.size
        return True

    def _enforce_constraints(self) -> None:
        while len(self._entries) > self.max_entries:
            if not self._evict_lru():
                break

        while self._memory_usage > self.max_bytes:
            if not self._evict_lru():
                break
