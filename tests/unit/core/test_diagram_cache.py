"""Unit tests for the diagram LRU cache.

Covers recency ordering, the entry-count and byte-size limits, hit-rate
statistics, key generation and expiry pruning.
"""

from __future__ import annotations

import pytest

from dbridge.cache import (
    DiagramLRUCache,
    create_cache_entry,
    generate_key,
    is_entry_valid,
)
from dbridge.models import CacheEntry, RenderingOutput

MB = 1024 * 1024


def _entry(size: int, timestamp: int = 1_000, name: str = "d.svg") -> CacheEntry:
    output = RenderingOutput(
        file_path=f"/tmp/{name}",
        resource_uri=f"diagram://saved/{name}",
        content_type="image/svg+xml",
        file_size=size,
    )
    return create_cache_entry(output, now=timestamp)


# =============================================================================
# KEYS
# =============================================================================


@pytest.mark.unit
@pytest.mark.core
class TestGenerateKey:
    """Cache key generation."""

    def test_same_input_same_key(self) -> None:
        first = generate_key("graph TD; A-->B", "mermaid", "svg")
        second = generate_key("graph TD; A-->B", "mermaid", "svg")
        assert first == second

    def test_key_is_fixed_length_hex(self) -> None:
        key = generate_key("x" * 50_000, "plantuml", "png")
        assert len(key) == 64
        int(key, 16)

    def test_key_depends_on_every_component(self) -> None:
        base = generate_key("A-->B", "mermaid", "svg")
        assert generate_key("A-->C", "mermaid", "svg") != base
        assert generate_key("A-->B", "mermaid", "png") != base
        assert generate_key("A-->B", "plantuml", "svg") != base

    def test_long_sources_sharing_a_prefix_differ(self) -> None:
        prefix = "flowchart TD\n" + "A-->B\n" * 200
        assert generate_key(prefix + "C", "mermaid", "svg") != generate_key(
            prefix + "D", "mermaid", "svg"
        )


# =============================================================================
# ENTRIES
# =============================================================================


@pytest.mark.unit
@pytest.mark.core
class TestCacheEntries:
    """Entry construction and validity."""

    def test_entry_size_is_file_size(self) -> None:
        entry = _entry(2048, timestamp=5)
        assert entry.size == 2048
        assert entry.timestamp == 5
        assert entry.data.file_size == 2048

    def test_entry_validity_window(self) -> None:
        entry = _entry(10, timestamp=1_000)
        assert is_entry_valid(entry, max_age_ms=500, now=1_400)
        assert not is_entry_valid(entry, max_age_ms=500, now=1_500)


# =============================================================================
# LRU BEHAVIOUR
# =============================================================================


@pytest.mark.unit
@pytest.mark.core
class TestLRUOrder:
    """Recency ordering and entry-count eviction."""

    def test_get_refreshes_recency(self) -> None:
        cache = DiagramLRUCache(max_entries=3)
        cache.set("a", _entry(10))
        cache.set("b", _entry(10))
        cache.set("c", _entry(10))

        assert cache.get("a") is not None
        cache.set("d", _entry(10))

        assert "b" not in cache
        assert "a" in cache
        assert "c" in cache
        assert "d" in cache
        assert len(cache) == 3

    def test_oldest_is_evicted_without_access(self) -> None:
        cache = DiagramLRUCache(max_entries=2)
        cache.set("a", _entry(1))
        cache.set("b", _entry(1))
        cache.set("c", _entry(1))

        assert "a" not in cache
        assert cache.memory_usage == 2

    def test_overwrite_existing_key_does_not_evict(self) -> None:
        cache = DiagramLRUCache(max_entries=2)
        cache.set("a", _entry(100))
        cache.set("b", _entry(200))
        cache.set("a", _entry(50))

        assert len(cache) == 2
        assert cache.memory_usage == 250
        info = cache.debug_info()
        assert [e["key"] for e in info["entries"]] == ["a", "b"]

    def test_contains_does_not_count(self) -> None:
        cache = DiagramLRUCache()
        cache.set("a", _entry(1))
        assert "a" in cache
        assert "zzz" not in cache
        assert cache.hit_count == 0
        assert cache.miss_count == 0


@pytest.mark.unit
@pytest.mark.core
class TestMemoryLimit:
    """Byte-size constraint."""

    def test_memory_limit_evicts_lru(self) -> None:
        cache = DiagramLRUCache(max_entries=100, max_memory_mb=1)
        cache.set("a", _entry(400_000))
        cache.set("b", _entry(400_000))
        cache.set("c", _entry(400_000))

        assert "a" not in cache
        assert len(cache) == 2
        assert cache.memory_usage == 800_000
        assert cache.memory_usage <= cache.max_bytes

    def test_oversized_entry_is_dropped(self) -> None:
        cache = DiagramLRUCache(max_memory_mb=1)
        cache.set("small", _entry(10))
        cache.set("huge", _entry(2 * MB))

        assert len(cache) == 0
        assert cache.memory_usage == 0

    def test_memory_usage_tracks_entry_sizes(self) -> None:
        cache = DiagramLRUCache()
        cache.set("a", _entry(100))
        cache.set("b", _entry(250))
        assert cache.memory_usage == 350

        assert cache.delete("a") is True
        assert cache.delete("a") is False
        assert cache.memory_usage == 250


# =============================================================================
# STATISTICS AND MAINTENANCE
# =============================================================================


@pytest.mark.unit
@pytest.mark.core
class TestStats:
    """Hit rate, clearing and pruning."""

    def test_hit_rate_percentage(self) -> None:
        cache = DiagramLRUCache()
        cache.set("a", _entry(10))
        for _ in range(3):
            assert cache.get("a") is not None
        assert cache.get("missing") is None

        stats = cache.stats()
        assert stats.hit_rate == 75.0
        assert stats.size == 1
        assert stats.memory_usage == 10

    def test_hit_rate_rounds_to_two_decimals(self) -> None:
        cache = DiagramLRUCache()
        cache.set("a", _entry(1))
        cache.get("a")
        cache.get("x")
        cache.get("y")
        assert cache.stats().hit_rate == 33.33

    def test_hit_rate_without_requests_is_zero(self) -> None:
        assert DiagramLRUCache().stats().hit_rate == 0

    def test_clear_resets_everything(self) -> None:
        cache = DiagramLRUCache()
        cache.set("a", _entry(10))
        cache.get("a")
        cache.clear()

        stats = cache.stats()
        assert stats.size == 0
        assert stats.memory_usage == 0
        assert cache.get("a") is None
        assert cache.miss_count == 1
        assert cache.hit_count == 0

    def test_prune_expired(self) -> None:
        cache = DiagramLRUCache()
        cache.set("old", _entry(10, timestamp=0))
        cache.set("new", _entry(20, timestamp=5_000))

        removed = cache.prune_expired(max_age_ms=2_000, now=6_000)

        assert removed == 1
        assert "old" not in cache
        assert "new" in cache
        assert cache.memory_usage == 20

    def test_get_serves_expired_until_pruned(self) -> None:
        cache = DiagramLRUCache()
        cache.set("old", _entry(10, timestamp=0))
        assert cache.get("old") is not None

    def test_debug_info(self) -> None:
        cache = DiagramLRUCache(max_entries=5, max_memory_mb=2)
        cache.set("a", _entry(1))
        cache.set("b", _entry(2))
        cache.get("a")

        info = cache.debug_info()
        assert info["max_entries"] == 5
        assert info["max_bytes"] == 2 * MB
        assert info["hit_count"] == 1
        assert info["entries"][0]["key"] == "a"
        assert info["entries"][1] == {"key": "b", "timestamp": 1_000, "size": 2}
