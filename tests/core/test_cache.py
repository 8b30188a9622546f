"""Tests for the bounded cache."""

import pytest

from nextcov.core.cache import BoundedCache


class TestBoundedCache:
    """Eviction policy tests."""

    def test_given_full_cache_when_new_key_then_oldest_fifth_evicted(self) -> None:
        # Given
        cache: BoundedCache[int, str] = BoundedCache(10)
        for i in range(10):
            cache.set(i, str(i))

        # When
        cache.set(10, "10")

        # Then
        assert len(cache) == 9
        assert 0 not in cache
        assert 1 not in cache
        assert 2 in cache
        assert cache.get(10) == "10"

    def test_given_full_cache_when_existing_key_updated_then_nothing_evicted(self) -> None:
        # Given
        cache: BoundedCache[str, int] = BoundedCache(2)
        cache.set("a", 1)
        cache.set("b", 2)

        # When
        cache.set("a", 3)

        # Then
        assert len(cache) == 2
        assert cache.get("a") == 3

    def test_given_tiny_cache_when_full_then_evicts_at_least_one(self) -> None:
        cache: BoundedCache[str, int] = BoundedCache(1)
        cache.set("a", 1)
        cache.set("b", 2)
        assert list(cache) == ["b"]

    def test_given_lookup_when_full_then_position_not_refreshed(self) -> None:
        # Given
        cache: BoundedCache[str, int] = BoundedCache(2, eviction_fraction=0.5)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")

        # When
        cache.set("c", 3)

        # Then
        assert "a" not in cache
        assert list(cache) == ["b", "c"]

    def test_given_missing_key_when_get_then_default(self) -> None:
        cache: BoundedCache[str, int] = BoundedCache(5)
        assert cache.get("nope") is None
        assert cache.get("nope", 7) == 7

    def test_given_clear_when_called_then_empty(self) -> None:
        cache: BoundedCache[str, int] = BoundedCache(5)
        cache.set("a", 1)
        cache.clear()
        assert len(cache) == 0

    @pytest.mark.parametrize(("size", "fraction"), [(0, 0.2), (-1, 0.2), (5, 0.0), (5, 1.5)])
    def test_given_invalid_bounds_when_created_then_rejected(
        self, size: int, fraction: float
    ) -> None:
        with pytest.raises(ValueError):
            BoundedCache(size, eviction_fraction=fraction)
