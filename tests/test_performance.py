"""Tests for profiling helpers and bounded caches."""

import time

import pytest

from offline_whisper.caching import BoundedCache
from offline_whisper.profiler import PerformanceProfiler, Stopwatch, cuda_memory_manager


class TestPerformanceProfiler:
    """Tests for PerformanceProfiler."""

    def test_calculate_stats(self):
        """Test performance statistics calculation."""
        stats = PerformanceProfiler.calculate_stats(
            audio_duration=60.0,
            processing_time=6.0,
            num_chunks=2,
            max_concurrency=4,
            device="cpu",
            cached_chunks=1,
        )

        assert stats.rtf == pytest.approx(0.1)
        assert stats.throughput == pytest.approx(10.0)
        assert stats.cached_chunks == 1

    def test_calculate_stats_zero_duration(self):
        """Test that zero durations do not divide by zero."""
        stats = PerformanceProfiler.calculate_stats(0.0, 0.0, 0, 1, "cpu")

        assert stats.rtf == 0.0
        assert stats.throughput == 0.0

    def test_stats_str(self):
        """Test the human-readable summary."""
        stats = PerformanceProfiler.calculate_stats(30.0, 3.0, 1, 2, "cuda", cached_chunks=0)

        text = str(stats)

        assert "RTF: 0.100" in text
        assert "device: cuda" in text
        assert "chunks: 1 (0 cached)" in text


class TestStopwatch:
    """Tests for Stopwatch."""

    def test_measures_block(self):
        """Test that elapsed covers the timed block and then stays fixed."""
        with Stopwatch() as watch:
            time.sleep(0.01)

        elapsed = watch.elapsed
        assert elapsed >= 0.01
        time.sleep(0.01)
        assert watch.elapsed == elapsed

    def test_not_started(self):
        """Test that an unused stopwatch reports zero."""
        assert Stopwatch().elapsed == 0.0


class TestCudaMemoryManager:
    """Tests for cuda_memory_manager."""

    def test_context_manager(self):
        """Test that the context manager runs the block."""
        executed = False
        with cuda_memory_manager():
            executed = True

        assert executed

    def test_context_manager_propagates_errors(self):
        """Test that errors inside the block propagate."""
        with pytest.raises(RuntimeError, match="inside"):
            with cuda_memory_manager():
                raise RuntimeError("inside")


class TestBoundedCache:
    """Tests for BoundedCache."""

    def test_invalid_size(self):
        """Test that a non-positive size raises ValueError."""
        with pytest.raises(ValueError, match="max_entries must be positive"):
            BoundedCache(0)

    def test_get_put(self):
        """Test storing and retrieving values."""
        cache = BoundedCache(2)
        cache.put("a", 1)

        assert cache.get("a") == 1
        assert cache.get("b") is None
        assert "a" in cache

    def test_cleared_on_overflow(self):
        """Test that inserting past the bound empties the cache first."""
        cache = BoundedCache(2)
        cache.put("a", 1)
        cache.put("b", 2)

        cache.put("c", 3)

        assert len(cache) == 1
        assert cache.get("a") is None
        assert cache.get("c") == 3

    def test_overwrite_does_not_clear(self):
        """Test that replacing an existing key keeps the other entries."""
        cache = BoundedCache(2)
        cache.put("a", 1)
        cache.put("b", 2)

        cache.put("a", 10)

        assert len(cache) == 2
        assert cache.get("a") == 10
