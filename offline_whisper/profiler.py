"""Performance profiling utilities.

This module provides helpers to summarise how fast a transcription ran and
to release CUDA memory once inference is done.
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

import torch


@dataclass
class PerformanceStats:
    """Performance statistics for transcription.

    Attributes:
        audio_duration: Total audio duration in seconds
        processing_time: Wall-clock processing time in seconds
        rtf: Real-time factor (processing_time / audio_duration)
        throughput: Audio seconds processed per wall-clock second
        num_chunks: Number of chunks processed
        cached_chunks: Chunks served from the result cache
        max_concurrency: Upper bound on chunks processed at once
        device: Device used for processing
    """
    audio_duration: float
    processing_time: float
    rtf: float
    throughput: float
    num_chunks: int
    cached_chunks: int
    max_concurrency: int
    device: str

    def __str__(self) -> str:
        return (
            f"Performance: {self.audio_duration:.1f}s audio in {self.processing_time:.2f}s "
            f"(RTF: {self.rtf:.3f}, throughput: {self.throughput:.1f}x, "
            f"chunks: {self.num_chunks} ({self.cached_chunks} cached), "
            f"concurrency: {self.max_concurrency}, device: {self.device})"
        )


class PerformanceProfiler:
    """Profiles transcription performance.

    Tracks timing, throughput, and real-time factor for transcription tasks.
    """

    @staticmethod
    def calculate_stats(
        audio_duration: float,
        processing_time: float,
        num_chunks: int,
        max_concurrency: int,
        device: str,
        cached_chunks: int = 0,
    ) -> PerformanceStats:
        """Calculate performance statistics.

        Args:
            audio_duration: Total audio duration in seconds
            processing_time: Wall-clock processing time in seconds
            num_chunks: Number of chunks processed
            max_concurrency: Upper bound on concurrently processed chunks
            device: Device used for processing
            cached_chunks: Chunks whose segments came from the cache

        Returns:
            PerformanceStats object with calculated metrics
        """
        rtf = processing_time / audio_duration if audio_duration > 0 else 0.0
        throughput = audio_duration / processing_time if processing_time > 0 else 0.0

        return PerformanceStats(
            audio_duration=audio_duration,
            processing_time=processing_time,
            rtf=rtf,
            throughput=throughput,
            num_chunks=num_chunks,
            cached_chunks=cached_chunks,
            max_concurrency=max_concurrency,
            device=device,
        )


class Stopwatch:
    """Wall-clock timer used around a transcription.

    Example:
        >>> with Stopwatch() as watch:
        ...     run()
        >>> watch.elapsed
        0.42
    """

    def __init__(self):
        self._start: Optional[float] = None
        self._end: Optional[float] = None

    def __enter__(self) -> "Stopwatch":
        self._start = time.perf_counter()
        self._end = None
        return self

    def __exit__(self, *exc_info) -> None:
        self._end = time.perf_counter()

    @property
    def elapsed(self) -> float:
        if self._start is None:
            return 0.0
        end = self._end if self._end is not None else time.perf_counter()
        return end - self._start


@contextmanager
def cuda_memory_manager() -> Iterator[None]:
    """Context manager for CUDA memory management.

    Ensures GPU memory is cleared after operations complete.

    Example:
        >>> with cuda_memory_manager():
        ...     output = adapter.predict(features, options)
    """
    try:
        yield
    finally:
        if torch.cuda.is_available():
            torch.cuda.empty_cache()
