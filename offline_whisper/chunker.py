"""Audio chunking for long audio support.

This module splits decoded audio into fixed-duration, non-overlapping chunks
so that each one fits the model's input window.
"""

import hashlib
import math
from typing import List

import numpy as np

from .data_models import AudioChunk


def chunk_fingerprint(audio: np.ndarray, sample_rate: int, start_sample: int) -> str:
    """Content fingerprint used as the chunk id.

    Identical samples at the same offset and rate always produce the same id,
    which makes the id usable as a cache key across calls.
    """
    digest = hashlib.blake2b(digest_size=16)
    digest.update(np.ascontiguousarray(audio, dtype=np.float32).tobytes())
    digest.update(f"{sample_rate}:{start_sample}".encode("ascii"))
    return digest.hexdigest()


class AudioChunker:
    """Handles splitting long audio into processable chunks.

    Boundaries are computed on sample indices, so the chunks cover the
    input exactly once with no gaps or overlaps. Audio shorter than
    ``chunk_length`` yields a single chunk spanning all of it.

    Attributes:
        chunk_length: Duration of each chunk in seconds
        sample_rate: Audio sample rate in Hz
    """

    def __init__(
        self,
        chunk_length: float = 30,
        sample_rate: int = 16000,
    ):
        """Initialize audio chunker.

        Args:
            chunk_length: Chunk duration in seconds (default: 30)
            sample_rate: Audio sample rate in Hz (default: 16000)

        Raises:
            ValueError: If chunk_length or sample_rate is non-positive
        """
        if chunk_length <= 0:
            raise ValueError(
                f"chunk_length must be positive, got {chunk_length}"
            )
        if sample_rate <= 0:
            raise ValueError(
                f"sample_rate must be positive, got {sample_rate}"
            )
        if int(round(chunk_length * sample_rate)) < 1:
            raise ValueError(
                f"chunk_length ({chunk_length}s) is shorter than one sample at {sample_rate}Hz"
            )

        self.chunk_length = chunk_length
        self.sample_rate = sample_rate

    @property
    def chunk_samples(self) -> int:
        return int(round(self.chunk_length * self.sample_rate))

    def expected_chunks(self, num_samples: int) -> int:
        """Number of chunks ``chunk_audio`` produces for ``num_samples`` samples."""
        return math.ceil(num_samples / self.chunk_samples)

    def chunk_audio(
        self,
        audio: np.ndarray,
    ) -> List[AudioChunk]:
        """Split audio into consecutive non-overlapping chunks.

        Args:
            audio: Audio samples as numpy array (1D)

        Returns:
            List of AudioChunk objects ordered by start time

        Raises:
            ValueError: If audio is empty or has invalid shape
        """
        if audio.ndim != 1:
            raise ValueError(
                f"audio must be 1-dimensional, got shape {audio.shape}"
            )
        if len(audio) == 0:
            raise ValueError("audio cannot be empty")

        chunk_samples = self.chunk_samples
        chunks = []
        for chunk_index, start_sample in enumerate(range(0, len(audio), chunk_samples)):
            end_sample = min(start_sample + chunk_samples, len(audio))
            chunk_audio = audio[start_sample:end_sample]
            chunks.append(
                AudioChunk(
                    chunk_id=chunk_fingerprint(chunk_audio, self.sample_rate, start_sample),
                    audio=chunk_audio,
                    start_time=start_sample / self.sample_rate,
                    end_time=end_sample / self.sample_rate,
                    chunk_index=chunk_index,
                    sample_rate=self.sample_rate,
                )
            )

        return chunks
