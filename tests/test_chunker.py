"""Tests for AudioChunker."""

import numpy as np
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from offline_whisper.chunker import AudioChunker, chunk_fingerprint


class TestAudioChunkerInitialization:
    """Test AudioChunker parameter validation."""

    def test_init_defaults(self):
        """Test initialization with default parameters."""
        chunker = AudioChunker()

        assert chunker.chunk_length == 30
        assert chunker.sample_rate == 16000
        assert chunker.chunk_samples == 480000

    def test_init_invalid_chunk_length(self):
        """Test that non-positive chunk_length raises ValueError."""
        with pytest.raises(ValueError, match="chunk_length must be positive"):
            AudioChunker(chunk_length=0)

    def test_init_invalid_sample_rate(self):
        """Test that non-positive sample_rate raises ValueError."""
        with pytest.raises(ValueError, match="sample_rate must be positive"):
            AudioChunker(sample_rate=-1)

    def test_init_chunk_shorter_than_sample(self):
        """Test that a chunk shorter than one sample is rejected."""
        with pytest.raises(ValueError, match="shorter than one sample"):
            AudioChunker(chunk_length=0.00001, sample_rate=8000)


class TestAudioChunking:
    """Test splitting audio into chunks."""

    def test_65_seconds_gives_three_chunks(self):
        """Test that 65s of audio splits into [0,30) [30,60) [60,65)."""
        chunker = AudioChunker(chunk_length=30, sample_rate=16000)
        audio = np.zeros(65 * 16000, dtype=np.float32)

        chunks = chunker.chunk_audio(audio)

        assert [(c.start_time, c.end_time) for c in chunks] == [
            (0.0, 30.0),
            (30.0, 60.0),
            (60.0, 65.0),
        ]
        assert [c.chunk_index for c in chunks] == [0, 1, 2]
        assert len(chunks[2].audio) == 5 * 16000

    def test_short_audio_single_chunk(self):
        """Test that audio shorter than one chunk yields a single chunk."""
        chunker = AudioChunker(chunk_length=30, sample_rate=16000)
        audio = np.ones(8000, dtype=np.float32)

        chunks = chunker.chunk_audio(audio)

        assert len(chunks) == 1
        assert chunks[0].start_time == 0.0
        assert chunks[0].end_time == 0.5

    def test_exact_multiple(self):
        """Test that an exact multiple of the chunk size has no remainder chunk."""
        chunker = AudioChunker(chunk_length=1, sample_rate=100)

        chunks = chunker.chunk_audio(np.zeros(300, dtype=np.float32))

        assert len(chunks) == 3
        assert chunks[-1].end_time == 3.0

    def test_empty_audio(self):
        """Test that empty audio raises ValueError."""
        with pytest.raises(ValueError, match="audio cannot be empty"):
            AudioChunker().chunk_audio(np.array([], dtype=np.float32))

    def test_multichannel_audio(self):
        """Test that 2-D audio raises ValueError."""
        with pytest.raises(ValueError, match="must be 1-dimensional"):
            AudioChunker().chunk_audio(np.zeros((2, 100), dtype=np.float32))

    @settings(max_examples=50, deadline=None)
    @given(
        num_samples=st.integers(min_value=1, max_value=20000),
        chunk_length=st.floats(min_value=0.01, max_value=2.0),
    )
    def test_chunks_cover_audio_exactly(self, num_samples, chunk_length):
        """Test that chunks cover [0, D) once with ceil(D / C) chunks."""
        chunker = AudioChunker(chunk_length=chunk_length, sample_rate=1000)
        audio = np.arange(num_samples, dtype=np.float32)

        chunks = chunker.chunk_audio(audio)

        assert len(chunks) == chunker.expected_chunks(num_samples)
        assert chunks[0].start_time == 0.0
        assert chunks[-1].end_time == num_samples / 1000
        for previous, current in zip(chunks, chunks[1:]):
            assert previous.end_time == current.start_time
        np.testing.assert_array_equal(np.concatenate([c.audio for c in chunks]), audio)


class TestChunkFingerprint:
    """Test content fingerprints used as chunk ids."""

    def test_same_audio_same_id(self):
        """Test that identical audio produces identical ids across calls."""
        audio = np.random.default_rng(0).standard_normal(32000).astype(np.float32)
        chunker = AudioChunker(chunk_length=1, sample_rate=16000)

        first = [c.chunk_id for c in chunker.chunk_audio(audio)]
        second = [c.chunk_id for c in chunker.chunk_audio(audio.copy())]

        assert first == second

    def test_offset_changes_id(self):
        """Test that the same samples at another offset get a different id."""
        audio = np.zeros(100, dtype=np.float32)

        assert chunk_fingerprint(audio, 16000, 0) != chunk_fingerprint(audio, 16000, 100)

    def test_silent_chunks_differ(self):
        """Test that identical silent chunks at different offsets get distinct ids."""
        chunker = AudioChunker(chunk_length=1, sample_rate=100)

        chunks = chunker.chunk_audio(np.zeros(300, dtype=np.float32))

        assert len({c.chunk_id for c in chunks}) == 3
