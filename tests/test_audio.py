"""Tests for audio file decoding."""

import numpy as np
import pytest
import soundfile as sf

from offline_whisper.audio import SoundFileDecoder
from offline_whisper.errors import (
    AudioDecodeError,
    AudioFileNotFoundError,
    UnsupportedAudioFormatError,
)

from conftest import sine


class TestSoundFileDecoder:
    """Test decoding and error mapping."""

    def test_decode_mono_wav(self, tmp_path):
        """Test decoding a mono WAV file."""
        path = tmp_path / "tone.wav"
        sf.write(str(path), sine(1.5), 16000)

        audio, rate = SoundFileDecoder().decode(path)

        assert rate == 16000
        assert audio.dtype == np.float32
        assert audio.shape == (24000,)

    def test_stereo_mixed_to_mono(self, tmp_path):
        """Test that multi-channel audio is averaged to mono."""
        path = tmp_path / "stereo.wav"
        left = np.full(8000, 0.5, dtype=np.float32)
        right = np.zeros(8000, dtype=np.float32)
        sf.write(str(path), np.stack([left, right], axis=1), 8000, subtype="FLOAT")

        audio, rate = SoundFileDecoder().decode(path)

        assert rate == 8000
        assert audio.ndim == 1
        assert audio[100] == pytest.approx(0.25)

    def test_missing_file(self, tmp_path):
        """Test that a missing file raises AudioFileNotFoundError."""
        with pytest.raises(AudioFileNotFoundError):
            SoundFileDecoder().decode(tmp_path / "missing.wav")

    def test_unsupported_extension(self, tmp_path):
        """Test that an unknown extension raises UnsupportedAudioFormatError."""
        path = tmp_path / "notes.txt"
        path.write_text("not audio")

        with pytest.raises(UnsupportedAudioFormatError, match="'txt'"):
            SoundFileDecoder().decode(path)

    def test_corrupt_file(self, tmp_path):
        """Test that undecodable content raises AudioDecodeError."""
        path = tmp_path / "broken.wav"
        path.write_bytes(b"RIFF not really a wave file")

        with pytest.raises(AudioDecodeError):
            SoundFileDecoder().decode(path)

    def test_supported_extensions(self):
        """Test that common formats are reported in lower case."""
        extensions = SoundFileDecoder.supported_extensions()

        assert "wav" in extensions
        assert "flac" in extensions
