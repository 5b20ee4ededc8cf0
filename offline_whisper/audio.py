"""Audio decoding capability.

The engine only needs ``decode(path) -> (samples, sample_rate)``; the
default implementation reads files through libsndfile.
"""

import logging
from pathlib import Path
from typing import Protocol, Tuple, Union

import numpy as np
import soundfile as sf

from .errors import AudioDecodeError, AudioFileNotFoundError, UnsupportedAudioFormatError

logger = logging.getLogger(__name__)


class AudioDecoder(Protocol):
    def decode(self, path: Union[str, Path]) -> Tuple[np.ndarray, int]:
        ...


class SoundFileDecoder:
    """Decodes audio files to mono float32 PCM with soundfile."""

    @staticmethod
    def supported_extensions() -> frozenset:
        return frozenset(ext.lower() for ext in sf.available_formats())

    def decode(self, path: Union[str, Path]) -> Tuple[np.ndarray, int]:
        """Load audio samples and their sample rate.

        Raises:
            AudioFileNotFoundError: If the file does not exist
            UnsupportedAudioFormatError: If libsndfile cannot read the format
            AudioDecodeError: If decoding fails or yields no samples
        """
        path = Path(path)
        if not path.is_file():
            raise AudioFileNotFoundError(str(path))

        extension = path.suffix.lstrip(".").lower()
        if extension not in self.supported_extensions():
            raise UnsupportedAudioFormatError(str(path), extension)

        try:
            audio, sample_rate = sf.read(str(path), dtype="float32")
        except (RuntimeError, ValueError) as e:
            raise AudioDecodeError(str(path), str(e)) from e

        # Ensure mono
        if audio.ndim > 1:
            audio = audio.mean(axis=1)
        if audio.size == 0:
            raise AudioDecodeError(str(path), "file contains no samples")

        logger.debug(f"Decoded {path.name}: {audio.size / sample_rate:.2f}s at {sample_rate}Hz")
        return np.ascontiguousarray(audio, dtype=np.float32), int(sample_rate)
