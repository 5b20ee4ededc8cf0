"""Log-mel feature extraction.

Converts raw samples into the flattened spectral tensor the inference
runtime expects. The transform is pure and deterministic, so its output can
be cached per chunk.
"""

from typing import Optional

import numpy as np
import torch

from .data_models import AudioChunk

WHISPER_SAMPLE_RATE = 16000
LOG_FLOOR = 1e-10


def resample_linear(audio: torch.Tensor, source_rate: int, target_rate: int) -> torch.Tensor:
    """Resample a 1-D signal by linear interpolation between neighbouring samples."""
    if source_rate == target_rate:
        return audio
    ratio = target_rate / source_rate
    target_length = max(1, int(audio.numel() * ratio))
    positions = torch.arange(target_length, dtype=torch.float64) / ratio
    floor = positions.floor().long().clamp(max=audio.numel() - 1)
    ceil = (floor + 1).clamp(max=audio.numel() - 1)
    fraction = (positions - floor.double()).float()
    return audio[floor] * (1.0 - fraction) + audio[ceil] * fraction


def normalize_peak(audio: torch.Tensor) -> torch.Tensor:
    """Scale the signal into [-1, 1] when its peak exceeds 1."""
    if audio.numel() == 0:
        return audio
    peak = audio.abs().max()
    if peak <= 1.0:
        return audio
    return audio / peak


def band_averaging_matrix(n_bins: int, n_mels: int) -> torch.Tensor:
    """(n_mels, n_bins) matrix averaging contiguous runs of FFT bins into bands."""
    matrix = torch.zeros(n_mels, n_bins, dtype=torch.float32)
    for band in range(n_mels):
        start = band * n_bins // n_mels
        end = min(max((band + 1) * n_bins // n_mels, start + 1), n_bins)
        matrix[band, start:end] = 1.0 / (end - start)
    return matrix


class FeatureExtractor:
    """Computes log-mel spectrogram features.

    Output is flattened mel-major: the first ``n_frames`` values are band 0
    across all frames, then band 1, and so on.

    Attributes:
        sample_rate: Rate the features are computed at
        frame_size: Samples per analysis frame
        hop_size: Samples between frame starts
        n_mels: Number of mel bands
    """

    def __init__(
        self,
        sample_rate: int = WHISPER_SAMPLE_RATE,
        frame_size: int = 400,
        hop_size: int = 160,
        n_mels: int = 80,
    ):
        if sample_rate <= 0:
            raise ValueError(f"sample_rate must be positive, got {sample_rate}")
        if frame_size < 2:
            raise ValueError(f"frame_size must be at least 2, got {frame_size}")
        if hop_size < 1:
            raise ValueError(f"hop_size must be positive, got {hop_size}")
        if not 1 <= n_mels <= frame_size // 2:
            raise ValueError(
                f"n_mels must be in range [1, {frame_size // 2}], got {n_mels}"
            )

        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self.hop_size = hop_size
        self.n_mels = n_mels
        self._window = torch.hann_window(frame_size, periodic=True, dtype=torch.float32)
        self._band_matrix = band_averaging_matrix(frame_size // 2, n_mels)

    def num_frames(self, num_samples: int) -> int:
        if num_samples <= self.frame_size:
            return 1
        return 1 + (num_samples - self.frame_size) // self.hop_size

    def extract_chunk(self, chunk: AudioChunk) -> torch.Tensor:
        return self.extract(chunk.audio, chunk.sample_rate)

    @torch.inference_mode()
    def extract(self, samples: np.ndarray, sample_rate: Optional[int] = None) -> torch.Tensor:
        """Convert samples into a flattened ``[n_mels * n_frames]`` float32 tensor.

        Args:
            samples: 1-D audio samples
            sample_rate: Rate of ``samples`` (default: the extractor's rate)

        Raises:
            ValueError: If samples are empty or not 1-D
        """
        samples = np.asarray(samples, dtype=np.float32)
        if samples.ndim != 1:
            raise ValueError(f"samples must be 1-dimensional, got shape {samples.shape}")
        if samples.size == 0:
            raise ValueError("samples cannot be empty")

        audio = torch.from_numpy(samples.copy())
        audio = resample_linear(audio, sample_rate or self.sample_rate, self.sample_rate)
        audio = normalize_peak(audio)

        if audio.numel() < self.frame_size:
            audio = torch.nn.functional.pad(audio, (0, self.frame_size - audio.numel()))

        frames = audio.unfold(0, self.frame_size, self.hop_size)
        spectrum = torch.fft.rfft(frames * self._window, dim=-1)[:, : self.frame_size // 2]
        power = spectrum.real.pow(2) + spectrum.imag.pow(2)
        bands = power @ self._band_matrix.T
        log_bands = torch.log10(torch.clamp(bands, min=LOG_FLOOR))
        return log_bands.T.contiguous().reshape(-1)
