"""offline-whisper: Offline Whisper transcription with a managed model cache.

This module provides chunked, concurrent transcription on top of a model
lifecycle manager that downloads, caches and evicts model variants.

Example:
    >>> from offline_whisper import ModelManager, TranscriptionEngine, load_config
    >>> config = load_config()
    >>> engine = TranscriptionEngine(ModelManager.from_config(config), "base", config=config)
    >>> result = await engine.transcribe("audio.wav")
    >>> for segment in result.segments:
    ...     print(f"[{segment.start:.2f}s - {segment.end:.2f}s] {segment.text}")
"""

from .audio import AudioDecoder, SoundFileDecoder
from .cache import CacheEntry, ModelCache
from .catalog import Artifact, ModelCatalog, ModelVariant
from .chunker import AudioChunker
from .config import Config, load_config, setup_logging
from .data_models import (
    AudioChunk,
    PreserveFormat,
    TranscriptionOptions,
    TranscriptionResult,
    TranscriptionSegment,
    TranscriptionTask,
    WordTimestamp,
)
from .downloader import (
    Cancelled,
    CheckingSpace,
    Completed,
    Downloader,
    Downloading,
    DownloadState,
    Extracting,
    Failed,
    Idle,
)
from .engine import BatchItemResult, BatchStatus, TranscriptionEngine
from .errors import (
    ConfigurationError,
    DownloadFailedError,
    InferenceError,
    InsufficientDiskSpaceError,
    ModelUnavailableOfflineError,
    NetworkError,
    RecoveryAction,
    RecoveryOption,
    WhisperError,
)
from .features import FeatureExtractor
from .inference import InferenceAdapter, InferenceOutput, TorchScriptInferenceAdapter
from .language import LanguageDetection, LanguageDetector
from .merger import SegmentMerger
from .model_manager import ModelHandle, ModelManager
from .network import NetworkMonitor, NetworkStatus
from .profiler import PerformanceProfiler, PerformanceStats, cuda_memory_manager
from .realtime import RealtimeTranscriber, RealtimeTranscriptionResult
from .token_decoder import TokenDecoder
from .tokenizer import SpecialTokens, WhisperTokenizer

__version__ = "0.1.0"

__all__ = [
    "Artifact",
    "AudioChunk",
    "AudioChunker",
    "AudioDecoder",
    "BatchItemResult",
    "BatchStatus",
    "CacheEntry",
    "Cancelled",
    "CheckingSpace",
    "Completed",
    "Config",
    "ConfigurationError",
    "DownloadFailedError",
    "DownloadState",
    "Downloader",
    "Downloading",
    "Extracting",
    "Failed",
    "FeatureExtractor",
    "Idle",
    "InferenceAdapter",
    "InferenceError",
    "InferenceOutput",
    "InsufficientDiskSpaceError",
    "LanguageDetection",
    "LanguageDetector",
    "ModelCache",
    "ModelCatalog",
    "ModelHandle",
    "ModelManager",
    "ModelUnavailableOfflineError",
    "ModelVariant",
    "NetworkError",
    "NetworkMonitor",
    "NetworkStatus",
    "PerformanceProfiler",
    "PerformanceStats",
    "PreserveFormat",
    "RealtimeTranscriber",
    "RealtimeTranscriptionResult",
    "RecoveryAction",
    "RecoveryOption",
    "SegmentMerger",
    "SoundFileDecoder",
    "SpecialTokens",
    "TokenDecoder",
    "TorchScriptInferenceAdapter",
    "TranscriptionEngine",
    "TranscriptionOptions",
    "TranscriptionResult",
    "TranscriptionSegment",
    "TranscriptionTask",
    "WhisperError",
    "WhisperTokenizer",
    "WordTimestamp",
    "cuda_memory_manager",
    "load_config",
    "setup_logging",
]
