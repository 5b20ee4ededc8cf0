"""Core data models for offline-whisper.

This module defines the data structures used throughout the transcription
pipeline for representing audio chunks, transcription segments, options
and results.
"""

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, List, Optional, Tuple

import numpy as np

from .errors import ConfigurationError

# Languages recognised by the multilingual Whisper vocabulary, in token order.
SUPPORTED_LANGUAGES: Tuple[str, ...] = (
    "en", "zh", "de", "es", "ru", "ko", "fr", "ja", "pt", "tr", "pl", "ca",
    "nl", "ar", "sv", "it", "id", "hi", "fi", "vi", "he", "uk", "el", "ms",
    "cs", "ro", "da", "hu", "ta", "no", "th", "ur", "hr", "bg", "lt", "la",
    "mi", "ml", "cy", "sk", "te", "fa", "lv", "bn", "sr", "az", "sl", "kn",
    "et", "mk", "br", "eu", "is", "hy", "ne", "mn", "bs", "kk", "sq", "sw",
    "gl", "mr", "pa", "si", "km", "sn", "yo", "so", "af", "oc", "ka", "be",
    "tg", "sd", "gu", "am", "yi", "lo", "uz", "fo", "ht", "ps", "tk", "nn",
    "mt", "sa", "lb", "my", "bo", "tl", "mg", "as", "tt", "haw", "ln", "ha",
    "ba", "jw", "su",
)


@dataclass(frozen=True)
class AudioChunk:
    """Represents a contiguous, non-overlapping slice of decoded audio.

    Attributes:
        chunk_id: Content fingerprint, stable for identical audio
        audio: Audio samples as numpy array
        start_time: Start time in seconds relative to original audio
        end_time: End time in seconds relative to original audio
        chunk_index: Index in the sequence of chunks (0-based)
        sample_rate: Sample rate of ``audio`` in Hz
    """
    chunk_id: str
    audio: np.ndarray
    start_time: float
    end_time: float
    chunk_index: int
    sample_rate: int

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass(frozen=True)
class WordTimestamp:
    """Timing for a single word inside a segment."""
    word: str
    start: float
    end: float
    confidence: Optional[float] = None


@dataclass(frozen=True)
class TranscriptionSegment:
    """Represents a transcribed segment with timing information.

    Attributes:
        id: Stable identifier, preserved through merging and re-indexing
        index: Position in the final segment list (0-based, contiguous)
        text: Transcribed text content
        start: Start time in seconds relative to original audio
        end: End time in seconds relative to original audio
        confidence: Optional confidence in [0, 1]
        words: Optional word-level timestamps
    """
    index: int
    text: str
    start: float
    end: float
    confidence: Optional[float] = None
    words: Optional[Tuple[WordTimestamp, ...]] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def duration(self) -> float:
        return self.end - self.start

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "index": self.index,
            "text": self.text,
            "start": self.start,
            "end": self.end,
        }
        if self.confidence is not None:
            data["confidence"] = self.confidence
        if self.words is not None:
            data["words"] = [
                {
                    "word": w.word,
                    "start": w.start,
                    "end": w.end,
                    **({"confidence": w.confidence} if w.confidence is not None else {}),
                }
                for w in self.words
            ]
        return data


class TranscriptionTask(str, Enum):
    TRANSCRIBE = "transcribe"
    TRANSLATE = "translate"
    TRANSLATE_TO = "translate_to"


class PreserveFormat(str, Enum):
    NUMBERS = "numbers"
    NAMES = "names"
    DATES = "dates"
    TIMES = "times"
    EMAILS = "emails"
    URLS = "urls"
    SPECIAL_CHARACTERS = "special_characters"


@dataclass(frozen=True)
class TranscriptionOptions:
    """Input configuration for a single transcription call.

    ``compression_ratio_threshold``, ``log_prob_threshold`` and
    ``silence_threshold`` are quality gates handed to the inference
    adapter unchanged.

    Attributes:
        language: Explicit language code; None triggers detection
        task: Transcribe, translate to English, or translate to target_language
        target_language: Target for TranscriptionTask.TRANSLATE_TO
        temperature: Sampling temperature in [0.0, 1.0]
        compression_ratio_threshold: Decoding quality gate
        log_prob_threshold: Decoding quality gate
        silence_threshold: No-speech probability gate in [0.0, 1.0]
        initial_prompt: Optional text used to prime the decoder
        word_timestamps: Produce word-level timings
        translation_quality: Translation quality knob in [0.0, 1.0]
        preserve_formats: Formats the decoder should keep verbatim
    """
    language: Optional[str] = None
    task: TranscriptionTask = TranscriptionTask.TRANSCRIBE
    target_language: Optional[str] = None
    temperature: float = 0.0
    compression_ratio_threshold: float = 2.4
    log_prob_threshold: float = -1.0
    silence_threshold: float = 0.6
    initial_prompt: Optional[str] = None
    word_timestamps: bool = False
    translation_quality: float = 0.7
    preserve_formats: FrozenSet[PreserveFormat] = frozenset(
        {PreserveFormat.NUMBERS, PreserveFormat.NAMES}
    )

    def __post_init__(self):
        # Normalise plain values coming from dictionaries or call sites
        object.__setattr__(self, "task", TranscriptionTask(self.task))
        object.__setattr__(
            self,
            "preserve_formats",
            frozenset(PreserveFormat(f) for f in self.preserve_formats),
        )

        if self.language is not None and self.language not in SUPPORTED_LANGUAGES:
            raise ConfigurationError(
                f"language must be a supported language code, got '{self.language}'"
            )
        if self.task == TranscriptionTask.TRANSLATE_TO:
            if not self.target_language:
                raise ConfigurationError(
                    "target_language is required when task is 'translate_to'"
                )
            if self.target_language not in SUPPORTED_LANGUAGES:
                raise ConfigurationError(
                    f"target_language must be a supported language code, "
                    f"got '{self.target_language}'"
                )
        elif self.target_language is not None:
            raise ConfigurationError(
                f"target_language is only valid with task 'translate_to', "
                f"got task '{self.task.value}'"
            )
        if not isinstance(self.temperature, (int, float)):
            raise ConfigurationError(
                f"temperature must be numeric, got {type(self.temperature).__name__}"
            )
        if self.temperature < 0.0 or self.temperature > 1.0:
            raise ConfigurationError(
                f"temperature must be in range [0.0, 1.0], got {self.temperature}"
            )
        if not 0.0 <= self.silence_threshold <= 1.0:
            raise ConfigurationError(
                f"silence_threshold must be in range [0.0, 1.0], got {self.silence_threshold}"
            )
        if not 0.0 <= self.translation_quality <= 1.0:
            raise ConfigurationError(
                f"translation_quality must be in range [0.0, 1.0], "
                f"got {self.translation_quality}"
            )
        if self.compression_ratio_threshold <= 0:
            raise ConfigurationError(
                f"compression_ratio_threshold must be positive, "
                f"got {self.compression_ratio_threshold}"
            )

    def to_dict(self) -> dict:
        data = {
            "task": self.task.value,
            "temperature": self.temperature,
            "compression_ratio_threshold": self.compression_ratio_threshold,
            "log_prob_threshold": self.log_prob_threshold,
            "silence_threshold": self.silence_threshold,
            "word_timestamps": self.word_timestamps,
            "translation_quality": self.translation_quality,
            "preserve_formats": sorted(f.value for f in self.preserve_formats),
        }
        if self.language is not None:
            data["language"] = self.language
        if self.target_language is not None:
            data["target_language"] = self.target_language
        if self.initial_prompt is not None:
            data["initial_prompt"] = self.initial_prompt
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TranscriptionOptions":
        defaults = cls()
        return cls(
            language=data.get("language"),
            task=data.get("task", defaults.task),
            target_language=data.get("target_language"),
            temperature=data.get("temperature", defaults.temperature),
            compression_ratio_threshold=data.get(
                "compression_ratio_threshold", defaults.compression_ratio_threshold
            ),
            log_prob_threshold=data.get("log_prob_threshold", defaults.log_prob_threshold),
            silence_threshold=data.get("silence_threshold", defaults.silence_threshold),
            initial_prompt=data.get("initial_prompt"),
            word_timestamps=data.get("word_timestamps", defaults.word_timestamps),
            translation_quality=data.get("translation_quality", defaults.translation_quality),
            preserve_formats=data.get("preserve_formats", defaults.preserve_formats),
        )


@dataclass(frozen=True)
class TranscriptionResult:
    """Terminal output of a transcription.

    Attributes:
        segments: Ordered, merged segment list
        language: Detected or explicitly requested language code
        options: Options the transcription ran with
        processing_time: Total wall-clock time for processing in seconds
        audio_duration: Source audio duration in seconds
        num_chunks: Number of chunks the audio was split into
    """
    segments: Tuple[TranscriptionSegment, ...]
    language: str
    options: TranscriptionOptions
    processing_time: float
    audio_duration: float
    num_chunks: int = 0

    separator = " "

    @property
    def text(self) -> str:
        return self.separator.join(segment.text for segment in self.segments)

    def to_dict(self) -> dict:
        return {
            "segments": [segment.to_dict() for segment in self.segments],
            "language": self.language,
            "options": self.options.to_dict(),
            "processing_time": self.processing_time,
            "audio_duration": self.audio_duration,
            "num_chunks": self.num_chunks,
            "text": self.text,
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=indent)


def segments_span(segments: List[TranscriptionSegment]) -> Tuple[float, float]:
    """Return the (earliest start, latest end) covered by ``segments``."""
    if not segments:
        return 0.0, 0.0
    return min(s.start for s in segments), max(s.end for s in segments)
