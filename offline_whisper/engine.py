"""Main transcription API for offline-whisper.

This module provides the TranscriptionEngine class, which is the primary
interface for transcribing audio. It makes sure the model is ready, splits
audio into chunks, runs per-chunk inference concurrently and assembles the
merged, language-tagged result.
"""

import asyncio
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import torch

from .audio import AudioDecoder, SoundFileDecoder
from .caching import BoundedCache
from .catalog import ModelVariant
from .chunker import AudioChunker
from .config import Config
from .data_models import (
    AudioChunk,
    TranscriptionOptions,
    TranscriptionResult,
    TranscriptionSegment,
    TranscriptionTask,
)
from .errors import InferenceError, ModelNotLoadedError, WhisperError
from .features import FeatureExtractor
from .inference import AdapterFactory, InferenceAdapter, torchscript_adapter_factory
from .language import LanguageDetector, postprocess_text
from .merger import SegmentMerger
from .model_manager import ModelHandle, ModelManager, ProgressCallback
from .profiler import PerformanceProfiler, Stopwatch
from .token_decoder import TokenDecoder
from .tokenizer import WhisperTokenizer

logger = logging.getLogger(__name__)

AudioInput = Union[str, Path, np.ndarray]

MODEL_READY_PROGRESS = 0.1
CHUNKED_PROGRESS = 0.2
INFERENCE_DONE_PROGRESS = 0.9


class ProgressTracker:
    """Forwards progress values, clamped to [0, 1] and never decreasing."""

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self.callback = callback
        self.value = 0.0

    def report(self, value: float) -> None:
        value = min(1.0, value)
        if value <= self.value:
            return
        self.value = value
        if self.callback is not None:
            self.callback(value)


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class BatchItemResult:
    """Outcome of one file in :meth:`TranscriptionEngine.transcribe_batch`."""
    path: Path
    result: Optional[TranscriptionResult] = None
    error: Optional[WhisperError] = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None


BatchStatusCallback = Callable[[int, Path, BatchStatus], None]


def _first_error(group: BaseExceptionGroup) -> BaseException:
    error = group.exceptions[0]
    while isinstance(error, BaseExceptionGroup):
        error = error.exceptions[0]
    return error


def _text_language(options: TranscriptionOptions) -> Optional[str]:
    """Language the decoded text is expected to be in."""
    if options.task == TranscriptionTask.TRANSLATE:
        return "en"
    if options.task == TranscriptionTask.TRANSLATE_TO:
        return options.target_language
    return options.language


class TranscriptionEngine:
    """Main interface for offline transcription.

    Example:
        >>> config = load_config()
        >>> engine = TranscriptionEngine(ModelManager.from_config(config), "base", config=config)
        >>> result = await engine.transcribe("audio.wav", on_progress=print)
        >>> for segment in result.segments:
        ...     print(f"[{segment.start:.2f}s - {segment.end:.2f}s] {segment.text}")

    Attributes:
        model_manager: Source of the model files
        variant: Model variant id used for inference
        config: Engine, decoder, merger and language settings
        audio_decoder: Capability turning audio files into samples
        feature_extractor: Log-mel feature extractor
        merger: Segment merger
        language_detector: Script-based language detector
        max_concurrency: Upper bound on chunks processed at once
    """

    def __init__(
        self,
        model_manager: ModelManager,
        variant: Union[str, ModelVariant] = "base",
        audio_decoder: Optional[AudioDecoder] = None,
        tokenizer: Optional[WhisperTokenizer] = None,
        adapter_factory: Optional[AdapterFactory] = None,
        config: Optional[Config] = None,
        feature_extractor: Optional[FeatureExtractor] = None,
    ):
        self.config = config or Config()
        engine = self.config.engine

        self.model_manager = model_manager
        self.variant = model_manager.catalog.get(variant)
        self.audio_decoder = audio_decoder or SoundFileDecoder()
        self.feature_extractor = feature_extractor or FeatureExtractor(engine.sample_rate)
        self.merger = SegmentMerger(self.config.merger.gap_threshold)
        language = self.config.language
        self.language_detector = LanguageDetector(
            noise_floor=language.noise_floor,
            script_weight=language.script_weight,
            default_language=language.default_language,
            cache_size=language.cache_size,
        )
        self.max_concurrency = engine.max_concurrency
        self._adapter_factory = adapter_factory or torchscript_adapter_factory(
            engine.device, engine.compute_type, self.feature_extractor.n_mels
        )

        self._tokenizer = tokenizer
        self._token_decoder: Optional[TokenDecoder] = None
        self._adapter: Optional[InferenceAdapter] = None
        self._handle: Optional[ModelHandle] = None
        self._ready_lock = asyncio.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_concurrency, thread_name_prefix="whisper-inference"
        )
        self._result_cache: BoundedCache[Tuple[str, str], Tuple[TranscriptionSegment, ...]] = (
            BoundedCache(engine.result_cache_size)
        )
        self._mel_cache: BoundedCache[str, torch.Tensor] = BoundedCache(engine.result_cache_size)

        logger.info(
            f"TranscriptionEngine initialized: variant={self.variant.id}, "
            f"device={engine.device}, max_concurrency={self.max_concurrency}"
        )

    @property
    def is_ready(self) -> bool:
        return self._adapter is not None

    @property
    def model_handle(self) -> ModelHandle:
        """Files of the loaded model.

        Raises:
            ModelNotLoadedError: Before :meth:`ensure_ready` has completed
        """
        if not self.is_ready:
            raise ModelNotLoadedError(f"Model '{self.variant.id}' is not loaded")
        return self._handle

    async def ensure_ready(self, on_progress: Optional[ProgressCallback] = None) -> ModelHandle:
        """Load the model, tokenizer and inference runtime once.

        Concurrent callers wait for the first one to finish.
        """
        async with self._ready_lock:
            if self._handle is None:
                self._handle = await self.model_manager.load_model(self.variant, on_progress)
            if self._tokenizer is None:
                await self.model_manager.download_common_files()
                self._tokenizer = await asyncio.to_thread(
                    WhisperTokenizer.from_directory, self.model_manager.cache.common_dir()
                )
            if self._adapter is None:
                self._token_decoder = TokenDecoder.from_config(self._tokenizer, self.config.decoder)
                self._adapter = self._adapter_factory(self._handle, self._tokenizer)
                logger.info(f"Model '{self.variant.id}' ready for transcription")
            elif on_progress is not None:
                on_progress(1.0)
            return self._handle

    async def transcribe(
        self,
        audio: AudioInput,
        options: Optional[TranscriptionOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
        sample_rate: Optional[int] = None,
    ) -> TranscriptionResult:
        """Transcribe an audio file or sample array.

        Args:
            audio: Audio file path or 1-D numpy array
            options: Transcription options (default: TranscriptionOptions())
            on_progress: Receives non-decreasing values in [0, 1]
            sample_rate: Rate of an array input (default: engine sample rate)

        Returns:
            TranscriptionResult with merged segments and the language

        Raises:
            AudioFileNotFoundError: If the audio file is not found
            UnsupportedAudioFormatError: If the file format cannot be decoded
            InferenceError: If any chunk fails; no partial result is returned
            ValueError: If the audio array is empty or not 1-D
        """
        options = options or TranscriptionOptions()
        tracker = ProgressTracker(on_progress)

        with Stopwatch() as watch:
            await self.ensure_ready(lambda p: tracker.report(MODEL_READY_PROGRESS * p))
            tracker.report(MODEL_READY_PROGRESS)

            samples, rate = await self._load_audio(audio, sample_rate)
            audio_duration = len(samples) / rate
            chunks = AudioChunker(self.config.engine.chunk_duration, rate).chunk_audio(samples)
            tracker.report(CHUNKED_PROGRESS)
            logger.debug(f"Split {audio_duration:.2f}s of audio into {len(chunks)} chunks")

            segments, cached_chunks = await self._process_chunks(chunks, options, tracker)
            segments = self.merger.merge(segments)

            language = options.language
            if language is None:
                language = self.language_detector.detect(segments).language
                segments = [self._postprocess(segment, language) for segment in segments]

        result = TranscriptionResult(
            segments=tuple(segments),
            language=language,
            options=options,
            processing_time=watch.elapsed,
            audio_duration=audio_duration,
            num_chunks=len(chunks),
        )
        stats = PerformanceProfiler.calculate_stats(
            audio_duration=audio_duration,
            processing_time=watch.elapsed,
            num_chunks=len(chunks),
            max_concurrency=self.max_concurrency,
            device=self.config.engine.device,
            cached_chunks=cached_chunks,
        )
        logger.info(f"Transcription finished ({language}): {stats}")
        tracker.report(1.0)
        return result

    async def transcribe_batch(
        self,
        audio_files: Sequence[Union[str, Path]],
        options: Optional[TranscriptionOptions] = None,
        max_concurrent_files: int = 2,
        on_status: Optional[BatchStatusCallback] = None,
    ) -> List[BatchItemResult]:
        """Transcribe several files, isolating per-file failures.

        Returns:
            One BatchItemResult per input file, in input order

        Raises:
            ValueError: If audio_files is empty or max_concurrent_files < 1
        """
        if not audio_files:
            raise ValueError("audio_files cannot be empty")
        if max_concurrent_files < 1:
            raise ValueError(
                f"max_concurrent_files must be positive, got {max_concurrent_files}"
            )

        paths = [Path(p) for p in audio_files]
        results: List[Optional[BatchItemResult]] = [None] * len(paths)
        semaphore = asyncio.Semaphore(max_concurrent_files)

        def notify(index: int, status: BatchStatus) -> None:
            if on_status is not None:
                on_status(index, paths[index], status)

        async def run(index: int) -> None:
            async with semaphore:
                notify(index, BatchStatus.PROCESSING)
                try:
                    result = await self.transcribe(paths[index], options)
                except WhisperError as e:
                    logger.warning(f"Failed to transcribe {paths[index]}: {e}")
                    results[index] = BatchItemResult(paths[index], error=e)
                    notify(index, BatchStatus.FAILED)
                else:
                    results[index] = BatchItemResult(paths[index], result=result)
                    notify(index, BatchStatus.COMPLETED)

        for index in range(len(paths)):
            notify(index, BatchStatus.PENDING)
        async with asyncio.TaskGroup() as group:
            for index in range(len(paths)):
                group.create_task(run(index))

        failed = sum(1 for item in results if not item.succeeded)
        logger.info(f"Batch finished: {len(paths) - failed}/{len(paths)} files transcribed")
        return results

    async def transcribe_chunk(
        self, chunk: AudioChunk, options: Optional[TranscriptionOptions] = None
    ) -> Tuple[TranscriptionSegment, ...]:
        """Decode a single chunk on the inference executor, bypassing the result cache.

        Segment times are on the chunk's own timeline (``chunk.start_time``
        onwards) and no language post-processing is applied.

        Raises:
            ModelNotLoadedError: If :meth:`ensure_ready` has not completed
            InferenceError: If inference fails
        """
        if not self.is_ready:
            raise ModelNotLoadedError(f"Model '{self.variant.id}' is not loaded")
        options = options or TranscriptionOptions()
        return await self._infer(chunk, options, self._prompt_tokens(options))

    def clear_caches(self) -> None:
        self._result_cache.clear()
        self._mel_cache.clear()

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    # Internals

    async def _load_audio(
        self, audio: AudioInput, sample_rate: Optional[int]
    ) -> Tuple[np.ndarray, int]:
        if isinstance(audio, (str, Path)):
            return await asyncio.to_thread(self.audio_decoder.decode, audio)
        if isinstance(audio, np.ndarray):
            if audio.ndim != 1:
                raise ValueError(f"audio array must be 1-dimensional, got shape {audio.shape}")
            if len(audio) == 0:
                raise ValueError("audio array cannot be empty")
            rate = sample_rate or self.config.engine.sample_rate
            if rate <= 0:
                raise ValueError(f"sample_rate must be positive, got {rate}")
            return audio.astype(np.float32, copy=False), rate
        raise TypeError(
            f"audio must be str (file path) or np.ndarray, got {type(audio).__name__}"
        )

    @staticmethod
    def _postprocess(segment: TranscriptionSegment, language: str) -> TranscriptionSegment:
        text = postprocess_text(segment.text, language)
        if text == segment.text:
            return segment
        return replace(segment, text=text)

    def _prompt_tokens(self, options: TranscriptionOptions) -> Tuple[int, ...]:
        if not options.initial_prompt:
            return ()
        return tuple(self._tokenizer.encode(" " + options.initial_prompt.strip()))

    async def _process_chunks(
        self,
        chunks: List[AudioChunk],
        options: TranscriptionOptions,
        tracker: ProgressTracker,
    ) -> Tuple[List[TranscriptionSegment], int]:
        options_key = json.dumps(options.to_dict(), sort_keys=True)
        prompt_tokens = self._prompt_tokens(options)
        semaphore = asyncio.Semaphore(self.max_concurrency)
        per_chunk: Dict[int, Tuple[TranscriptionSegment, ...]] = {}
        cached = 0

        def completed() -> None:
            share = len(per_chunk) / len(chunks)
            tracker.report(
                CHUNKED_PROGRESS + (INFERENCE_DONE_PROGRESS - CHUNKED_PROGRESS) * share
            )

        async def process(chunk: AudioChunk) -> None:
            nonlocal cached
            key = (chunk.chunk_id, options_key)
            segments = self._result_cache.get(key)
            if segments is not None:
                cached += 1
            else:
                async with semaphore:
                    segments = await self._infer(chunk, options, prompt_tokens)
                self._result_cache.put(key, segments)
            per_chunk[chunk.chunk_index] = segments
            completed()

        try:
            async with asyncio.TaskGroup() as group:
                for chunk in chunks:
                    group.create_task(process(chunk))
        except BaseExceptionGroup as group:
            error = _first_error(group)
            logger.error(f"Transcription aborted: {error}")
            raise error from None

        segments = [s for index in sorted(per_chunk) for s in per_chunk[index]]
        return segments, cached

    async def _infer(
        self,
        chunk: AudioChunk,
        options: TranscriptionOptions,
        prompt_tokens: Sequence[int],
    ) -> Tuple[TranscriptionSegment, ...]:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                self._executor, self._run_chunk, chunk, options, prompt_tokens
            )
        except WhisperError:
            raise
        except Exception as e:
            raise InferenceError(chunk.chunk_index, str(e)) from e

    def _run_chunk(
        self,
        chunk: AudioChunk,
        options: TranscriptionOptions,
        prompt_tokens: Sequence[int],
    ) -> Tuple[TranscriptionSegment, ...]:
        features = self._mel_cache.get(chunk.chunk_id)
        if features is None:
            features = self.feature_extractor.extract_chunk(chunk)
            self._mel_cache.put(chunk.chunk_id, features)

        output = self._adapter.predict(features, options, prompt_tokens)
        segments = self._token_decoder.decode(
            output.token_ids,
            time_offset=chunk.start_time,
            chunk_end=chunk.end_time,
            language=_text_language(options),
            logprobs=output.token_logprobs,
            word_timestamps=options.word_timestamps,
        )
        logger.debug(
            f"Chunk {chunk.chunk_index} [{chunk.start_time:.2f}s - {chunk.end_time:.2f}s]: "
            f"{len(segments)} segments"
        )
        return tuple(segments)
