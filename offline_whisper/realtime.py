"""Streaming transcription over a rolling sample buffer.

Audio pushed in with :meth:`RealtimeTranscriber.append` is consumed in
non-overlapping windows of ``segment_duration`` seconds. Each window goes
through the engine's feature extraction, inference and token decoding and
comes out of :meth:`RealtimeTranscriber.results` as a
:class:`RealtimeTranscriptionResult` timed from the start of the stream.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, replace
from typing import AsyncIterator, Optional, Tuple

import numpy as np

from .chunker import chunk_fingerprint
from .config import RealtimeConfig
from .data_models import AudioChunk, TranscriptionOptions, TranscriptionSegment
from .engine import TranscriptionEngine
from .language import postprocess_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RealtimeTranscriptionResult:
    """Text recognised in one window of streamed audio.

    Attributes:
        text: Segment texts joined by a space
        timestamp: Window start in seconds since the stream began
        end: Window end in seconds since the stream began
        is_final: False for a preview of a window that is still filling
        language: Language of the text
        segments: Segments on the stream timeline
    """
    text: str
    timestamp: float
    end: float
    is_final: bool
    language: str
    segments: Tuple[TranscriptionSegment, ...] = ()


class RollingBuffer:
    """Thread-safe FIFO of mono samples holding at most ``capacity`` of them.

    Appending past capacity drops the oldest samples. ``position`` is the
    stream offset of the first buffered sample, so windows taken from the
    buffer keep their place on the stream timeline.
    """

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.dropped = 0
        self._data = np.zeros(0, dtype=np.float32)
        self._position = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    @property
    def position(self) -> int:
        with self._lock:
            return self._position

    def append(self, samples: np.ndarray) -> int:
        """Add samples, returning how many old samples were dropped."""
        with self._lock:
            data = np.concatenate([self._data, samples.astype(np.float32, copy=False)])
            overflow = len(data) - self.capacity
            if overflow > 0:
                data = data[overflow:]
                self._position += overflow
                self.dropped += overflow
            self._data = data
            return max(overflow, 0)

    def take(self, count: int) -> Optional[Tuple[int, np.ndarray]]:
        """Remove the oldest ``count`` samples; None while fewer are buffered."""
        with self._lock:
            if len(self._data) < count:
                return None
            return self._pop(count)

    def peek(self) -> Tuple[int, np.ndarray]:
        with self._lock:
            return self._position, self._data.copy()

    def drain(self) -> Tuple[int, np.ndarray]:
        with self._lock:
            return self._pop(len(self._data))

    def clear(self) -> None:
        with self._lock:
            self._pop(len(self._data))

    def _pop(self, count: int) -> Tuple[int, np.ndarray]:
        start = self._position
        window = self._data[:count]
        self._data = self._data[count:]
        self._position += count
        return start, window


class RealtimeTranscriber:
    """Transcribes audio while it is still being recorded.

    Example:
        >>> transcriber = RealtimeTranscriber(engine)
        >>> recorder.on_samples(transcriber.append)  # any thread
        >>> async for result in transcriber.results():
        ...     print(f"[{result.timestamp:6.1f}s] {result.text}")

    :meth:`finish` flushes the last, shorter window and ends the stream;
    :meth:`stop` ends it and discards whatever is still buffered.
    """

    def __init__(
        self,
        engine: TranscriptionEngine,
        options: Optional[TranscriptionOptions] = None,
        config: Optional[RealtimeConfig] = None,
        sample_rate: Optional[int] = None,
    ):
        self.engine = engine
        self.options = options or TranscriptionOptions()
        self.config = config or engine.config.realtime
        self.sample_rate = sample_rate or engine.config.engine.sample_rate
        if self.sample_rate <= 0:
            raise ValueError(f"sample_rate must be positive, got {self.sample_rate}")
        self.window_samples = max(1, round(self.config.segment_duration * self.sample_rate))
        self.buffer = RollingBuffer(
            max(self.window_samples, round(self.config.buffer_duration * self.sample_rate))
        )
        self._min_partial = round(self.config.min_partial_duration * self.sample_rate)
        self._finished = False
        self._stopped = False
        self._wakeup = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._windows = 0
        self._previewed_to = 0

    @property
    def is_active(self) -> bool:
        return not (self._finished or self._stopped)

    def append(self, samples: np.ndarray) -> None:
        """Queue mono samples at ``sample_rate``. Safe to call from any thread.

        Raises:
            ValueError: If ``samples`` is not 1-D
            RuntimeError: After :meth:`finish` or :meth:`stop`
        """
        samples = np.asarray(samples, dtype=np.float32)
        if samples.ndim != 1:
            raise ValueError(f"samples must be 1-dimensional, got shape {samples.shape}")
        if not self.is_active:
            raise RuntimeError("Cannot append to a finished stream")
        dropped = self.buffer.append(samples)
        if dropped:
            logger.warning(
                f"Realtime buffer full, dropped {dropped / self.sample_rate:.2f}s of audio"
            )
        self._notify()

    def finish(self) -> None:
        """End the input; buffered audio is still transcribed."""
        self._finished = True
        self._notify()

    def stop(self) -> None:
        """End the stream now, discarding buffered audio."""
        self._stopped = True
        self.buffer.clear()
        self._notify()

    async def results(self) -> AsyncIterator[RealtimeTranscriptionResult]:
        """Yield results until the stream is finished or stopped.

        Loads the model first if needed. Only one consumer may iterate.

        Raises:
            InferenceError: If a window fails to decode
        """
        if self._loop is not None:
            raise RuntimeError("Results are already being consumed")
        self._loop = asyncio.get_running_loop()
        await self.engine.ensure_ready()
        logger.info(
            f"Realtime transcription started: window={self.config.segment_duration}s, "
            f"buffer={self.config.buffer_duration}s"
        )

        while not self._stopped:
            self._wakeup.clear()
            taken = self.buffer.take(self.window_samples)
            if taken is not None:
                yield await self._transcribe(*taken, is_final=True)
                continue
            if self._finished:
                start, tail = self.buffer.drain()
                if len(tail):
                    yield await self._transcribe(start, tail, is_final=True)
                break
            if self.config.partial_results:
                start, pending = self.buffer.peek()
                if len(pending) >= self._min_partial and start + len(pending) > self._previewed_to:
                    self._previewed_to = start + len(pending)
                    yield await self._transcribe(start, pending, is_final=False)
                    continue
            await self._wakeup.wait()

        logger.info(
            f"Realtime transcription ended after {self._windows} windows, "
            f"{self.buffer.dropped} samples dropped"
        )

    def _notify(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._wakeup.set()
        else:
            loop.call_soon_threadsafe(self._wakeup.set)

    async def _transcribe(
        self, start: int, samples: np.ndarray, is_final: bool
    ) -> RealtimeTranscriptionResult:
        chunk = AudioChunk(
            chunk_id=chunk_fingerprint(samples, self.sample_rate, start),
            audio=samples,
            start_time=start / self.sample_rate,
            end_time=(start + len(samples)) / self.sample_rate,
            chunk_index=self._windows,
            sample_rate=self.sample_rate,
        )
        segments = await self.engine.transcribe_chunk(chunk, self.options)

        language = self.options.language
        if language is None:
            language = self.engine.language_detector.detect(segments).language
            segments = [
                replace(segment, text=postprocess_text(segment.text, language))
                for segment in segments
            ]
        segments = tuple(
            segment
            for segment in segments
            if segment.confidence is None or segment.confidence >= self.config.min_confidence
        )

        if is_final:
            self._windows += 1
            self._previewed_to = 0
            logger.debug(
                f"Window {chunk.chunk_index} [{chunk.start_time:.2f}s - {chunk.end_time:.2f}s]: "
                f"{len(segments)} segments"
            )
        return RealtimeTranscriptionResult(
            text=" ".join(segment.text for segment in segments),
            timestamp=chunk.start_time,
            end=chunk.end_time,
            is_final=is_final,
            language=language,
            segments=segments,
        )
