"""Token-stream to segment decoding.

The decoder walks a flat sequence of token ids produced for one chunk and
rebuilds time-stamped text segments from it. Timestamp tokens delimit
segments, end-of-transcript stops the scan and everything that is not a
control token is buffered as text.
"""

import logging
import math
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from .config import DecoderConfig
from .data_models import TranscriptionSegment, WordTimestamp
from .errors import MalformedTokenSequenceError
from .language import postprocess_text
from .tokenizer import WhisperTokenizer

logger = logging.getLogger(__name__)


class DecoderState(str, Enum):
    AWAITING_CONTENT = "awaiting_content"
    IN_SEGMENT = "in_segment"
    DONE = "done"


def split_words(
    text: str, start: float, end: float, confidence: Optional[float] = None
) -> Tuple[WordTimestamp, ...]:
    """Spread ``[start, end]`` across the words of ``text`` by character length."""
    words = text.split()
    if not words:
        return ()
    total = sum(len(word) for word in words)
    span = end - start
    timings = []
    cursor = start
    consumed = 0
    for position, word in enumerate(words):
        consumed += len(word)
        # The last word ends exactly at ``end`` regardless of float drift
        word_end = end if position == len(words) - 1 else start + span * consumed / total
        timings.append(WordTimestamp(word, cursor, word_end, confidence))
        cursor = word_end
    return tuple(timings)


class TokenDecoder:
    """Rebuilds segments from the token ids of a single chunk.

    Example:
        >>> decoder = TokenDecoder(tokenizer)
        >>> ts = tokenizer.special_tokens.timestamp_base
        >>> ids = [ts, *tokenizer.encode("hello"), ts + 50]
        >>> [(s.text, s.start, s.end) for s in decoder.decode(ids, time_offset=30.0)]
        [('hello', 30.0, 31.0)]

    Attributes:
        tokenizer: Tokenizer providing text decoding and control token ids
        timestamp_resolution: Seconds per timestamp token step
        max_timestamp_index: Highest timestamp token offset accepted
        fallback_duration: Length given to segments with no closing timestamp
        no_text_marker: Text of the placeholder emitted for empty output
    """

    def __init__(
        self,
        tokenizer: WhisperTokenizer,
        timestamp_resolution: float = 0.02,
        max_timestamp_index: int = 1500,
        fallback_duration: float = 5.0,
        no_text_marker: str = "[No text extracted]",
    ):
        if timestamp_resolution <= 0:
            raise ValueError(
                f"timestamp_resolution must be positive, got {timestamp_resolution}"
            )
        if fallback_duration < 0:
            raise ValueError(f"fallback_duration must be non-negative, got {fallback_duration}")

        self.tokenizer = tokenizer
        self.timestamp_resolution = timestamp_resolution
        self.max_timestamp_index = max_timestamp_index
        self.fallback_duration = fallback_duration
        self.no_text_marker = no_text_marker

    @classmethod
    def from_config(cls, tokenizer: WhisperTokenizer, config: DecoderConfig) -> "TokenDecoder":
        return cls(
            tokenizer,
            timestamp_resolution=config.timestamp_resolution,
            max_timestamp_index=config.max_timestamp_index,
            fallback_duration=config.fallback_duration,
            no_text_marker=config.no_text_marker,
        )

    def decode(
        self,
        token_ids: Sequence[int],
        time_offset: float = 0.0,
        chunk_end: Optional[float] = None,
        language: Optional[str] = None,
        logprobs: Optional[Sequence[float]] = None,
        word_timestamps: bool = False,
    ) -> List[TranscriptionSegment]:
        """Decode one chunk's token ids into segments on the global timeline.

        Args:
            token_ids: Token ids in generation order
            time_offset: Start of the chunk in the full recording (seconds)
            chunk_end: End of the chunk; segment times are clamped to it
            language: Language whose post-processing rules apply to the text
            logprobs: Per-token log-probabilities aligned with ``token_ids``
            word_timestamps: Attach proportional word timings

        Returns:
            At least one segment; a placeholder covering the chunk when no
            text could be recovered

        Raises:
            MalformedTokenSequenceError: If an id is negative or ``logprobs``
                does not line up with ``token_ids``
        """
        if logprobs is not None and len(logprobs) != len(token_ids):
            raise MalformedTokenSequenceError(
                f"{len(logprobs)} log-probabilities for {len(token_ids)} tokens"
            )
        upper = chunk_end if chunk_end is not None else math.inf
        if upper < time_offset:
            raise ValueError(f"chunk_end ({chunk_end}) precedes time_offset ({time_offset})")

        special = self.tokenizer.special_tokens
        segments: List[TranscriptionSegment] = []
        state = DecoderState.AWAITING_CONTENT
        segment_start: Optional[float] = None
        buffer: List[int] = []
        buffer_logprobs: List[float] = []

        def flush(end: float) -> None:
            text = postprocess_text(self.tokenizer.decode(buffer), language)
            if not text:
                return
            start = min(max(time_offset + segment_start, time_offset), upper)
            stop = min(max(time_offset + end, start), upper)
            confidence = None
            if buffer_logprobs:
                confidence = min(1.0, math.exp(sum(buffer_logprobs) / len(buffer_logprobs)))
            segments.append(
                TranscriptionSegment(
                    index=len(segments),
                    text=text,
                    start=start,
                    end=stop,
                    confidence=confidence,
                    words=split_words(text, start, stop, confidence) if word_timestamps else None,
                )
            )

        for position, token in enumerate(token_ids):
            if token < 0:
                raise MalformedTokenSequenceError(f"negative token id {token} at position {position}")

            if token in (special.start_of_transcript, special.start_of_previous):
                continue

            if token == special.end_of_transcript:
                if segment_start is not None and buffer:
                    flush(segment_start + self.fallback_duration)
                state = DecoderState.DONE
                break

            if self.tokenizer.is_timestamp(token, self.max_timestamp_index):
                time = self.tokenizer.timestamp_index(token) * self.timestamp_resolution
                if segment_start is not None:
                    flush(time)
                segment_start = time
                buffer.clear()
                buffer_logprobs.clear()
                state = DecoderState.AWAITING_CONTENT
                continue

            if self.tokenizer.is_special(token):
                # Language, task and out-of-range timestamp tokens carry no text
                continue

            if segment_start is None:
                segment_start = 0.0
            buffer.append(token)
            if logprobs is not None:
                buffer_logprobs.append(float(logprobs[position]))
            state = DecoderState.IN_SEGMENT

        if state == DecoderState.IN_SEGMENT:
            flush(segment_start + self.fallback_duration)

        if not segments:
            logger.debug(f"No text recovered for chunk at {time_offset:.2f}s")
            end = upper if chunk_end is not None else time_offset + self.fallback_duration
            segments.append(
                TranscriptionSegment(index=0, text=self.no_text_marker, start=time_offset, end=end)
            )
        return segments
