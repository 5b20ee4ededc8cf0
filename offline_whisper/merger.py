"""Merging of per-chunk segment lists into the final transcript."""

import logging
from dataclasses import replace
from typing import Iterable, List, Optional

from .data_models import TranscriptionSegment

logger = logging.getLogger(__name__)


def _combine(current: TranscriptionSegment, following: TranscriptionSegment) -> TranscriptionSegment:
    confidences = [c for c in (current.confidence, following.confidence) if c is not None]
    confidence: Optional[float] = sum(confidences) / len(confidences) if confidences else None
    words = None
    if current.words is not None or following.words is not None:
        words = (current.words or ()) + (following.words or ())
    return replace(
        current,
        text=f"{current.text} {following.text}",
        end=max(current.end, following.end),
        confidence=confidence,
        words=words,
    )


class SegmentMerger:
    """Sorts segments and joins neighbours separated by less than a gap.

    A segment whose start lies within ``gap_threshold`` seconds of the end of
    the running segment (or before it) is folded into it. The merged segment
    keeps the id of the first segment. Indices are rewritten to 0..N-1.

    Attributes:
        gap_threshold: Largest gap in seconds that still joins two segments
    """

    def __init__(self, gap_threshold: float = 0.3):
        if gap_threshold < 0:
            raise ValueError(f"gap_threshold must be non-negative, got {gap_threshold}")
        self.gap_threshold = gap_threshold

    def merge(self, segments: Iterable[TranscriptionSegment]) -> List[TranscriptionSegment]:
        ordered = sorted(segments, key=lambda s: (s.start, s.end))
        if not ordered:
            return []

        merged = []
        current = ordered[0]
        for following in ordered[1:]:
            if following.start - current.end < self.gap_threshold:
                current = _combine(current, following)
            else:
                merged.append(current)
                current = following
        merged.append(current)

        logger.debug(f"Merged {len(ordered)} segments into {len(merged)}")
        return [
            segment if segment.index == index else replace(segment, index=index)
            for index, segment in enumerate(merged)
        ]
