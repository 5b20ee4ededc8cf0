"""Heuristic, script-based language identification.

Each language has a character-class pattern. A language scores the fraction
of characters in the text its pattern matches; scores under the noise floor
are discarded and scripts that identify a language more specifically than
plain Latin get a multiplicative boost.
"""

import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from .caching import BoundedCache
from .data_models import TranscriptionSegment

logger = logging.getLogger(__name__)

LANGUAGE_PATTERNS: Dict[str, "re.Pattern[str]"] = {
    language: re.compile(pattern)
    for language, pattern in {
        "ko": r"[가-힣]",
        "ja": r"[ぁ-んァ-ン]",
        "zh": r"[\u4e00-\u9fff]",
        "en": r"[a-zA-Z]",
        "ru": r"[А-Яа-я]",
        "ar": r"[\u0600-\u06ff]",
        "hi": r"[\u0900-\u097f]",
        "de": r"[a-zA-ZäöüÄÖÜß]",
        "fr": r"[a-zA-ZàâäæçéèêëîïôœùûüÿÀÂÄÆÇÉÈÊËÎÏÔŒÙÛÜŸ]",
        "es": r"[a-zA-ZáéíóúüñÁÉÍÓÚÜÑ]",
        "it": r"[a-zA-ZàèéìíîòóùúÀÈÉÌÍÎÒÓÙÚ]",
        "pt": r"[a-zA-ZáàâãéèêíìóòôõúùÁÀÂÃÉÈÊÍÌÓÒÔÕÚÙ]",
        "nl": r"[a-zA-ZäëïöüÄËÏÖÜ]",
        "tr": r"[a-zA-ZçğıöşüÇĞİÖŞÜ]",
        "pl": r"[a-zA-ZąćęłńóśźżĄĆĘŁŃÓŚŹŻ]",
        "uk": r"[А-Яа-яЇїІіЄєҐґ]",
        "vi": r"[a-zA-ZàáâãèéêìíòóôõùúýăđĩũơưẠ-ỹ]",
    }.items()
}

SPECIFIC_SCRIPTS = frozenset({"ko", "ja", "zh", "ar", "hi"})

# Per-language cleanup applied to decoded text, in order
POSTPROCESS_RULES: Dict[str, Sequence[tuple]] = {
    "ko": ((" 니다", "니다"), (" 요", "요"), ("  ", " ")),
    "ja": ((" 。", "。"), (" 、", "、"), ("  ", " ")),
    "zh": ((" 。", "。"), (" ，", "，"), ("  ", " ")),
}


def postprocess_text(text: str, language: Optional[str]) -> str:
    """Trim ``text`` and apply the substitution table for ``language``."""
    text = text.strip()
    for pattern, replacement in POSTPROCESS_RULES.get(language or "", ()):
        text = text.replace(pattern, replacement)
    return text


@dataclass(frozen=True)
class LanguageDetection:
    language: str
    score: float


class LanguageDetector:
    """Scores text against per-language character patterns.

    Results for segment lists are cached by a fingerprint of the first two
    segments' text; the cache is emptied when full.

    Attributes:
        noise_floor: Minimum unweighted score a language must exceed
        script_weight: Multiplier for the specific scripts (ko, ja, zh, ar, hi)
        default_language: Result for empty input and ties
    """

    def __init__(
        self,
        noise_floor: float = 0.05,
        script_weight: float = 1.2,
        default_language: str = "en",
        cache_size: int = 100,
    ):
        if not 0.0 <= noise_floor < 1.0:
            raise ValueError(f"noise_floor must be in range [0.0, 1.0), got {noise_floor}")
        if script_weight <= 0:
            raise ValueError(f"script_weight must be positive, got {script_weight}")
        self.noise_floor = noise_floor
        self.script_weight = script_weight
        self.default_language = default_language
        self._cache: BoundedCache[str, LanguageDetection] = BoundedCache(cache_size)

    @staticmethod
    def cache_key(segments: Sequence[TranscriptionSegment]) -> str:
        joined = "\x1f".join(segment.text for segment in segments[:2])
        return hashlib.sha1(joined.encode("utf-8")).hexdigest()

    def detect(self, segments: Sequence[TranscriptionSegment]) -> LanguageDetection:
        """Detect the language of a segment list."""
        if not segments:
            return LanguageDetection(self.default_language, 0.0)

        key = self.cache_key(segments)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        detection = self.detect_text(" ".join(segment.text for segment in segments))
        self._cache.put(key, detection)
        return detection

    def scores(self, text: str) -> Dict[str, float]:
        """Weighted scores of the languages above the noise floor."""
        if not text:
            return {}
        length = len(text)
        scores = {}
        for language, pattern in LANGUAGE_PATTERNS.items():
            frequency = len(pattern.findall(text)) / length
            if frequency > self.noise_floor:
                weight = self.script_weight if language in SPECIFIC_SCRIPTS else 1.0
                scores[language] = frequency * weight
        return scores

    def detect_text(self, text: str) -> LanguageDetection:
        scores = self.scores(text)
        if not scores:
            return LanguageDetection(self.default_language, 0.0)

        best = max(scores.values())
        winners = [language for language, score in scores.items() if score == best]
        # Latin-script languages share most characters, so exact ties are common
        language = winners[0] if len(winners) == 1 else self.default_language
        logger.debug(f"Detected language '{language}' (score {best:.3f})")
        return LanguageDetection(language, best)
