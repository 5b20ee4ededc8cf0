"""Tests for script-based language detection."""

import pytest

from offline_whisper.data_models import TranscriptionSegment
from offline_whisper.language import LanguageDetector, postprocess_text


def segments(*texts):
    return [
        TranscriptionSegment(index=i, text=text, start=float(i), end=float(i) + 1.0)
        for i, text in enumerate(texts)
    ]


class TestLanguageDetector:
    """Test language scoring and selection."""

    def test_korean(self):
        """Test that Hangul text is detected as Korean above the noise floor."""
        detector = LanguageDetector()

        detection = detector.detect(segments("안녕하세요 반갑습니다"))

        assert detection.language == "ko"
        assert detection.score > detector.noise_floor

    def test_script_weight_applied(self):
        """Test that specific scripts are boosted by the script weight."""
        detector = LanguageDetector()

        scores = detector.scores("안녕하세요 반갑습니다")

        assert scores["ko"] == pytest.approx(0.9 * 1.2)

    def test_japanese(self):
        """Test that kana text is detected as Japanese."""
        assert LanguageDetector().detect_text("こんにちは").language == "ja"

    def test_cyrillic_tie_uses_default(self):
        """Test that text scoring equally for ru and uk falls back to the default."""
        detection = LanguageDetector().detect_text("ёж")

        assert detection.language == "en"

    def test_empty_input_uses_default(self):
        """Test that no segments yields the default language with zero score."""
        detector = LanguageDetector(default_language="de")

        detection = detector.detect([])

        assert detection.language == "de"
        assert detection.score == 0.0

    def test_no_matches_uses_default(self):
        """Test that text matching no pattern yields the default language."""
        assert LanguageDetector().detect_text("12345 !!!").language == "en"

    def test_latin_tie_uses_default(self):
        """Test that plain ASCII ties across Latin languages fall back to default."""
        detector = LanguageDetector(default_language="fr")

        assert detector.detect_text("hello world").language == "fr"

    def test_diacritics_break_latin_tie(self):
        """Test that German umlauts single out German."""
        assert LanguageDetector().detect_text("schöne grüße").language == "de"

    def test_cache_keyed_by_first_two_segments(self):
        """Test that results are cached by the first two segments' text."""
        detector = LanguageDetector()
        first = detector.detect(segments("안녕하세요", "반갑습니다", "hello"))

        second = detector.detect(segments("안녕하세요", "반갑습니다", "completely different"))

        assert second is first

    def test_invalid_noise_floor(self):
        """Test that an out-of-range noise floor raises ValueError."""
        with pytest.raises(ValueError, match="noise_floor"):
            LanguageDetector(noise_floor=1.5)


class TestPostprocessText:
    """Test per-language text cleanup rules."""

    def test_japanese_punctuation(self):
        """Test that a space before Japanese punctuation is removed."""
        assert postprocess_text("こんにちは 。", "ja") == "こんにちは。"

    def test_chinese_comma(self):
        """Test that a space before a Chinese comma is removed."""
        assert postprocess_text("你好 ，世界", "zh") == "你好，世界"

    def test_unknown_language_only_trims(self):
        """Test that languages without rules are only trimmed."""
        assert postprocess_text("  hello  world ", "en") == "hello  world"

    def test_none_language(self):
        """Test that no language only trims."""
        assert postprocess_text(" hi ", None) == "hi"
