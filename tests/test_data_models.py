"""Tests for data models."""

import json

import pytest

from offline_whisper.data_models import (
    PreserveFormat,
    TranscriptionOptions,
    TranscriptionResult,
    TranscriptionSegment,
    TranscriptionTask,
    WordTimestamp,
    segments_span,
)
from offline_whisper.errors import ConfigurationError


class TestTranscriptionOptions:
    """Test option validation and serialisation."""

    def test_defaults(self):
        """Test default option values."""
        options = TranscriptionOptions()

        assert options.task == TranscriptionTask.TRANSCRIBE
        assert options.temperature == 0.0
        assert options.preserve_formats == {PreserveFormat.NUMBERS, PreserveFormat.NAMES}

    def test_plain_values_normalised(self):
        """Test that string task and formats become enums."""
        options = TranscriptionOptions(task="translate", preserve_formats=["urls"])

        assert options.task == TranscriptionTask.TRANSLATE
        assert options.preserve_formats == frozenset({PreserveFormat.URLS})

    @pytest.mark.parametrize(
        "kwargs,message",
        [
            ({"temperature": 1.5}, "temperature"),
            ({"temperature": -0.1}, "temperature"),
            ({"language": "xx"}, "language"),
            ({"task": TranscriptionTask.TRANSLATE_TO}, "target_language is required"),
            ({"target_language": "ko"}, "only valid with task"),
            ({"silence_threshold": 2.0}, "silence_threshold"),
            ({"translation_quality": -1.0}, "translation_quality"),
            ({"compression_ratio_threshold": 0.0}, "compression_ratio_threshold"),
        ],
    )
    def test_invalid(self, kwargs, message):
        """Test that invalid options raise ConfigurationError."""
        with pytest.raises(ConfigurationError, match=message):
            TranscriptionOptions(**kwargs)

    def test_dict_round_trip(self):
        """Test conversion to and from dictionaries."""
        options = TranscriptionOptions(
            task=TranscriptionTask.TRANSLATE_TO,
            target_language="ja",
            initial_prompt="meeting notes",
            word_timestamps=True,
        )

        assert TranscriptionOptions.from_dict(options.to_dict()) == options

    def test_dict_is_stable(self):
        """Test that equal options serialise identically."""
        a = TranscriptionOptions(preserve_formats=[PreserveFormat.DATES, PreserveFormat.URLS])
        b = TranscriptionOptions(preserve_formats=[PreserveFormat.URLS, PreserveFormat.DATES])

        assert json.dumps(a.to_dict()) == json.dumps(b.to_dict())


class TestResult:
    """Test segments and results."""

    def test_segment_ids_unique(self):
        """Test that segments get distinct ids by default."""
        a = TranscriptionSegment(index=0, text="a", start=0.0, end=1.0)
        b = TranscriptionSegment(index=0, text="a", start=0.0, end=1.0)

        assert a.id != b.id

    def test_segment_to_dict(self):
        """Test optional fields in the dictionary form."""
        segment = TranscriptionSegment(
            index=0,
            text="hi",
            start=0.0,
            end=1.0,
            words=(WordTimestamp("hi", 0.0, 1.0),),
        )

        data = segment.to_dict()

        assert "confidence" not in data
        assert data["words"] == [{"word": "hi", "start": 0.0, "end": 1.0}]

    def test_result_text_and_json(self):
        """Test joined text and JSON export."""
        segments = (
            TranscriptionSegment(index=0, text="안녕하세요", start=0.0, end=1.0),
            TranscriptionSegment(index=1, text="world", start=2.0, end=3.0),
        )
        result = TranscriptionResult(
            segments=segments,
            language="ko",
            options=TranscriptionOptions(),
            processing_time=0.5,
            audio_duration=3.0,
            num_chunks=1,
        )

        assert result.text == "안녕하세요 world"
        data = json.loads(result.to_json())
        assert data["language"] == "ko"
        assert data["segments"][1]["index"] == 1
        assert "안녕하세요" in result.to_json()

    def test_segments_span(self):
        """Test the covered span of a segment list."""
        segments = [
            TranscriptionSegment(index=0, text="a", start=2.0, end=3.0),
            TranscriptionSegment(index=1, text="b", start=1.0, end=5.0),
        ]

        assert segments_span(segments) == (1.0, 5.0)
        assert segments_span([]) == (0.0, 0.0)
