"""Whisper tokenizer built on Hugging Face ``tokenizers``.

The byte-level BPE itself comes from ``tokenizer.json`` (or ``vocab.json`` and
``merges.txt``); this module adds the Whisper control token layout, timestamp
helpers and a bounded decode cache on top.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Sequence, Tuple, Union

from tokenizers import Tokenizer, decoders, models, pre_tokenizers

from .caching import BoundedCache
from .data_models import SUPPORTED_LANGUAGES
from .errors import DiskReadError

logger = logging.getLogger(__name__)

DECODE_CACHE_SIZE = 1000
MAX_TIMESTAMP_INDEX = 1500


@dataclass(frozen=True)
class SpecialTokens:
    """Ids of the control tokens (multilingual Whisper layout by default)."""
    end_of_transcript: int = 50257
    start_of_transcript: int = 50258
    language_base: int = 50259
    translate: int = 50358
    transcribe: int = 50359
    start_of_previous: int = 50361
    no_speech: int = 50362
    no_timestamps: int = 50363
    timestamp_base: int = 50364

    @classmethod
    def from_added_tokens(cls, added: Mapping[str, int]) -> "SpecialTokens":
        """Build from a token-string -> id mapping (``tokenizer.json`` added_tokens)."""
        defaults = cls()

        def lookup(name: str, default: int) -> int:
            return int(added.get(name, default))

        no_timestamps = lookup("<|notimestamps|>", defaults.no_timestamps)
        return cls(
            end_of_transcript=lookup("<|endoftext|>", defaults.end_of_transcript),
            start_of_transcript=lookup("<|startoftranscript|>", defaults.start_of_transcript),
            language_base=lookup(f"<|{SUPPORTED_LANGUAGES[0]}|>", defaults.language_base),
            translate=lookup("<|translate|>", defaults.translate),
            transcribe=lookup("<|transcribe|>", defaults.transcribe),
            start_of_previous=lookup("<|startofprev|>", defaults.start_of_previous),
            no_speech=lookup("<|nospeech|>", lookup("<|nocaptions|>", defaults.no_speech)),
            no_timestamps=no_timestamps,
            timestamp_base=lookup("<|0.00|>", no_timestamps + 1),
        )

    @property
    def first_special(self) -> int:
        return min(self.end_of_transcript, self.start_of_transcript, self.language_base)


def byte_level_bpe(vocab_path: Union[str, Path], merges_path: Union[str, Path]) -> Tokenizer:
    """Assemble a GPT-2 style byte-level BPE from ``vocab.json`` and ``merges.txt``."""
    tokenizer = Tokenizer(models.BPE.from_file(str(vocab_path), str(merges_path)))
    tokenizer.pre_tokenizer = pre_tokenizers.ByteLevel(add_prefix_space=False)
    tokenizer.decoder = decoders.ByteLevel()
    return tokenizer


class WhisperTokenizer:
    """Maps between text and token ids.

    Attributes:
        special_tokens: Control token ids
    """

    def __init__(
        self,
        tokenizer: Tokenizer,
        special_tokens: Optional[SpecialTokens] = None,
        cache_size: int = DECODE_CACHE_SIZE,
    ):
        self.special_tokens = special_tokens or SpecialTokens()
        self._tokenizer = tokenizer
        self._decode_cache: BoundedCache[Tuple[int, ...], str] = BoundedCache(cache_size)

    @classmethod
    def from_directory(cls, directory: Union[str, Path]) -> "WhisperTokenizer":
        """Load ``tokenizer.json``, or ``vocab.json`` plus ``merges.txt`` when it is absent.

        Raises:
            DiskReadError: If the files are missing or unparsable
        """
        directory = Path(directory)
        tokenizer_path = directory / "tokenizer.json"
        vocab_path = directory / "vocab.json"
        merges_path = directory / "merges.txt"
        try:
            if tokenizer_path.exists():
                tokenizer = Tokenizer.from_file(str(tokenizer_path))
            elif vocab_path.exists() and merges_path.exists():
                tokenizer = byte_level_bpe(vocab_path, merges_path)
            else:
                raise DiskReadError(str(directory), "no tokenizer.json or vocab.json/merges.txt")
        except DiskReadError:
            raise
        except Exception as e:
            # tokenizers reports parse failures as plain Exception
            raise DiskReadError(str(directory), str(e)) from e

        special = SpecialTokens.from_added_tokens(tokenizer.get_vocab(with_added_tokens=True))
        logger.debug(
            f"Loaded tokenizer with {tokenizer.get_vocab_size()} tokens from {directory}"
        )
        return cls(tokenizer, special)

    @property
    def vocab_size(self) -> int:
        return self._tokenizer.get_vocab_size()

    def is_special(self, token_id: int) -> bool:
        return token_id >= self.special_tokens.first_special

    def is_timestamp(self, token_id: int, max_index: int = MAX_TIMESTAMP_INDEX) -> bool:
        base = self.special_tokens.timestamp_base
        return base <= token_id <= base + max_index

    def timestamp_index(self, token_id: int) -> int:
        return token_id - self.special_tokens.timestamp_base

    def language_token(self, language: str) -> int:
        try:
            return self.special_tokens.language_base + SUPPORTED_LANGUAGES.index(language)
        except ValueError:
            raise ValueError(f"Unsupported language '{language}'") from None

    def encode(self, text: str) -> List[int]:
        """BPE-encode ``text`` without adding any control tokens."""
        return self._tokenizer.encode(text, add_special_tokens=False).ids

    def decode(self, token_ids: Sequence[int]) -> str:
        """Decode ids to text, skipping special and unknown ids."""
        key = tuple(token_ids)
        cached = self._decode_cache.get(key)
        if cached is not None:
            return cached

        ids = [
            token_id for token_id in key
            if 0 <= token_id < self.special_tokens.first_special
            and self._tokenizer.id_to_token(token_id) is not None
        ]
        text = self._tokenizer.decode(ids) if ids else ""
        self._decode_cache.put(key, text)
        return text
