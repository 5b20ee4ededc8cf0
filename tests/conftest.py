"""Shared fixtures and fakes for the offline-whisper test suite."""

import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import httpx
import numpy as np
import pytest
from tokenizers import Tokenizer, decoders, models, pre_tokenizers

from offline_whisper.cache import ModelCache
from offline_whisper.catalog import ModelCatalog, ModelVariant
from offline_whisper.data_models import TranscriptionOptions
from offline_whisper.downloader import Downloader
from offline_whisper.inference import InferenceOutput
from offline_whisper.model_manager import ModelManager
from offline_whisper.network import NetworkStatus
from offline_whisper.tokenizer import WhisperTokenizer

BASE_URL = "https://models.test/repo"

EXTRA_TOKENS = ["hello", " world", " there", "안녕", "하세요"]


def byte_alphabet() -> Dict[int, str]:
    """GPT-2 byte -> printable character table used by byte-level BPE."""
    printable = (
        list(range(ord("!"), ord("~") + 1))
        + list(range(ord("¡"), ord("¬") + 1))
        + list(range(ord("®"), ord("ÿ") + 1))
    )
    codes = printable[:]
    offset = 0
    for b in range(256):
        if b not in printable:
            printable.append(b)
            codes.append(256 + offset)
            offset += 1
    return dict(zip(printable, (chr(c) for c in codes)))


def apply_merges(pieces: List[str], ranks: Dict[Tuple[str, str], int]) -> List[str]:
    while len(pieces) > 1:
        rank, index = min(
            (ranks.get(pair, len(ranks)), i) for i, pair in enumerate(zip(pieces, pieces[1:]))
        )
        if rank == len(ranks):
            break
        pieces[index:index + 2] = [pieces[index] + pieces[index + 1]]
    return pieces


def build_bpe(words: Sequence[str] = EXTRA_TOKENS) -> Tokenizer:
    """Byte-level BPE with every byte plus one whole token per word.

    Byte ``b`` has id ``b`` and ``words[i]`` has id ``256 + i``; merges
    are chosen so each word encodes to its single token.
    """
    alphabet = byte_alphabet()
    mapped = ["".join(alphabet[b] for b in word.encode("utf-8")) for word in words]
    vocab = {alphabet[b]: b for b in range(256)}
    for token in mapped:
        vocab.setdefault(token, len(vocab))

    ranks: Dict[Tuple[str, str], int] = {}
    for token in mapped:
        pieces = apply_merges(list(token), ranks)
        while len(pieces) > 1:
            ranks[(pieces[0], pieces[1])] = len(ranks)
            pieces[0:2] = [pieces[0] + pieces[1]]
            vocab.setdefault(pieces[0], len(vocab))

    merges = sorted(ranks, key=ranks.get)
    tokenizer = Tokenizer(models.BPE(vocab=vocab, merges=merges))
    tokenizer.pre_tokenizer = pre_tokenizers.ByteLevel(add_prefix_space=False)
    tokenizer.decoder = decoders.ByteLevel()
    return tokenizer


class FakeNetworkMonitor:
    """Reachability monitor whose answer is set by the test."""

    def __init__(self, available: bool = True):
        self.available = available
        self.calls = 0

    def is_available(self) -> bool:
        self.calls += 1
        return self.available

    def status(self) -> NetworkStatus:
        return NetworkStatus.CONNECTED if self.is_available() else NetworkStatus.DISCONNECTED


class FakeAdapter:
    """Inference adapter returning scripted token ids.

    ``script`` receives the zero-based call number and returns the output
    for that call; by default every call yields one "hello world" segment.
    """

    def __init__(
        self,
        tokenizer: WhisperTokenizer,
        script: Optional[Callable[[int], InferenceOutput]] = None,
    ):
        self.tokenizer = tokenizer
        self.script = script or self.hello_world
        self.calls = 0
        self.options: List[TranscriptionOptions] = []
        self._lock = threading.Lock()

    def hello_world(self, call: int) -> InferenceOutput:
        special = self.tokenizer.special_tokens
        ids = [
            special.start_of_transcript,
            special.timestamp_base,
            *self.tokenizer.encode("hello world"),
            special.timestamp_base + 100,
            special.end_of_transcript,
        ]
        return InferenceOutput(tuple(ids))

    def predict(self, features, options, prompt_tokens=()):
        with self._lock:
            call = self.calls
            self.calls += 1
            self.options.append(options)
        return self.script(call)


class RecordingTransport:
    """httpx transport serving scripted responses and counting requests."""

    def __init__(self, handler: Callable[[httpx.Request, int], httpx.Response]):
        self.handler = handler
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request, len(self.requests))

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def serve_files(request: httpx.Request, count: int) -> httpx.Response:
    name = request.url.path.rsplit("/", 1)[-1]
    return httpx.Response(200, content=f"payload of {name}".encode())


def write_variant_files(cache: ModelCache, variant: str, size: int = 16) -> List[Path]:
    """Materialise a variant's required files on disk."""
    paths = cache.artifact_paths(variant)
    for path in paths:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"x" * size)
    return paths


@pytest.fixture
def catalog() -> ModelCatalog:
    return ModelCatalog(BASE_URL)


@pytest.fixture
def cache(tmp_path, catalog) -> ModelCache:
    return ModelCache(tmp_path / "cache", catalog)


@pytest.fixture
def tiny(catalog) -> ModelVariant:
    return catalog.get("tiny")


@pytest.fixture
def network() -> FakeNetworkMonitor:
    return FakeNetworkMonitor()


@pytest.fixture
def tokenizer() -> WhisperTokenizer:
    return WhisperTokenizer(build_bpe())


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport(serve_files)


def make_manager(
    cache: ModelCache,
    network: FakeNetworkMonitor,
    transport: RecordingTransport,
    disk_free: int = 100 * 1024**3,
    max_cache_bytes: int = 50 * 1024**3,
    max_attempts: int = 3,
) -> ModelManager:
    downloader = Downloader(
        cache.staging_dir,
        network,
        client=transport.client(),
        max_attempts=max_attempts,
        retry_delay=0.0,
    )
    return ModelManager(
        cache.catalog,
        cache,
        downloader,
        network,
        max_cache_bytes=max_cache_bytes,
        disk_free=lambda: disk_free,
    )


@pytest.fixture
def manager(cache, network, transport) -> ModelManager:
    return make_manager(cache, network, transport)


def sine(duration: float, sample_rate: int = 16000, frequency: float = 440.0) -> np.ndarray:
    t = np.arange(int(duration * sample_rate)) / sample_rate
    return (0.5 * np.sin(2 * np.pi * frequency * t)).astype(np.float32)
