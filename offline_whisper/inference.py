"""Inference runtime boundary.

The engine only depends on :class:`InferenceAdapter`: features in, token ids
(and optionally their log-probabilities) out. :class:`TorchScriptInferenceAdapter`
runs exported encoder/decoder TorchScript modules with greedy or sampled
decoding.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

import torch

from .data_models import SUPPORTED_LANGUAGES, TranscriptionOptions, TranscriptionTask
from .errors import ModelLoadError
from .model_manager import ModelHandle
from .profiler import cuda_memory_manager
from .tokenizer import WhisperTokenizer

logger = logging.getLogger(__name__)

MAX_DECODE_TOKENS = 224


@dataclass(frozen=True)
class InferenceOutput:
    """Raw output of one inference call.

    Attributes:
        token_ids: Generated token ids, control tokens included
        token_logprobs: Log-probability of each id, when the runtime reports them
    """
    token_ids: Tuple[int, ...]
    token_logprobs: Optional[Tuple[float, ...]] = None


class InferenceAdapter(Protocol):
    def predict(
        self,
        features: torch.Tensor,
        options: TranscriptionOptions,
        prompt_tokens: Sequence[int] = (),
    ) -> InferenceOutput:
        ...


AdapterFactory = Callable[[ModelHandle, WhisperTokenizer], InferenceAdapter]


class TorchScriptInferenceAdapter:
    """Runs a Whisper encoder/decoder pair exported with TorchScript.

    The encoder maps ``[1, n_mels, n_frames]`` features to audio embeddings;
    the decoder maps ``([1, T] tokens, embeddings)`` to ``[1, T, vocab]``
    logits. Modules are loaded on first use.

    Example:
        >>> adapter = TorchScriptInferenceAdapter(handle, tokenizer, device="cuda",
        ...                                       compute_type="float16")
        >>> output = adapter.predict(features, TranscriptionOptions(language="en"))

    Attributes:
        handle: Model files on disk
        tokenizer: Source of control token ids
        device: Device to run on ("cuda" or "cpu")
        compute_type: Precision ("float16" or "float32")
        n_mels: Mel bands in the flattened feature tensor
    """

    def __init__(
        self,
        handle: ModelHandle,
        tokenizer: WhisperTokenizer,
        device: str = "cpu",
        compute_type: str = "float32",
        n_mels: int = 80,
        max_tokens: int = MAX_DECODE_TOKENS,
    ):
        if device not in ["cuda", "cpu"]:
            raise ValueError(f"device must be 'cuda' or 'cpu', got '{device}'")
        if device == "cuda" and not torch.cuda.is_available():
            raise RuntimeError(
                "CUDA device requested but not available. "
                "Install CUDA toolkit or use device='cpu'"
            )
        if compute_type not in ["float16", "float32"]:
            raise ValueError(
                f"compute_type must be 'float16' or 'float32', got '{compute_type}'"
            )
        if max_tokens < 1:
            raise ValueError(f"max_tokens must be positive, got {max_tokens}")

        self.handle = handle
        self.tokenizer = tokenizer
        self.device = device
        self.compute_type = compute_type
        self.n_mels = n_mels
        self.max_tokens = max_tokens
        self._device = torch.device(device)
        self._encoder: Optional[torch.jit.ScriptModule] = None
        self._decoder: Optional[torch.jit.ScriptModule] = None
        self._load_lock = threading.Lock()

    def _load(self) -> Tuple[torch.jit.ScriptModule, torch.jit.ScriptModule]:
        with self._load_lock:
            if self._encoder is None or self._decoder is None:
                variant = self.handle.variant.id
                logger.info(f"Loading model '{variant}' on device '{self.device}'")
                try:
                    encoder = torch.jit.load(str(self.handle.encoder_path), map_location=self._device)
                    decoder = torch.jit.load(str(self.handle.decoder_path), map_location=self._device)
                except (OSError, RuntimeError, ValueError) as e:
                    raise ModelLoadError(variant, str(e)) from e
                self._encoder = encoder.eval()
                self._decoder = decoder.eval()
            return self._encoder, self._decoder

    def initial_tokens(
        self, options: TranscriptionOptions, prompt_tokens: Sequence[int] = ()
    ) -> List[int]:
        """Decoder prefix: optional previous context, then start, language and task."""
        special = self.tokenizer.special_tokens
        tokens = []
        if prompt_tokens:
            # Keep the most recent half of the context window for the prompt
            tokens = [special.start_of_previous, *list(prompt_tokens)[-(self.max_tokens // 2):]]
        tokens.append(special.start_of_transcript)

        language = options.language
        task = special.transcribe
        if options.task == TranscriptionTask.TRANSLATE:
            task = special.translate
        elif options.task == TranscriptionTask.TRANSLATE_TO:
            language = options.target_language
        if language is not None:
            tokens.append(self.tokenizer.language_token(language))
        tokens.append(task)
        return tokens

    @torch.inference_mode()
    def predict(
        self,
        features: torch.Tensor,
        options: TranscriptionOptions,
        prompt_tokens: Sequence[int] = (),
    ) -> InferenceOutput:
        """Decode one chunk's features into token ids.

        Args:
            features: Flattened mel-major features ``[n_mels * n_frames]``
            options: Transcription options; language, task and temperature
                steer decoding, the quality gates are accepted for API
                compatibility
            prompt_tokens: Optional previous-context tokens

        Raises:
            ModelLoadError: If the TorchScript modules cannot be loaded
            RuntimeError: If the device runs out of memory
        """
        if features.ndim != 1 or features.numel() % self.n_mels:
            raise ValueError(
                f"features must be a flat tensor divisible by n_mels={self.n_mels}, "
                f"got shape {tuple(features.shape)}"
            )
        encoder, decoder = self._load()
        mel = features.reshape(1, self.n_mels, -1).to(self._device)

        try:
            with cuda_memory_manager():
                if self._device.type == "cuda" and self.compute_type == "float16":
                    with torch.autocast(device_type="cuda", dtype=torch.float16):
                        return self._decode(encoder, decoder, mel, options, prompt_tokens)
                return self._decode(encoder, decoder, mel, options, prompt_tokens)
        except RuntimeError as e:
            if "out of memory" in str(e).lower():
                if torch.cuda.is_available():
                    allocated = torch.cuda.memory_allocated(self._device) / 1024**3
                    total = torch.cuda.get_device_properties(self._device).total_memory / 1024**3
                    raise RuntimeError(
                        f"GPU out of memory (allocated: {allocated:.2f}GB, "
                        f"total: {total:.2f}GB). Try lowering max_concurrency "
                        f"or using a smaller model"
                    ) from e
                raise RuntimeError(
                    "Out of memory. Try lowering max_concurrency or using a smaller model"
                ) from e
            raise

    def _decode(
        self,
        encoder: torch.jit.ScriptModule,
        decoder: torch.jit.ScriptModule,
        mel: torch.Tensor,
        options: TranscriptionOptions,
        prompt_tokens: Sequence[int],
    ) -> InferenceOutput:
        special = self.tokenizer.special_tokens
        audio_features = encoder(mel)
        tokens = self.initial_tokens(options, prompt_tokens)

        if options.language is None and options.task != TranscriptionTask.TRANSLATE_TO:
            # Let the model pick the language from the start-of-transcript logits
            logits = decoder(self._as_tensor(tokens[:-1]), audio_features)[0, -1]
            first = special.language_base
            language_logits = logits[first:first + len(SUPPORTED_LANGUAGES)]
            tokens.insert(len(tokens) - 1, first + int(language_logits.argmax()))

        prefix_length = len(tokens)
        logprobs: List[float] = []
        for _ in range(self.max_tokens):
            logits = decoder(self._as_tensor(tokens), audio_features)[0, -1].float()
            distribution = torch.log_softmax(logits, dim=-1)
            if options.temperature > 0:
                probabilities = torch.softmax(logits / options.temperature, dim=-1)
                next_token = int(torch.multinomial(probabilities, 1))
            else:
                next_token = int(logits.argmax())
            tokens.append(next_token)
            logprobs.append(float(distribution[next_token]))
            if next_token == special.end_of_transcript:
                break

        return InferenceOutput(tuple(tokens[prefix_length:]), tuple(logprobs))

    def _as_tensor(self, tokens: Sequence[int]) -> torch.Tensor:
        return torch.tensor([list(tokens)], dtype=torch.long, device=self._device)


def torchscript_adapter_factory(
    device: str = "cpu", compute_type: str = "float32", n_mels: int = 80
) -> AdapterFactory:
    def factory(handle: ModelHandle, tokenizer: WhisperTokenizer) -> InferenceAdapter:
        return TorchScriptInferenceAdapter(
            handle, tokenizer, device=device, compute_type=compute_type, n_mels=n_mels
        )

    return factory
