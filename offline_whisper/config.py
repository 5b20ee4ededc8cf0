"""Configuration loading and validation.

Configuration is split into dataclass sections whose defaults reproduce the
library's tuning constants. A TOML file may override any of them; missing
files simply yield the defaults.
"""

import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional, Union

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = [
    "CacheConfig",
    "DownloadConfig",
    "EngineConfig",
    "DecoderConfig",
    "MergerConfig",
    "LanguageConfig",
    "RealtimeConfig",
    "GeneralConfig",
    "Config",
    "load_config",
    "setup_logging",
    "default_cache_root",
]

GIB = 1024 ** 3

CONFIG_ENV_VAR = "OFFLINE_WHISPER_CONFIG"
CACHE_DIR_ENV_VAR = "OFFLINE_WHISPER_CACHE_DIR"
MAX_CACHE_BYTES_ENV_VAR = "OFFLINE_WHISPER_MAX_CACHE_BYTES"
DEVICE_ENV_VAR = "OFFLINE_WHISPER_DEVICE"


def default_cache_root(env: Optional[Mapping[str, str]] = None) -> Path:
    """Return the persistent data directory used for model storage."""
    if env is None:
        env = os.environ
    base = env.get("XDG_DATA_HOME")
    if base:
        return Path(base) / "offline-whisper"
    return Path.home() / ".local" / "share" / "offline-whisper"


@dataclass
class CacheConfig:
    """On-disk model cache settings."""

    root: Path = field(default_factory=default_cache_root)
    max_cache_bytes: int = 5 * GIB
    eviction_target_ratio: float = 0.8
    verify_integrity_on_load: bool = False

    def __post_init__(self) -> None:
        self.root = Path(self.root).expanduser()
        if self.max_cache_bytes <= 0:
            raise ConfigurationError(
                f"cache.max_cache_bytes must be positive, got {self.max_cache_bytes}"
            )
        if not 0.0 < self.eviction_target_ratio <= 1.0:
            raise ConfigurationError(
                f"cache.eviction_target_ratio must be in range (0.0, 1.0], "
                f"got {self.eviction_target_ratio}"
            )


@dataclass
class DownloadConfig:
    """Remote artifact download settings."""

    base_url: str = "https://huggingface.co/argmaxinc/whisperkit-coreml/resolve/main"
    package_extension: str = "mlpackage"
    archived_packages: bool = False
    max_attempts: int = 3
    retry_delay: float = 2.0
    backoff_factor: float = 1.0
    timeout: float = 60.0
    chunk_size: int = 1024 * 1024
    disk_space_slack: float = 1.2
    include_optional_artifacts: bool = False
    reachability_host: str = "huggingface.co"
    reachability_port: int = 443
    reachability_interval: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError(
                f"download.max_attempts must be at least 1, got {self.max_attempts}"
            )
        if self.retry_delay < 0:
            raise ConfigurationError(
                f"download.retry_delay must be non-negative, got {self.retry_delay}"
            )
        if self.backoff_factor < 1.0:
            raise ConfigurationError(
                f"download.backoff_factor must be >= 1.0, got {self.backoff_factor}"
            )
        if self.timeout <= 0:
            raise ConfigurationError(f"download.timeout must be positive, got {self.timeout}")
        if self.chunk_size <= 0:
            raise ConfigurationError(
                f"download.chunk_size must be positive, got {self.chunk_size}"
            )
        if self.disk_space_slack < 1.0:
            raise ConfigurationError(
                f"download.disk_space_slack must be >= 1.0, got {self.disk_space_slack}"
            )
        if self.reachability_interval <= 0:
            raise ConfigurationError(
                f"download.reachability_interval must be positive, "
                f"got {self.reachability_interval}"
            )


@dataclass
class EngineConfig:
    """Transcription engine settings."""

    chunk_duration: float = 30.0
    sample_rate: int = 16000
    max_concurrency: int = field(default_factory=lambda: max(1, min(4, os.cpu_count() or 1)))
    result_cache_size: int = 50
    device: str = "cpu"
    compute_type: str = "float32"

    def __post_init__(self) -> None:
        if self.chunk_duration <= 0:
            raise ConfigurationError(
                f"engine.chunk_duration must be positive, got {self.chunk_duration}"
            )
        if self.sample_rate <= 0:
            raise ConfigurationError(
                f"engine.sample_rate must be positive, got {self.sample_rate}"
            )
        if self.max_concurrency < 1:
            raise ConfigurationError(
                f"engine.max_concurrency must be at least 1, got {self.max_concurrency}"
            )
        if self.result_cache_size < 1:
            raise ConfigurationError(
                f"engine.result_cache_size must be at least 1, got {self.result_cache_size}"
            )
        if self.device not in ("cpu", "cuda"):
            raise ConfigurationError(
                f"engine.device must be 'cuda' or 'cpu', got '{self.device}'"
            )
        if self.compute_type not in ("float16", "float32"):
            raise ConfigurationError(
                f"engine.compute_type must be 'float16' or 'float32', "
                f"got '{self.compute_type}'"
            )


@dataclass
class DecoderConfig:
    """Token decoding settings."""

    timestamp_resolution: float = 0.02
    max_timestamp_index: int = 1500
    fallback_duration: float = 5.0
    no_text_marker: str = "[No text extracted]"

    def __post_init__(self) -> None:
        if self.timestamp_resolution <= 0:
            raise ConfigurationError(
                f"decoder.timestamp_resolution must be positive, "
                f"got {self.timestamp_resolution}"
            )
        if self.max_timestamp_index < 1:
            raise ConfigurationError(
                f"decoder.max_timestamp_index must be positive, "
                f"got {self.max_timestamp_index}"
            )
        if self.fallback_duration < 0:
            raise ConfigurationError(
                f"decoder.fallback_duration must be non-negative, "
                f"got {self.fallback_duration}"
            )


@dataclass
class MergerConfig:
    """Segment merge settings."""

    gap_threshold: float = 0.3

    def __post_init__(self) -> None:
        if self.gap_threshold < 0:
            raise ConfigurationError(
                f"merger.gap_threshold must be non-negative, got {self.gap_threshold}"
            )


@dataclass
class LanguageConfig:
    """Language detection settings."""

    noise_floor: float = 0.05
    script_weight: float = 1.2
    default_language: str = "en"
    cache_size: int = 100

    def __post_init__(self) -> None:
        if not 0.0 <= self.noise_floor < 1.0:
            raise ConfigurationError(
                f"language.noise_floor must be in range [0.0, 1.0), got {self.noise_floor}"
            )
        if self.script_weight <= 0:
            raise ConfigurationError(
                f"language.script_weight must be positive, got {self.script_weight}"
            )
        if self.cache_size < 1:
            raise ConfigurationError(
                f"language.cache_size must be at least 1, got {self.cache_size}"
            )


@dataclass
class RealtimeConfig:
    """Streaming transcription settings."""

    segment_duration: float = 5.0
    buffer_duration: float = 30.0
    partial_results: bool = False
    min_partial_duration: float = 1.0
    min_confidence: float = 0.0

    def __post_init__(self) -> None:
        if self.segment_duration <= 0:
            raise ConfigurationError(
                f"realtime.segment_duration must be positive, got {self.segment_duration}"
            )
        if self.buffer_duration < self.segment_duration:
            raise ConfigurationError(
                f"realtime.buffer_duration ({self.buffer_duration}) must be at least "
                f"segment_duration ({self.segment_duration})"
            )
        if self.min_partial_duration <= 0:
            raise ConfigurationError(
                f"realtime.min_partial_duration must be positive, got {self.min_partial_duration}"
            )
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ConfigurationError(
                f"realtime.min_confidence must be in range [0.0, 1.0], got {self.min_confidence}"
            )


@dataclass
class GeneralConfig:
    """General application settings."""

    verbose: bool = False
    debug: bool = False


_SECTIONS = {
    "cache": CacheConfig,
    "download": DownloadConfig,
    "engine": EngineConfig,
    "decoder": DecoderConfig,
    "merger": MergerConfig,
    "language": LanguageConfig,
    "realtime": RealtimeConfig,
    "general": GeneralConfig,
}


@dataclass
class Config:
    """Main configuration container."""

    cache: CacheConfig = field(default_factory=CacheConfig)
    download: DownloadConfig = field(default_factory=DownloadConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    decoder: DecoderConfig = field(default_factory=DecoderConfig)
    merger: MergerConfig = field(default_factory=MergerConfig)
    language: LanguageConfig = field(default_factory=LanguageConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    general: GeneralConfig = field(default_factory=GeneralConfig)

    @classmethod
    def from_dict(cls, data: Mapping, env: Optional[Mapping[str, str]] = None) -> "Config":
        """Build a Config from parsed TOML data plus environment overrides.

        Raises:
            ConfigurationError: If a section or key is unknown or a value is invalid
        """
        if env is None:
            env = os.environ

        unknown_sections = set(data) - set(_SECTIONS)
        if unknown_sections:
            raise ConfigurationError(
                f"Unknown configuration section(s): {', '.join(sorted(unknown_sections))}"
            )

        coerced = _coerce_config_values(data, env)

        sections = {}
        for name, section_cls in _SECTIONS.items():
            values = coerced[name]
            known = {f.name for f in fields(section_cls)}
            unknown_keys = set(values) - known
            if unknown_keys:
                raise ConfigurationError(
                    f"Unknown key(s) in [{name}]: {', '.join(sorted(unknown_keys))}"
                )
            for f in fields(section_cls):
                if f.name in values:
                    _check_type(name, f.name, values[f.name], f.type)
            sections[name] = section_cls(**values)
        return cls(**sections)

    @classmethod
    def from_toml(
        cls,
        path: Optional[Union[str, Path]] = None,
        *,
        env: Optional[Mapping[str, str]] = None,
    ) -> "Config":
        """Load configuration from a TOML file with environment overrides.

        Args:
            path: Explicit config file path. If None, searches in order:
                  1. OFFLINE_WHISPER_CONFIG env var
                  2. ./offline_whisper.toml
                  3. ~/.config/offline_whisper.toml
            env: Environment variables for overrides (defaults to os.environ)

        Returns:
            Loaded and validated Config instance

        Raises:
            ConfigurationError: If an explicit file is missing or validation fails
        """
        if env is None:
            env = os.environ

        resolved_path = _resolve_config_path(path, env)
        if resolved_path is None:
            logger.debug("No config file found, using defaults")
            raw_data = {}
        else:
            raw_data = _load_toml_file(resolved_path)
        return cls.from_dict(raw_data, env)


def _resolve_config_path(
    explicit_path: Optional[Union[str, Path]],
    env: Mapping[str, str],
) -> Optional[Path]:
    """Resolve the configuration file path following the search order.

    An explicit path that does not exist is an error; otherwise the first
    existing candidate wins and None means no file was found.
    """
    if explicit_path:
        explicit_path = Path(explicit_path)
        if explicit_path.exists():
            logger.info("Using config file: %s", explicit_path.resolve())
            return explicit_path.resolve()
        raise ConfigurationError(f"Config file not found: {explicit_path}")

    candidates = []
    if env_path := env.get(CONFIG_ENV_VAR):
        candidates.append(Path(env_path))
    candidates.append(Path("offline_whisper.toml"))
    candidates.append(Path.home() / ".config" / "offline_whisper.toml")

    for candidate in candidates:
        if candidate.exists():
            logger.info("Using config file: %s", candidate.resolve())
            return candidate.resolve()
    return None


def _load_toml_file(path: Path) -> dict:
    """Load and parse a TOML configuration file.

    Raises:
        ConfigurationError: If file cannot be read or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Config file not found: {path}") from e
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError(f"Failed to parse config file {path}: {e}") from e


def _coerce_config_values(raw_data: Mapping, env: Mapping[str, str]) -> dict:
    """Normalize raw TOML data and apply environment overrides."""
    coerced = {}
    for section in _SECTIONS:
        value = raw_data.get(section, {})
        if not isinstance(value, Mapping):
            raise ConfigurationError(f"Section [{section}] must be a table")
        coerced[section] = dict(value)

    if cache_dir := env.get(CACHE_DIR_ENV_VAR):
        coerced["cache"]["root"] = cache_dir
    if max_bytes := env.get(MAX_CACHE_BYTES_ENV_VAR):
        try:
            coerced["cache"]["max_cache_bytes"] = int(max_bytes)
        except ValueError as e:
            raise ConfigurationError(
                f"{MAX_CACHE_BYTES_ENV_VAR} must be an integer, got '{max_bytes}'"
            ) from e
    if device := env.get(DEVICE_ENV_VAR):
        coerced["engine"]["device"] = device

    return coerced


_TYPE_NAMES = {
    "int": (int,),
    "float": (int, float),
    "bool": (bool,),
    "str": (str,),
    "Path": (str, Path),
}


def _check_type(section: str, key: str, value, annotation) -> None:
    expected = _TYPE_NAMES.get(getattr(annotation, "__name__", str(annotation)))
    if expected is None:
        return
    # bool is an int subclass; reject it for numeric fields
    if isinstance(value, bool) and bool not in expected:
        raise ConfigurationError(f"{section}.{key} must be {annotation.__name__}, got bool")
    if not isinstance(value, expected):
        raise ConfigurationError(
            f"{section}.{key} must be {annotation.__name__}, got {type(value).__name__}"
        )


def load_config(
    path: Optional[Union[str, Path]] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> Config:
    """Load configuration from TOML file.

    Convenience wrapper around Config.from_toml().
    """
    return Config.from_toml(path, env=env)


def setup_logging(general: Optional[GeneralConfig] = None) -> None:
    """Configure root logging for applications embedding the library."""
    general = general or GeneralConfig()
    logging.basicConfig(
        level=logging.DEBUG if (general.verbose or general.debug) else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
