"""Error taxonomy for offline-whisper.

Every error raised by the library derives from :class:`WhisperError` and
carries a human-readable message, a recovery suggestion and an optional
structured :class:`RecoveryOption` that calling layers can act on.

Only :class:`NetworkError` and its subclasses are retried automatically
(inside the downloader). Disk-space and corruption errors surface immediately.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RecoveryAction(str, Enum):
    """Structured recovery actions a caller can act on programmatically."""

    RETRY_DOWNLOAD = "retry_download"
    USE_ALTERNATIVE_MODEL = "use_alternative_model"
    CLEAR_CACHE = "clear_cache"
    CHECK_NETWORK = "check_network"
    FREE_DISK_SPACE = "free_disk_space"


@dataclass(frozen=True)
class RecoveryOption:
    """Recovery hint attached to an error.

    Attributes:
        action: Suggested action
        can_retry: Whether repeating the same request may succeed
        message: Human-readable explanation of the action
        alternative: Alternative model variant id for USE_ALTERNATIVE_MODEL
    """
    action: RecoveryAction
    can_retry: bool
    message: str
    alternative: Optional[str] = None


class WhisperError(Exception):
    """Base class for all offline-whisper errors."""

    suggestion = "If the problem persists, report it to the maintainers."

    def __init__(self, message: str, recovery: Optional[RecoveryOption] = None):
        super().__init__(message)
        self.message = message
        self.recovery = recovery

    def __str__(self) -> str:
        return self.message


# Model errors

class ModelError(WhisperError):
    """Base class for model lifecycle errors."""


class ModelNotFoundError(ModelError):
    suggestion = "Check the model name against the supported variants."

    def __init__(self, variant: str):
        super().__init__(f"Model '{variant}' is not a supported variant")
        self.variant = variant


class ModelLoadError(ModelError):
    suggestion = "Make sure the model files are intact, or download them again."

    def __init__(self, variant: str, reason: str):
        super().__init__(
            f"Failed to load model '{variant}': {reason}",
            RecoveryOption(
                RecoveryAction.RETRY_DOWNLOAD,
                can_retry=True,
                message="Delete the model and download it again.",
            ),
        )
        self.variant = variant


class ModelNotLoadedError(ModelError):
    suggestion = "Load the model before transcribing."

    def __init__(self, message: str = "Model is not loaded"):
        super().__init__(message)


class ModelCorruptedError(ModelError):
    suggestion = "Delete the model files and download them again."

    def __init__(self, variant: str, reason: str):
        super().__init__(
            f"Model '{variant}' is corrupted: {reason}",
            RecoveryOption(
                RecoveryAction.RETRY_DOWNLOAD,
                can_retry=True,
                message="The model files are damaged. Download them again.",
            ),
        )
        self.variant = variant
        self.reason = reason


class ModelVersionMismatchError(ModelError):
    suggestion = "Download the latest version of the model."

    def __init__(self, variant: str, expected: str, found: str):
        super().__init__(
            f"Model '{variant}' version mismatch: expected {expected}, found {found}",
            RecoveryOption(
                RecoveryAction.RETRY_DOWNLOAD,
                can_retry=True,
                message="Download the latest version of the model.",
            ),
        )
        self.expected = expected
        self.found = found


class ModelUnavailableOfflineError(ModelError):
    suggestion = "Connect to the network to download the model."

    def __init__(self, requested: str, alternative: Optional[str] = None):
        if alternative is not None:
            message = (
                f"Model '{requested}' is not available offline. "
                f"Model '{alternative}' can be used instead."
            )
            recovery = RecoveryOption(
                RecoveryAction.USE_ALTERNATIVE_MODEL,
                can_retry=False,
                message=message,
                alternative=alternative,
            )
        else:
            message = f"Model '{requested}' is not available offline."
            recovery = RecoveryOption(
                RecoveryAction.CHECK_NETWORK,
                can_retry=True,
                message=f"{message} Connect to the network and try again.",
            )
        super().__init__(message, recovery)
        self.requested = requested
        self.alternative = alternative


# Network errors (transient, retried by the downloader)

class NetworkError(WhisperError):
    """Transient network failure, eligible for automatic retry."""

    suggestion = "Check the network connection and try again."

    def __init__(self, message: str):
        super().__init__(
            f"Network error: {message}",
            RecoveryOption(
                RecoveryAction.CHECK_NETWORK,
                can_retry=True,
                message="Check the network connection and try again.",
            ),
        )


class NetworkUnavailableError(NetworkError):
    def __init__(self):
        super().__init__("network is unreachable")


class ConnectionTimeoutError(NetworkError):
    def __init__(self, timeout: float):
        super().__init__(f"connection timed out after {timeout:.1f}s")
        self.timeout = timeout


class ServerError(NetworkError):
    suggestion = "Try again later."

    def __init__(self, status_code: int, url: str = ""):
        detail = f" for {url}" if url else ""
        super().__init__(f"server returned status {status_code}{detail}")
        self.status_code = status_code


class DownloadFailedError(WhisperError):
    suggestion = "Try the download again."

    def __init__(self, message: str):
        super().__init__(
            f"Download failed: {message}",
            RecoveryOption(
                RecoveryAction.RETRY_DOWNLOAD,
                can_retry=True,
                message="The download failed. Try again.",
            ),
        )


class DownloadCancelledError(WhisperError):
    suggestion = "Start the download again to resume it."

    def __init__(self, key: str):
        super().__init__(f"Download of '{key}' was cancelled")
        self.key = key


# Filesystem errors

class FileSystemError(WhisperError):
    suggestion = "Check disk space and permissions."


class InsufficientDiskSpaceError(FileSystemError):
    suggestion = "Delete unneeded files to free disk space."

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient disk space: {required} bytes required, "
            f"{available} bytes available",
            RecoveryOption(
                RecoveryAction.FREE_DISK_SPACE,
                can_retry=True,
                message="Free some disk space and try again.",
            ),
        )
        self.required = required
        self.available = available


class DiskReadError(FileSystemError):
    def __init__(self, path: str, reason: str = ""):
        super().__init__(f"Failed to read '{path}'" + (f": {reason}" if reason else ""))
        self.path = path


class DiskWriteError(FileSystemError):
    def __init__(self, path: str, reason: str = ""):
        super().__init__(
            f"Failed to write '{path}'" + (f": {reason}" if reason else ""),
            RecoveryOption(
                RecoveryAction.FREE_DISK_SPACE,
                can_retry=True,
                message="Check disk space and permissions, then try again.",
            ),
        )
        self.path = path


class AudioFileNotFoundError(FileSystemError):
    suggestion = "Check the file path and permissions."

    def __init__(self, path: str):
        super().__init__(f"Audio file '{path}' not found")
        self.path = path


# Audio errors

class AudioError(WhisperError):
    suggestion = "Check that the file is in a supported audio format."


class UnsupportedAudioFormatError(AudioError):
    def __init__(self, path: str, extension: str):
        super().__init__(f"Unsupported audio format '{extension}' for '{path}'")
        self.path = path


class AudioDecodeError(AudioError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"Failed to decode audio file '{path}': {reason}")
        self.path = path


# Decoding errors

class MalformedTokenSequenceError(WhisperError):
    def __init__(self, reason: str):
        super().__init__(f"Malformed token sequence: {reason}")


class InferenceError(WhisperError):
    """A chunk failed during feature extraction, inference or decoding."""

    def __init__(self, chunk_index: int, reason: str):
        super().__init__(f"Chunk {chunk_index} failed: {reason}")
        self.chunk_index = chunk_index


# Configuration errors

class ConfigurationError(WhisperError, ValueError):
    suggestion = "Fix the option values and try again."
