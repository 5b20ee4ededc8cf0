"""Retried, resumable artifact downloads.

Files are streamed into a staging directory and published into place with an
atomic rename. Resume works at file granularity: a destination that already
exists is never fetched again. At most one transfer runs per key; later
callers for the same key join the running session.
"""

import asyncio
import hashlib
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import httpx

from .catalog import Artifact
from .errors import (
    ConnectionTimeoutError,
    DiskWriteError,
    DownloadCancelledError,
    DownloadFailedError,
    ModelCorruptedError,
    NetworkError,
    NetworkUnavailableError,
    ServerError,
    WhisperError,
)
from .network import NetworkMonitor

logger = logging.getLogger(__name__)


# Download states

@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class CheckingSpace:
    pass


@dataclass(frozen=True)
class Downloading:
    progress: float
    file_name: str = ""
    bytes_transferred: int = 0
    attempt: int = 1


@dataclass(frozen=True)
class Extracting:
    progress: float
    file_name: str = ""


@dataclass(frozen=True)
class Completed:
    directory: Path


@dataclass(frozen=True)
class Failed:
    error: WhisperError
    retryable: bool


@dataclass(frozen=True)
class Cancelled:
    pass


DownloadState = Union[Idle, CheckingSpace, Downloading, Extracting, Completed, Failed, Cancelled]
StateListener = Callable[[DownloadState], None]


def state_progress(state: DownloadState) -> float:
    """Fractional progress implied by a state."""
    match state:
        case Idle() | CheckingSpace() | Failed() | Cancelled():
            return 0.0
        case Downloading(progress=progress) | Extracting(progress=progress):
            return progress
        case Completed():
            return 1.0
        case _:
            raise TypeError(f"Unknown download state: {state!r}")


def is_terminal(state: DownloadState) -> bool:
    match state:
        case Completed() | Cancelled():
            return True
        case Failed(retryable=retryable):
            return not retryable
        case _:
            return False


@dataclass
class DownloadSession:
    """Book-keeping for one in-flight transfer.

    Attributes:
        key: Session key (a variant id, or "common")
        pending: Remaining (artifact, destination) pairs, in order
        total_files: Number of files the session started with
        bytes_transferred: Bytes received across all attempts
        attempt: Current attempt number (1-based)
    """
    key: str
    pending: List[Tuple[Artifact, Path]]
    total_files: int
    bytes_transferred: int = 0
    attempt: int = 0
    progress: float = 0.0
    state: DownloadState = field(default_factory=Idle)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    listeners: List[StateListener] = field(default_factory=list)
    task: Optional["asyncio.Task[Path]"] = None

    def emit(self, state: DownloadState) -> None:
        # Progress never moves backwards across retries
        if isinstance(state, Downloading):
            self.progress = max(self.progress, state.progress)
            state = Downloading(self.progress, state.file_name, state.bytes_transferred, state.attempt)
        self.state = state
        for listener in list(self.listeners):
            try:
                listener(state)
            except Exception:
                logger.exception(f"Download listener for '{self.key}' failed")


class Downloader:
    """Streams artifacts over HTTP with retries, progress and cancellation.

    Attributes:
        staging_dir: Directory receiving in-progress ``.part`` files
        max_attempts: Total attempts per session, including the first
        retry_delay: Base delay between attempts in seconds
        backoff_factor: Delay multiplier per retry (1.0 keeps it fixed)
        timeout: HTTP timeout in seconds
        chunk_size: Streaming read size in bytes
    """

    def __init__(
        self,
        staging_dir: Union[str, Path],
        network_monitor: NetworkMonitor,
        client: Optional[httpx.AsyncClient] = None,
        max_attempts: int = 3,
        retry_delay: float = 2.0,
        backoff_factor: float = 1.0,
        timeout: float = 60.0,
        chunk_size: int = 1024 * 1024,
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        if retry_delay < 0:
            raise ValueError(f"retry_delay must be non-negative, got {retry_delay}")
        if backoff_factor < 1.0:
            raise ValueError(f"backoff_factor must be >= 1.0, got {backoff_factor}")
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")

        self.staging_dir = Path(staging_dir)
        self.network_monitor = network_monitor
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.backoff_factor = backoff_factor
        self.timeout = timeout
        self.chunk_size = chunk_size
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            follow_redirects=True, timeout=httpx.Timeout(timeout)
        )
        self._sessions: Dict[str, DownloadSession] = {}

    def session(self, key: str) -> Optional[DownloadSession]:
        return self._sessions.get(key)

    def is_downloading(self, key: str) -> bool:
        return key in self._sessions

    def retry_delay_for(self, retry: int) -> float:
        """Delay before the ``retry``-th retry (1-based)."""
        return self.retry_delay * self.backoff_factor ** (retry - 1)

    async def download(
        self,
        key: str,
        artifacts: Sequence[Artifact],
        directory: Union[str, Path],
        listener: Optional[StateListener] = None,
    ) -> Path:
        """Download ``artifacts`` into ``directory``.

        Joins the running session for ``key`` if there is one. Cancelling
        the awaiting caller does not cancel the shared transfer.

        Returns:
            The directory the artifacts were published into

        Raises:
            DownloadFailedError: After all attempts failed
            DownloadCancelledError: If the session was cancelled
            ModelCorruptedError: If an artifact fails its checksum
            DiskWriteError: If a file cannot be written or moved
        """
        directory = Path(directory)
        session = self._sessions.get(key)
        if session is None:
            session = DownloadSession(
                key=key,
                pending=[(artifact, directory / artifact.name) for artifact in artifacts],
                total_files=len(artifacts),
            )
            self._sessions[key] = session
            session.task = asyncio.create_task(self._run(session, directory))
            session.task.add_done_callback(lambda task: self._finish(session, task))
            logger.info(f"Download of '{key}' started ({len(artifacts)} files)")
        else:
            logger.info(f"Joining in-flight download of '{key}'")

        if listener is not None:
            session.listeners.append(listener)
            if not isinstance(session.state, Idle):
                listener(session.state)
        try:
            return await asyncio.shield(session.task)
        except asyncio.CancelledError:
            # Cancelled before the transfer coroutine ever ran
            if session.task.cancelled() and session.cancel_event.is_set():
                raise DownloadCancelledError(key) from None
            raise
        finally:
            if listener is not None and listener in session.listeners:
                session.listeners.remove(listener)

    def cancel(self, key: str) -> bool:
        """Cancel the session for ``key``; False if none is running."""
        session = self._sessions.get(key)
        if session is None or session.task is None or session.task.done():
            return False
        logger.info(f"Cancelling download of '{key}'")
        session.cancel_event.set()
        session.task.cancel()
        return True

    async def aclose(self) -> None:
        for key in list(self._sessions):
            self.cancel(key)
        if self._owns_client:
            await self._client.aclose()

    def _finish(self, session: DownloadSession, task: "asyncio.Task[Path]") -> None:
        if self._sessions.get(session.key) is session:
            del self._sessions[session.key]
        # Mark the outcome as retrieved when every caller has gone away
        if not task.cancelled():
            task.exception()

    async def _run(self, session: DownloadSession, directory: Path) -> Path:
        try:
            await asyncio.to_thread(directory.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(self.staging_dir.mkdir, parents=True, exist_ok=True)
            await self._attempt_all(session)
        except asyncio.CancelledError:
            if not session.cancel_event.is_set():
                raise
            session.emit(Cancelled())
            raise DownloadCancelledError(session.key) from None
        except DownloadCancelledError:
            session.emit(Cancelled())
            raise
        except WhisperError as e:
            session.emit(Failed(e, retryable=False))
            raise
        except OSError as e:
            error = DiskWriteError(str(directory), str(e))
            session.emit(Failed(error, retryable=False))
            raise error from e

        logger.info(
            f"Download of '{session.key}' completed "
            f"({session.bytes_transferred / 1024**2:.1f}MB transferred)"
        )
        session.emit(Completed(directory))
        return directory

    async def _attempt_all(self, session: DownloadSession) -> None:
        last_error: Optional[NetworkError] = None
        for attempt in range(1, self.max_attempts + 1):
            session.attempt = attempt
            self._check_cancelled(session)
            if attempt > 1:
                delay = self.retry_delay_for(attempt - 1)
                logger.warning(
                    f"Retrying download of '{session.key}' in {delay:.1f}s "
                    f"(attempt {attempt}/{self.max_attempts}): {last_error}"
                )
                await self._wait_or_cancel(session, delay)
                if not await asyncio.to_thread(self.network_monitor.is_available):
                    last_error = NetworkUnavailableError()
                    session.emit(Failed(last_error, retryable=attempt < self.max_attempts))
                    continue
            try:
                await self._transfer_pending(session)
                return
            except NetworkError as e:
                last_error = e
                session.emit(Failed(e, retryable=attempt < self.max_attempts))

        raise DownloadFailedError(
            f"'{session.key}' failed after {self.max_attempts} attempts: {last_error}"
        ) from last_error

    async def _transfer_pending(self, session: DownloadSession) -> None:
        while session.pending:
            self._check_cancelled(session)
            artifact, destination = session.pending[0]
            completed = session.total_files - len(session.pending)
            if await asyncio.to_thread(destination.exists):
                logger.debug(f"Skipping existing file {destination}")
            else:
                await self._fetch(session, artifact, destination, completed)
            session.pending.pop(0)
            session.emit(
                Downloading(
                    progress=(completed + 1) / session.total_files,
                    file_name=artifact.name,
                    bytes_transferred=session.bytes_transferred,
                    attempt=session.attempt,
                )
            )

    async def _fetch(
        self,
        session: DownloadSession,
        artifact: Artifact,
        destination: Path,
        completed: int,
    ) -> None:
        part = self.staging_dir / f"{session.key}-{artifact.name}.part"
        digest = hashlib.sha256() if artifact.sha256 else None
        logger.debug(f"Fetching {artifact.url}")
        try:
            try:
                async with self._client.stream("GET", artifact.url, timeout=self.timeout) as response:
                    if not response.is_success:
                        raise ServerError(response.status_code, artifact.url)
                    expected = int(response.headers.get("content-length", 0) or 0)
                    received = 0
                    f = await asyncio.to_thread(open, part, "wb")
                    try:
                        async for block in response.aiter_bytes(self.chunk_size):
                            self._check_cancelled(session)
                            await asyncio.to_thread(f.write, block)
                            if digest is not None:
                                digest.update(block)
                            received += len(block)
                            session.bytes_transferred += len(block)
                            fraction = min(received / expected, 1.0) if expected else 0.0
                            session.emit(
                                Downloading(
                                    progress=(completed + fraction) / session.total_files,
                                    file_name=artifact.name,
                                    bytes_transferred=session.bytes_transferred,
                                    attempt=session.attempt,
                                )
                            )
                    finally:
                        await asyncio.to_thread(f.close)
                    if expected and received != expected:
                        raise NetworkError(
                            f"incomplete transfer of {artifact.name} "
                            f"({received} of {expected} bytes)"
                        )
            except httpx.TimeoutException as e:
                raise ConnectionTimeoutError(self.timeout) from e
            except httpx.HTTPError as e:
                raise NetworkError(f"{artifact.url}: {e}") from e

            if digest is not None and digest.hexdigest() != artifact.sha256.lower():
                raise ModelCorruptedError(session.key, f"checksum mismatch for {artifact.name}")

            await self._publish(session, artifact, part, destination, completed)
        except BaseException:
            _remove_quietly(part)
            raise

    async def _publish(
        self,
        session: DownloadSession,
        artifact: Artifact,
        part: Path,
        destination: Path,
        completed: int,
    ) -> None:
        await asyncio.to_thread(destination.parent.mkdir, parents=True, exist_ok=True)
        if not artifact.archived:
            await asyncio.to_thread(os.replace, part, destination)
            return

        session.emit(Extracting(progress=(completed + 1) / session.total_files, file_name=artifact.name))
        unpacked = part.with_suffix(".unpacked")
        try:
            await asyncio.to_thread(shutil.unpack_archive, str(part), str(unpacked), "zip")
            await asyncio.to_thread(os.replace, _archive_root(unpacked), destination)
        except (shutil.ReadError, ValueError) as e:
            raise ModelCorruptedError(session.key, f"cannot extract {artifact.name}: {e}") from e
        finally:
            await asyncio.to_thread(_remove_quietly, unpacked)
            await asyncio.to_thread(_remove_quietly, part)

    async def _wait_or_cancel(self, session: DownloadSession, delay: float) -> None:
        try:
            await asyncio.wait_for(session.cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise DownloadCancelledError(session.key)

    @staticmethod
    def _check_cancelled(session: DownloadSession) -> None:
        if session.cancel_event.is_set():
            raise DownloadCancelledError(session.key)


def _archive_root(unpacked: Path) -> Path:
    """The single top-level entry of an extracted archive, or the archive dir itself."""
    children = list(unpacked.iterdir())
    if len(children) == 1:
        return children[0]
    return unpacked


def _remove_quietly(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path, ignore_errors=True)
    else:
        path.unlink(missing_ok=True)
