"""Model lifecycle management.

ModelManager answers "give me a ready-to-use model directory for variant X".
A complete cached variant is returned without touching the network; anything
else goes through space checks, eviction and a retried download.
"""

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import httpx

from .cache import CacheEntry, ModelCache
from .catalog import ModelCatalog, ModelVariant
from .config import Config
from .downloader import (
    Cancelled,
    CheckingSpace,
    Completed,
    Downloader,
    DownloadState,
    Failed,
    StateListener,
    state_progress,
)
from .errors import (
    DiskWriteError,
    DownloadCancelledError,
    InsufficientDiskSpaceError,
    ModelUnavailableOfflineError,
    WhisperError,
)
from .network import NetworkMonitor

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

COMMON_KEY = "common"


@dataclass(frozen=True)
class ModelHandle:
    """A ready-to-use model on disk."""
    variant: ModelVariant
    directory: Path
    encoder_path: Path
    decoder_path: Path
    config_path: Path


def _disk_free(path: Path) -> int:
    # The cache root may not exist yet; measure its nearest existing ancestor
    while not path.exists() and path.parent != path:
        path = path.parent
    return shutil.disk_usage(path).free


class ModelManager:
    """Coordinates catalog, cache and downloader.

    Example:
        >>> manager = ModelManager.from_config(load_config())
        >>> handle = await manager.load_model("base", on_progress=print)
        >>> handle.encoder_path
        PosixPath('.../Models/base/WhisperBaseEncoder.mlpackage')

    Attributes:
        catalog: Supported variants and their remote locations
        cache: On-disk cache and index
        downloader: Artifact downloader
        network_monitor: Reachability monitor consulted before downloads
        max_cache_bytes: Cache budget enforced after every download
        disk_space_slack: Multiplier applied to a variant's size for the space check
    """

    def __init__(
        self,
        catalog: ModelCatalog,
        cache: ModelCache,
        downloader: Downloader,
        network_monitor: NetworkMonitor,
        max_cache_bytes: int = 5 * 1024**3,
        disk_space_slack: float = 1.2,
        include_optional_artifacts: bool = False,
        verify_integrity_on_load: bool = False,
        disk_free: Optional[Callable[[], int]] = None,
    ):
        if max_cache_bytes <= 0:
            raise ValueError(f"max_cache_bytes must be positive, got {max_cache_bytes}")
        if disk_space_slack < 1.0:
            raise ValueError(f"disk_space_slack must be >= 1.0, got {disk_space_slack}")

        self.catalog = catalog
        self.cache = cache
        self.downloader = downloader
        self.network_monitor = network_monitor
        self.max_cache_bytes = max_cache_bytes
        self.disk_space_slack = disk_space_slack
        self.include_optional_artifacts = include_optional_artifacts
        self.verify_integrity_on_load = verify_integrity_on_load
        self._disk_free = disk_free or (lambda: _disk_free(self.cache.root))
        self._preparations: Dict[str, "asyncio.Task[Path]"] = {}
        self._listeners: Dict[str, List[StateListener]] = {}

    @classmethod
    def from_config(
        cls,
        config: Config,
        client: Optional[httpx.AsyncClient] = None,
        network_monitor: Optional[NetworkMonitor] = None,
    ) -> "ModelManager":
        """Build a manager and its collaborators from configuration."""
        download = config.download
        catalog = ModelCatalog(
            download.base_url, download.package_extension, download.archived_packages
        )
        cache = ModelCache(
            config.cache.root,
            catalog,
            eviction_target_ratio=config.cache.eviction_target_ratio,
        )
        network_monitor = network_monitor or NetworkMonitor(
            download.reachability_host,
            download.reachability_port,
            download.reachability_interval,
        )
        downloader = Downloader(
            cache.staging_dir,
            network_monitor,
            client=client,
            max_attempts=download.max_attempts,
            retry_delay=download.retry_delay,
            backoff_factor=download.backoff_factor,
            timeout=download.timeout,
            chunk_size=download.chunk_size,
        )
        return cls(
            catalog,
            cache,
            downloader,
            network_monitor,
            max_cache_bytes=config.cache.max_cache_bytes,
            disk_space_slack=download.disk_space_slack,
            include_optional_artifacts=download.include_optional_artifacts,
            verify_integrity_on_load=config.cache.verify_integrity_on_load,
        )

    # Loading

    async def load_model(
        self,
        variant: Union[str, ModelVariant],
        on_progress: Optional[ProgressCallback] = None,
    ) -> ModelHandle:
        """Return a ready model, downloading it first if needed.

        A complete cached variant is returned without any network access.
        """
        resolved = self.catalog.get(variant)
        if self.cache.all_files_exist(resolved):
            if self.verify_integrity_on_load and self.cache.entry(resolved) is not None:
                await asyncio.to_thread(self.cache.verify, resolved)
            await asyncio.to_thread(self.cache.record_usage, resolved)
            logger.info(f"Model '{resolved.id}' loaded from cache")
            if on_progress is not None:
                on_progress(1.0)
            return self._handle(resolved)

        await self.download_model(resolved, on_progress=on_progress)
        return self._handle(resolved)

    async def download_model(
        self,
        variant: Union[str, ModelVariant],
        on_progress: Optional[ProgressCallback] = None,
        on_state: Optional[StateListener] = None,
    ) -> Path:
        """Make ``variant`` available on disk.

        Concurrent calls for the same variant share one preparation and one
        transfer.

        Returns:
            The variant's model directory

        Raises:
            ModelUnavailableOfflineError: If the network is unreachable
            InsufficientDiskSpaceError: If eviction cannot free enough space
            DownloadFailedError: If every download attempt failed
            DownloadCancelledError: If the download was cancelled
        """
        resolved = self.catalog.get(variant)
        listener = self._make_listener(on_progress, on_state)

        if self.cache.all_files_exist(resolved) and resolved.id not in self._preparations:
            listener(Completed(self.cache.variant_dir(resolved)))
            return self.cache.variant_dir(resolved)

        task = self._preparations.get(resolved.id)
        if task is None:
            self._listeners[resolved.id] = []
            task = asyncio.create_task(self._prepare(resolved))
            self._preparations[resolved.id] = task
            task.add_done_callback(lambda t: self._finish_preparation(resolved.id, t))
        else:
            logger.info(f"Joining in-flight preparation of '{resolved.id}'")

        listeners = self._listeners[resolved.id]
        listeners.append(listener)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise DownloadCancelledError(resolved.id) from None
            raise
        finally:
            if listener in listeners:
                listeners.remove(listener)

    def cancel_download(self, variant: Union[str, ModelVariant]) -> bool:
        resolved = self.catalog.get(variant)
        if self.downloader.cancel(resolved.id):
            return True
        task = self._preparations.get(resolved.id)
        if task is not None and not task.done():
            task.cancel()
            return True
        return False

    async def download_common_files(
        self, on_progress: Optional[ProgressCallback] = None
    ) -> List[Path]:
        """Fetch the shared tokenizer assets into the common directory."""
        directory = self.cache.common_dir()
        artifacts = self.catalog.common_artifacts()
        paths = [directory / artifact.name for artifact in artifacts]
        if not all(path.exists() for path in paths):
            if not await asyncio.to_thread(self.network_monitor.is_available):
                raise ModelUnavailableOfflineError(COMMON_KEY)
            await self.downloader.download(
                COMMON_KEY, artifacts, directory, self._make_listener(on_progress, None)
            )
        elif on_progress is not None:
            on_progress(1.0)
        return paths

    # Queries

    def get_available_models(self) -> List[ModelVariant]:
        """Variants whose files are complete on disk."""
        return [variant for variant in self.catalog.all() if self.cache.all_files_exist(variant)]

    def get_supported_models(self) -> List[ModelVariant]:
        return self.catalog.all()

    def cache_entries(self) -> List[CacheEntry]:
        return self.cache.entries()

    def is_downloading(self, variant: Union[str, ModelVariant]) -> bool:
        return self.catalog.get(variant).id in self._preparations

    # Deletion

    async def delete_model(self, variant: Union[str, ModelVariant]) -> bool:
        """Delete a variant from disk.

        Returns:
            False for the protected variant, a variant being downloaded,
            or a variant that is not stored
        """
        resolved = self.catalog.get(variant)
        if self.is_downloading(resolved):
            logger.warning(f"Cannot delete '{resolved.id}' while it is being downloaded")
            return False
        return await asyncio.to_thread(self.cache.delete, resolved)

    async def clear_cache(self) -> List[str]:
        """Delete every stored variant except the protected one."""
        if self._preparations:
            logger.warning(
                f"Skipping variants being downloaded: {sorted(self._preparations)}"
            )
        removed = []
        for variant in self.catalog.all():
            if variant.protected or variant.id in self._preparations:
                continue
            if await asyncio.to_thread(self.cache.delete, variant):
                removed.append(variant.id)
        return removed

    async def aclose(self) -> None:
        for task in list(self._preparations.values()):
            task.cancel()
        await self.downloader.aclose()

    # Internals

    def _handle(self, variant: ModelVariant) -> ModelHandle:
        encoder_path, decoder_path, config_path = self.cache.artifact_paths(variant)
        return ModelHandle(
            variant=variant,
            directory=self.cache.variant_dir(variant),
            encoder_path=encoder_path,
            decoder_path=decoder_path,
            config_path=config_path,
        )

    @staticmethod
    def _make_listener(
        on_progress: Optional[ProgressCallback],
        on_state: Optional[StateListener],
    ) -> StateListener:
        last = 0.0

        def listener(state: DownloadState) -> None:
            nonlocal last
            if on_state is not None:
                on_state(state)
            if on_progress is not None:
                progress = max(last, state_progress(state))
                if progress > last or isinstance(state, Completed):
                    last = progress
                    on_progress(progress)

        return listener

    def _emit(self, variant_id: str, state: DownloadState) -> None:
        for listener in list(self._listeners.get(variant_id, ())):
            try:
                listener(state)
            except Exception:
                logger.exception(f"State listener for '{variant_id}' failed")

    def _finish_preparation(self, variant_id: str, task: "asyncio.Task[Path]") -> None:
        self._preparations.pop(variant_id, None)
        self._listeners.pop(variant_id, None)
        if not task.cancelled():
            task.exception()

    def _best_cached_alternative(self, variant: ModelVariant) -> Optional[str]:
        candidates = [v for v in self.get_available_models() if v.id != variant.id]
        if not candidates:
            return None
        return max(candidates, key=lambda v: v.size_bytes).id

    async def _prepare(self, variant: ModelVariant) -> Path:
        try:
            return await self._run_preparation(variant)
        except asyncio.CancelledError:
            self._emit(variant.id, Cancelled())
            raise DownloadCancelledError(variant.id) from None

    async def _run_preparation(self, variant: ModelVariant) -> Path:
        try:
            self._emit(variant.id, CheckingSpace())
            if not await asyncio.to_thread(self.network_monitor.is_available):
                raise ModelUnavailableOfflineError(variant.id, self._best_cached_alternative(variant))
            await self._ensure_disk_space(variant)
        except WhisperError as e:
            self._emit(variant.id, Failed(e, retryable=bool(e.recovery and e.recovery.can_retry)))
            raise

        def forward(state: DownloadState) -> None:
            # Completed is reported once the cache entry exists
            if not isinstance(state, Completed):
                self._emit(variant.id, state)

        directory = self.cache.variant_dir(variant)
        artifacts = self.catalog.artifacts(variant, self.include_optional_artifacts)
        await self.downloader.download(variant.id, artifacts, directory, forward)

        await asyncio.to_thread(self.cache.record_usage, variant)
        await asyncio.to_thread(
            self.cache.evict_if_over_budget, self.max_cache_bytes, [variant.id]
        )
        logger.info(f"Model '{variant.id}' is ready at {directory}")
        self._emit(variant.id, Completed(directory))
        return directory

    async def _ensure_disk_space(self, variant: ModelVariant) -> None:
        required = int(variant.size_bytes * self.disk_space_slack)
        available = await asyncio.to_thread(self._disk_free)
        if available > required:
            return

        logger.info(
            f"Need {required / 1024**2:.0f}MB for '{variant.id}', "
            f"{available / 1024**2:.0f}MB free; evicting cached models"
        )
        for candidate in self.cache.eviction_candidates(keep=[variant.id]):
            if candidate in self._preparations:
                continue
            try:
                await asyncio.to_thread(self.cache.delete, candidate)
            except DiskWriteError as e:
                logger.warning(f"Failed to evict '{candidate}': {e}")
                continue
            available = await asyncio.to_thread(self._disk_free)
            if available > required:
                return
        raise InsufficientDiskSpaceError(required, available)
