"""On-disk model cache with usage bookkeeping and eviction.

Layout under the cache root::

    Models/<variant-id>/Whisper<Folder>Encoder.<ext>
    Models/<variant-id>/Whisper<Folder>Decoder.<ext>
    Models/<variant-id>/config.json
    Common/tokenizer.json, vocab.json, ...
    model_cache.json
    .staging/

The index holds an entry for a variant if and only if all of its required
files exist. Every mutation goes through a single re-entrant lock.
"""

import hashlib
import json
import logging
import os
import shutil
import tempfile
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Union

from .catalog import ModelCatalog, ModelVariant
from .errors import (
    DiskWriteError,
    ModelCorruptedError,
    ModelNotFoundError,
    ModelVersionMismatchError,
)

logger = logging.getLogger(__name__)

INDEX_FILE = "model_cache.json"
MODELS_DIR = "Models"
COMMON_DIR = "Common"
STAGING_DIR = ".staging"
MODEL_VERSION = "1.0"

_HASH_BLOCK = 1024 * 1024


@dataclass
class CacheEntry:
    """Bookkeeping record for one locally materialised variant.

    Timestamps are epoch seconds.
    """
    variant: str
    download_date: float
    last_used_date: float
    usage_count: int
    file_size: int
    version: str
    checksum: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "CacheEntry":
        return cls(
            variant=str(data["variant"]),
            download_date=float(data["download_date"]),
            last_used_date=float(data["last_used_date"]),
            usage_count=int(data["usage_count"]),
            file_size=int(data["file_size"]),
            version=str(data.get("version", MODEL_VERSION)),
            checksum=str(data.get("checksum", "")),
        )


def path_size(path: Path) -> int:
    """Size in bytes of a file, or of every file below a directory."""
    if path.is_dir():
        return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())
    return path.stat().st_size


def _iter_files(path: Path) -> Iterable[Path]:
    if path.is_dir():
        yield from sorted(p for p in path.rglob("*") if p.is_file())
    else:
        yield path


def compute_checksum(paths: Iterable[Path]) -> str:
    """SHA-256 over the contents of ``paths`` in order (directories walked sorted)."""
    digest = hashlib.sha256()
    for path in paths:
        for file_path in _iter_files(path):
            digest.update(file_path.name.encode("utf-8"))
            with open(file_path, "rb") as f:
                while block := f.read(_HASH_BLOCK):
                    digest.update(block)
    return digest.hexdigest()


class ModelCache:
    """Durable bookkeeping and eviction for locally stored model artifacts.

    Attributes:
        root: Cache root directory
        catalog: Catalog used to resolve variants and their file names
        eviction_target_ratio: Fraction of the budget eviction shrinks down to
    """

    def __init__(
        self,
        root: Union[str, Path],
        catalog: ModelCatalog,
        eviction_target_ratio: float = 0.8,
        clock: Callable[[], float] = time.time,
    ):
        if not 0.0 < eviction_target_ratio <= 1.0:
            raise ValueError(
                f"eviction_target_ratio must be in range (0.0, 1.0], got {eviction_target_ratio}"
            )
        self.root = Path(root)
        self.catalog = catalog
        self.eviction_target_ratio = eviction_target_ratio
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: Dict[str, CacheEntry] = {}

        self.models_dir.mkdir(parents=True, exist_ok=True)
        self._load()

    # Layout

    @property
    def index_path(self) -> Path:
        return self.root / INDEX_FILE

    @property
    def models_dir(self) -> Path:
        return self.root / MODELS_DIR

    @property
    def staging_dir(self) -> Path:
        return self.root / STAGING_DIR

    def common_dir(self) -> Path:
        return self.root / COMMON_DIR

    def variant_dir(self, variant: Union[str, ModelVariant]) -> Path:
        return self.models_dir / self.catalog.get(variant).id

    def artifact_paths(self, variant: Union[str, ModelVariant]) -> List[Path]:
        """Local paths of the encoder, decoder and config files, in that order."""
        resolved = self.catalog.get(variant)
        directory = self.variant_dir(resolved)
        return [directory / name for name in self.catalog.required_filenames(resolved)]

    def all_files_exist(self, variant: Union[str, ModelVariant]) -> bool:
        return all(path.exists() for path in self.artifact_paths(variant))

    # Queries

    def entry(self, variant: Union[str, ModelVariant]) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(self.catalog.get(variant).id)

    def entries(self) -> List[CacheEntry]:
        with self._lock:
            return list(self._entries.values())

    def total_size(self) -> int:
        with self._lock:
            return sum(entry.file_size for entry in self._entries.values())

    # Mutators

    def record_usage(self, variant: Union[str, ModelVariant]) -> CacheEntry:
        """Count a successful load of ``variant``, creating its entry if needed.

        Raises:
            ModelCorruptedError: If the variant's required files are missing
            DiskWriteError: If the index cannot be persisted
        """
        resolved = self.catalog.get(variant)
        with self._lock:
            paths = self.artifact_paths(resolved)
            if not all(path.exists() for path in paths):
                raise ModelCorruptedError(resolved.id, "required files are missing")

            now = self._clock()
            size = sum(path_size(path) for path in paths)
            entry = self._entries.get(resolved.id)
            if entry is not None:
                entry.last_used_date = now
                entry.usage_count += 1
                entry.file_size = size
            else:
                entry = CacheEntry(
                    variant=resolved.id,
                    download_date=now,
                    last_used_date=now,
                    usage_count=1,
                    file_size=size,
                    version=MODEL_VERSION,
                    checksum=compute_checksum(paths),
                )
                self._entries[resolved.id] = entry
                logger.info(f"Added '{resolved.id}' to model cache ({size / 1024**2:.1f}MB)")
            self._save()
            return entry

    def eviction_candidates(self, keep: Iterable[str] = ()) -> List[str]:
        """Evictable variant ids, oldest-and-least-used first.

        Score is ``(last_used - now) + usage_count``; the protected variant
        and anything in ``keep`` are never candidates.
        """
        keep = set(keep)
        protected = self.catalog.protected_variant.id
        with self._lock:
            now = self._clock()
            candidates = [
                entry
                for entry in self._entries.values()
                if entry.variant != protected and entry.variant not in keep
            ]
            candidates.sort(key=lambda e: (e.last_used_date - now) + e.usage_count)
            return [entry.variant for entry in candidates]

    def evict_if_over_budget(self, max_bytes: int, keep: Iterable[str] = ()) -> List[str]:
        """Delete entries until the cache fits ``max_bytes * eviction_target_ratio``.

        Nothing happens while the total is within ``max_bytes``. A variant
        whose files cannot be removed is logged and skipped.

        Returns:
            Ids of the evicted variants, in eviction order
        """
        with self._lock:
            total = self.total_size()
            if total <= max_bytes:
                return []

            target = max_bytes * self.eviction_target_ratio
            evicted = []
            for variant_id in self.eviction_candidates(keep):
                if total <= target:
                    break
                entry = self._entries[variant_id]
                try:
                    self._remove_files(variant_id)
                except OSError as e:
                    if self.all_files_exist(variant_id):
                        logger.warning(f"Failed to evict '{variant_id}': {e}")
                        continue
                    logger.warning(
                        f"Eviction of '{variant_id}' stopped partway, dropping its entry: {e}"
                    )
                del self._entries[variant_id]
                total -= entry.file_size
                evicted.append(variant_id)

            if evicted:
                self._save()
            logger.info(
                f"Eviction removed {len(evicted)} model(s) {evicted}, "
                f"cache now {total / 1024**2:.1f}MB (budget {max_bytes / 1024**2:.1f}MB)"
            )
            return evicted

    def delete(self, variant: Union[str, ModelVariant]) -> bool:
        """Delete a variant's files and entry.

        Returns:
            False for the protected variant or when nothing was stored

        Raises:
            DiskWriteError: If the files cannot be removed
        """
        resolved = self.catalog.get(variant)
        if resolved.protected:
            logger.warning(f"Refusing to delete protected model '{resolved.id}'")
            return False

        with self._lock:
            directory = self.variant_dir(resolved)
            existed = resolved.id in self._entries or directory.exists()
            try:
                self._remove_files(resolved.id)
            except OSError as e:
                if not self.all_files_exist(resolved) and self._entries.pop(resolved.id, None):
                    self._save()
                raise DiskWriteError(str(directory), str(e)) from e
            if self._entries.pop(resolved.id, None) is not None:
                self._save()
            if existed:
                logger.info(f"Deleted model '{resolved.id}'")
            return existed

    def clear(self) -> List[str]:
        """Delete every stored variant except the protected one."""
        removed = []
        with self._lock:
            for variant in self.catalog.all():
                if not variant.protected and self.delete(variant):
                    removed.append(variant.id)
        return removed

    def verify(self, variant: Union[str, ModelVariant]) -> None:
        """Recompute a variant's checksum and compare it with the index.

        Raises:
            ModelCorruptedError: If files are missing or the checksum differs
            ModelVersionMismatchError: If the files were stored by another model version
        """
        resolved = self.catalog.get(variant)
        with self._lock:
            entry = self._entries.get(resolved.id)
            paths = self.artifact_paths(resolved)
            if entry is None or not all(path.exists() for path in paths):
                raise ModelCorruptedError(resolved.id, "required files are missing")
            if entry.version != MODEL_VERSION:
                raise ModelVersionMismatchError(resolved.id, MODEL_VERSION, entry.version)
            actual = compute_checksum(paths)
            if actual != entry.checksum:
                raise ModelCorruptedError(
                    resolved.id,
                    f"checksum mismatch (expected {entry.checksum[:12]}, got {actual[:12]})",
                )

    # Internals

    def _remove_files(self, variant_id: str) -> None:
        directory = self.models_dir / variant_id
        if directory.exists():
            shutil.rmtree(directory)

    def _load(self) -> None:
        """Read the index and reconcile it with the files on disk."""
        raw = {}
        if self.index_path.exists():
            try:
                with open(self.index_path, "r", encoding="utf-8") as f:
                    raw = json.load(f)
                if not isinstance(raw, dict):
                    raise ValueError("index root must be an object")
            except (OSError, ValueError) as e:
                logger.warning(f"Ignoring unreadable cache index {self.index_path}: {e}")
                raw = {}

        changed = False
        for key, record in raw.items():
            try:
                entry = CacheEntry.from_dict(record)
                variant = self.catalog.get(entry.variant)
            except (KeyError, TypeError, ValueError, ModelNotFoundError) as e:
                logger.warning(f"Dropping malformed cache entry '{key}': {e}")
                changed = True
                continue
            if not self.all_files_exist(variant):
                logger.warning(f"Dropping stale cache entry '{variant.id}': files are missing")
                changed = True
                continue
            self._entries[variant.id] = entry

        # Complete directories without an entry (e.g. interrupted bookkeeping)
        for variant in self.catalog.all():
            if variant.id in self._entries or not self.all_files_exist(variant):
                continue
            paths = self.artifact_paths(variant)
            mtime = max(path.stat().st_mtime for path in paths)
            self._entries[variant.id] = CacheEntry(
                variant=variant.id,
                download_date=mtime,
                last_used_date=mtime,
                usage_count=0,
                file_size=sum(path_size(path) for path in paths),
                version=MODEL_VERSION,
                checksum=compute_checksum(paths),
            )
            logger.info(f"Adopted untracked model '{variant.id}' into the cache index")
            changed = True

        if changed:
            self._save()

    def _save(self) -> None:
        """Persist the index atomically (temp file + rename)."""
        data = {variant_id: entry.to_dict() for variant_id, entry in self._entries.items()}
        self.root.mkdir(parents=True, exist_ok=True)
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.root, prefix=".model_cache.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2, sort_keys=True)
                os.replace(tmp_path, self.index_path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise DiskWriteError(str(self.index_path), str(e)) from e
