"""Tests for ModelManager."""

import asyncio
import io
import zipfile

import httpx
import pytest

from offline_whisper.config import Config
from offline_whisper.downloader import CheckingSpace, Completed, Failed
from offline_whisper.errors import (
    DownloadFailedError,
    InsufficientDiskSpaceError,
    ModelNotFoundError,
    ModelUnavailableOfflineError,
    RecoveryAction,
)
from offline_whisper.model_manager import ModelManager

from conftest import RecordingTransport, make_manager, write_variant_files


class TestLoadModel:
    """Test cache hits and downloads."""

    @pytest.mark.asyncio
    async def test_cached_model_needs_no_network(self, cache, network, transport, manager):
        """Test that a complete cached variant loads without any network access."""
        write_variant_files(cache, "tiny")
        progress = []

        handle = await manager.load_model("tiny", on_progress=progress.append)

        assert transport.requests == []
        assert network.calls == 0
        assert progress == [1.0]
        assert handle.encoder_path.name == "WhisperTinyEncoder.mlpackage"
        assert handle.config_path.exists()
        assert cache.entry("tiny").usage_count == 1

    @pytest.mark.asyncio
    async def test_download_on_miss(self, cache, transport, manager):
        """Test that a missing variant is downloaded and recorded."""
        progress = []
        states = []

        handle = await manager.load_model("base", on_progress=progress.append)

        assert len(transport.requests) == 3
        assert cache.all_files_exist("base")
        assert cache.entry("base").usage_count == 1
        assert handle.directory == cache.variant_dir("base")
        assert progress == sorted(progress)
        assert progress[-1] == 1.0

        await manager.download_model("base", on_state=states.append)
        assert states == [Completed(cache.variant_dir("base"))]
        assert len(transport.requests) == 3

    @pytest.mark.asyncio
    async def test_state_sequence(self, manager, cache):
        """Test that the first state is a space check and the last is Completed."""
        states = []

        await manager.download_model("small", on_state=states.append)

        assert isinstance(states[0], CheckingSpace)
        assert states[-1] == Completed(cache.variant_dir("small"))
        assert sum(isinstance(s, Completed) for s in states) == 1

    @pytest.mark.asyncio
    async def test_concurrent_loads_download_once(self, manager, transport):
        """Test that concurrent loads of one variant share a single transfer."""
        first, second = await asyncio.gather(
            manager.load_model("base"), manager.load_model("base")
        )

        assert first == second
        assert len(transport.requests) == 3
        assert not manager.is_downloading("base")

    @pytest.mark.asyncio
    async def test_unknown_variant(self, manager):
        """Test that an unsupported id raises ModelNotFoundError."""
        with pytest.raises(ModelNotFoundError):
            await manager.load_model("huge")

    @pytest.mark.asyncio
    async def test_download_failure_surfaces(self, cache, network):
        """Test that exhausted retries surface as DownloadFailedError."""
        transport = RecordingTransport(lambda request, count: httpx.Response(500))
        manager = make_manager(cache, network, transport, max_attempts=2)
        states = []

        with pytest.raises(DownloadFailedError):
            await manager.download_model("base", on_state=states.append)

        assert isinstance(states[-1], Failed)
        assert cache.entry("base") is None
        assert not manager.is_downloading("base")


class TestOffline:
    """Test behaviour without network access."""

    @pytest.mark.asyncio
    async def test_offline_suggests_cached_alternative(self, cache, network, manager):
        """Test that an offline miss names the largest cached variant."""
        write_variant_files(cache, "tiny")
        write_variant_files(cache, "small")
        network.available = False

        with pytest.raises(ModelUnavailableOfflineError) as exc_info:
            await manager.load_model("medium")

        error = exc_info.value
        assert error.alternative == "small"
        assert error.recovery.action == RecoveryAction.USE_ALTERNATIVE_MODEL
        assert "'small'" in str(error)

    @pytest.mark.asyncio
    async def test_offline_without_alternative(self, network, manager, transport):
        """Test that an offline miss with an empty cache suggests checking the network."""
        network.available = False

        with pytest.raises(ModelUnavailableOfflineError) as exc_info:
            await manager.load_model("base")

        assert exc_info.value.alternative is None
        assert exc_info.value.recovery.action == RecoveryAction.CHECK_NETWORK
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_offline_cached_still_loads(self, cache, network, manager):
        """Test that cached variants load while offline."""
        write_variant_files(cache, "base")
        network.available = False

        handle = await manager.load_model("base")

        assert handle.variant.id == "base"


class TestDiskSpace:
    """Test space checks and budget enforcement."""

    @pytest.mark.asyncio
    async def test_insufficient_space(self, cache, network, transport):
        """Test that a full disk with nothing evictable fails before downloading."""
        manager = make_manager(cache, network, transport, disk_free=1024)

        with pytest.raises(InsufficientDiskSpaceError) as exc_info:
            await manager.load_model("base")

        assert exc_info.value.available == 1024
        assert exc_info.value.required == int(142 * 1024**2 * 1.2)
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_exact_space_is_not_enough(self, cache, network, transport):
        """Test that free space equal to the requirement is rejected."""
        required = int(142 * 1024**2 * 1.2)
        manager = make_manager(cache, network, transport, disk_free=required)

        with pytest.raises(InsufficientDiskSpaceError):
            await manager.load_model("base")

        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_space_freed_by_eviction(self, cache, network, transport):
        """Test that cached variants are evicted to make room for a download."""
        for variant in ("tiny", "small"):
            write_variant_files(cache, variant)
            cache.record_usage(variant)
        manager = make_manager(cache, network, transport)
        manager._disk_free = lambda: 0 if cache.all_files_exist("small") else 10 * 1024**3

        await manager.load_model("base")

        assert not cache.all_files_exist("small")
        assert cache.all_files_exist("tiny")
        assert cache.all_files_exist("base")

    @pytest.mark.asyncio
    async def test_budget_enforced_after_download(self, cache, network, transport):
        """Test that the cache budget evicts other variants but never the new one."""
        write_variant_files(cache, "small")
        cache.record_usage("small")
        manager = make_manager(cache, network, transport, max_cache_bytes=120)

        await manager.load_model("base")

        assert cache.all_files_exist("base")
        assert not cache.all_files_exist("small")
        assert cache.entry("small") is None


class TestQueriesAndDeletion:
    """Test listing and deleting variants."""

    @pytest.mark.asyncio
    async def test_available_models(self, cache, manager):
        """Test that only complete variants are listed as available."""
        write_variant_files(cache, "tiny")
        write_variant_files(cache, "base")
        cache.artifact_paths("base")[1].unlink()

        assert [v.id for v in manager.get_available_models()] == ["tiny"]
        assert len(manager.get_supported_models()) == 8

    @pytest.mark.asyncio
    async def test_delete_model(self, cache, manager):
        """Test deletion of a regular variant."""
        write_variant_files(cache, "base")

        assert await manager.delete_model("base") is True
        assert not cache.all_files_exist("base")

    @pytest.mark.asyncio
    async def test_protected_model_not_deleted(self, cache, manager):
        """Test that the tiny variant is never deleted."""
        write_variant_files(cache, "tiny")

        assert await manager.delete_model("tiny") is False
        assert cache.all_files_exist("tiny")

    @pytest.mark.asyncio
    async def test_clear_cache(self, cache, manager):
        """Test that clearing keeps only the protected variant."""
        for variant in ("tiny", "base", "medium"):
            write_variant_files(cache, variant)

        removed = await manager.clear_cache()

        assert sorted(removed) == ["base", "medium"]
        assert [v.id for v in manager.get_available_models()] == ["tiny"]


class TestCommonFiles:
    """Test shared tokenizer asset downloads."""

    @pytest.mark.asyncio
    async def test_downloaded_once(self, cache, manager, transport):
        """Test that common files are fetched once and then reused."""
        paths = await manager.download_common_files()
        await manager.download_common_files()

        assert len(transport.requests) == 6
        assert all(path.parent == cache.common_dir() for path in paths)
        assert paths[0].read_bytes() == b"payload of tokenizer.json"

    @pytest.mark.asyncio
    async def test_offline(self, network, manager):
        """Test that missing common files cannot be fetched offline."""
        network.available = False

        with pytest.raises(ModelUnavailableOfflineError):
            await manager.download_common_files()


class TestFromConfig:
    """Test construction from configuration."""

    @pytest.mark.asyncio
    async def test_from_config(self, tmp_path, network, transport):
        """Test that configuration values reach the collaborators."""
        config = Config.from_dict(
            {
                "cache": {"root": str(tmp_path / "models"), "max_cache_bytes": 1024**3},
                "download": {"base_url": "https://mirror.test/whisper", "max_attempts": 5},
            },
            env={},
        )

        manager = ModelManager.from_config(config, client=transport.client(), network_monitor=network)

        assert manager.cache.root == tmp_path / "models"
        assert manager.max_cache_bytes == 1024**3
        assert manager.downloader.max_attempts == 5
        assert manager.catalog.base_url == "https://mirror.test/whisper"
        assert manager.network_monitor is network

    @pytest.mark.asyncio
    async def test_archived_packages_unpacked(self, tmp_path, network):
        """Test that zipped encoder and decoder packages are extracted into the cache."""
        def handler(request, count):
            name = request.url.path.rsplit("/", 1)[-1]
            if not name.endswith(".zip"):
                return httpx.Response(200, content=b"{}")
            buffer = io.BytesIO()
            with zipfile.ZipFile(buffer, "w") as archive:
                archive.writestr(f"{name[:-len('.zip')]}/weights.bin", b"weights")
            return httpx.Response(200, content=buffer.getvalue())

        transport = RecordingTransport(handler)
        config = Config.from_dict(
            {
                "cache": {"root": str(tmp_path / "models")},
                "download": {"package_extension": "mlmodelc", "archived_packages": True},
            },
            env={},
        )
        manager = ModelManager.from_config(config, client=transport.client(), network_monitor=network)
        manager._disk_free = lambda: 10 * 1024**3

        handle = await manager.load_model("tiny")

        assert str(transport.requests[0].url).endswith("/WhisperTinyEncoder.mlmodelc.zip")
        assert (handle.encoder_path / "weights.bin").read_bytes() == b"weights"
        assert (handle.decoder_path / "weights.bin").exists()
        assert manager.cache.all_files_exist("tiny")
        await manager.aclose()
