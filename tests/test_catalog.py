"""Tests for the static model catalog."""

import pytest

from offline_whisper.catalog import COMMON_FILES, ModelCatalog
from offline_whisper.errors import ModelNotFoundError

from conftest import BASE_URL


class TestModelCatalog:
    """Test variant lookup and artifact resolution."""

    def test_empty_base_url(self):
        """Test that an empty base URL raises ValueError."""
        with pytest.raises(ValueError, match="base_url cannot be empty"):
            ModelCatalog("")

    def test_lookup(self, catalog):
        """Test lookup by id and by descriptor."""
        variant = catalog.get("large-v3-turbo")

        assert variant.folder == "LargeV3Turbo"
        assert catalog.get(variant) is variant

    def test_unknown_variant(self, catalog):
        """Test that an unknown id raises ModelNotFoundError."""
        with pytest.raises(ModelNotFoundError, match="'huge'"):
            catalog.get("huge")

    def test_exactly_one_protected(self, catalog):
        """Test that tiny is the only protected variant."""
        protected = [v.id for v in catalog.all() if v.protected]

        assert protected == ["tiny"]
        assert catalog.protected_variant.id == "tiny"

    def test_artifact_order_and_urls(self, catalog):
        """Test that encoder, decoder and config come first, with remote URLs."""
        artifacts = catalog.artifacts(catalog.get("base"), include_optional=True)

        assert [a.name for a in artifacts[:3]] == [
            "WhisperBaseEncoder.mlpackage",
            "WhisperBaseDecoder.mlpackage",
            "config.json",
        ]
        assert len(artifacts) == 5
        assert artifacts[2].url == f"{BASE_URL}/openai_whisper-base/config.json"

    def test_variants_carry_urls(self, catalog):
        """Test that variants expose their encoder, decoder and config URLs."""
        variant = catalog.get("small")

        assert variant.encoder_url == f"{BASE_URL}/openai_whisper-small/WhisperSmallEncoder.mlpackage"
        assert variant.decoder_url.endswith("/WhisperSmallDecoder.mlpackage")
        assert variant.config_url.endswith("/openai_whisper-small/config.json")
        assert len(variant.optional_urls) == 2

    def test_trailing_slash_stripped(self):
        """Test that the base URL is normalised."""
        catalog = ModelCatalog(BASE_URL + "/", package_extension="pt")

        artifact = catalog.artifacts(catalog.get("tiny"))[0]

        assert artifact.name == "WhisperTinyEncoder.pt"
        assert artifact.url == f"{BASE_URL}/openai_whisper-tiny/WhisperTinyEncoder.pt"

    def test_common_artifacts(self, catalog):
        """Test that tokenizer assets live under the shared folder."""
        artifacts = catalog.common_artifacts()

        assert [a.name for a in artifacts] == list(COMMON_FILES)
        assert artifacts[0].url == f"{BASE_URL}/common/tokenizer.json"

    def test_archived_packages(self):
        """Test that archived packages are fetched as zips and stored under their plain names."""
        catalog = ModelCatalog(BASE_URL, package_extension="mlmodelc", archived_packages=True)

        encoder, decoder, config = catalog.artifacts("base")

        assert encoder.name == "WhisperBaseEncoder.mlmodelc"
        assert encoder.url.endswith("/WhisperBaseEncoder.mlmodelc.zip")
        assert encoder.archived and decoder.archived
        assert not config.archived
        assert config.url.endswith("/config.json")
