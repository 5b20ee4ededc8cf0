"""Static knowledge of the supported Whisper model variants."""

from dataclasses import dataclass, replace
from typing import List, Tuple, Union

from .errors import ModelNotFoundError

MB = 1024 * 1024

CONFIG_FILE = "config.json"
OPTIONAL_FILES = ("preprocessor_config.json", "generation_config.json")
COMMON_FILES = (
    "tokenizer.json",
    "vocab.json",
    "tokenizer_config.json",
    "special_tokens_map.json",
    "merges.txt",
    "normalizer.json",
)
COMMON_FOLDER = "common"


@dataclass(frozen=True)
class Artifact:
    """A single remote file and the local name it is stored under.

    ``archived`` artifacts are zip files extracted into ``name`` on arrival.
    """
    name: str
    url: str
    sha256: str = ""
    archived: bool = False


@dataclass(frozen=True)
class ModelVariant:
    """Immutable descriptor of a model variant.

    Attributes:
        id: Variant identifier (e.g. "tiny", "large-v3")
        display_name: Human-readable name
        folder: CamelCase name used in artifact file names
        size_bytes: Declared download size in bytes
        protected: Non-evictable, non-deletable variant
        encoder_url: Remote location of the encoder artifact
        decoder_url: Remote location of the decoder artifact
        config_url: Remote location of config.json
        optional_urls: Remote locations of the optional preprocessor and generation configs
    """
    id: str
    display_name: str
    folder: str
    size_bytes: int
    protected: bool = False
    encoder_url: str = ""
    decoder_url: str = ""
    config_url: str = ""
    optional_urls: Tuple[str, ...] = ()

    def encoder_filename(self, extension: str) -> str:
        return f"Whisper{self.folder}Encoder.{extension}"

    def decoder_filename(self, extension: str) -> str:
        return f"Whisper{self.folder}Decoder.{extension}"


VARIANTS: Tuple[ModelVariant, ...] = (
    ModelVariant("tiny", "Tiny", "Tiny", 75 * MB, protected=True),
    ModelVariant("base", "Base", "Base", 142 * MB),
    ModelVariant("small", "Small", "Small", 466 * MB),
    ModelVariant("medium", "Medium", "Medium", 1500 * MB),
    ModelVariant("large", "Large", "Large", 3000 * MB),
    ModelVariant("large-v2", "Large-v2", "LargeV2", 3000 * MB),
    ModelVariant("large-v3", "Large-v3", "LargeV3", 3000 * MB),
    ModelVariant("large-v3-turbo", "Large-v3 Turbo", "LargeV3Turbo", 1600 * MB),
)


class ModelCatalog:
    """Resolves variant ids and the remote locations of their artifacts.

    Variants returned by a catalog carry the URLs of their artifacts under
    the catalog's ``base_url``.

    Example:
        >>> catalog = ModelCatalog("https://example.org/models")
        >>> catalog.get("tiny").config_url
        'https://example.org/models/openai_whisper-tiny/config.json'
    """

    def __init__(
        self,
        base_url: str,
        package_extension: str = "mlpackage",
        archived_packages: bool = False,
    ):
        if not base_url:
            raise ValueError("base_url cannot be empty")
        self.base_url = base_url.rstrip("/")
        self.package_extension = package_extension
        # Encoder and decoder served as "<name>.zip" and unpacked on arrival
        self.archived_packages = archived_packages
        self._variants = tuple(self._bind(variant) for variant in VARIANTS)
        self._by_id = {variant.id: variant for variant in self._variants}

    def _bind(self, variant: ModelVariant) -> ModelVariant:
        suffix = ".zip" if self.archived_packages else ""
        encoder = variant.encoder_filename(self.package_extension) + suffix
        decoder = variant.decoder_filename(self.package_extension) + suffix
        return replace(
            variant,
            encoder_url=self.variant_url(variant, encoder),
            decoder_url=self.variant_url(variant, decoder),
            config_url=self.variant_url(variant, CONFIG_FILE),
            optional_urls=tuple(self.variant_url(variant, name) for name in OPTIONAL_FILES),
        )

    def get(self, variant: Union[str, ModelVariant]) -> ModelVariant:
        """Look up a variant by id.

        Raises:
            ModelNotFoundError: If the id is not a supported variant
        """
        if isinstance(variant, ModelVariant):
            variant = variant.id
        try:
            return self._by_id[variant]
        except KeyError:
            raise ModelNotFoundError(str(variant)) from None

    def all(self) -> List[ModelVariant]:
        return list(self._variants)

    def ids(self) -> List[str]:
        return [variant.id for variant in self._variants]

    @property
    def protected_variant(self) -> ModelVariant:
        return next(variant for variant in self._variants if variant.protected)

    def variant_url(self, variant: ModelVariant, filename: str) -> str:
        return f"{self.base_url}/openai_whisper-{variant.id}/{filename}"

    def required_filenames(self, variant: ModelVariant) -> List[str]:
        """Local names of the files that make a variant complete."""
        return [
            variant.encoder_filename(self.package_extension),
            variant.decoder_filename(self.package_extension),
            CONFIG_FILE,
        ]

    def artifacts(
        self, variant: Union[str, ModelVariant], include_optional: bool = False
    ) -> List[Artifact]:
        """Ordered list of artifacts to download for ``variant``.

        Encoder, decoder and config always come first, in that order.
        """
        variant = self.get(variant)
        names = self.required_filenames(variant)
        urls = [variant.encoder_url, variant.decoder_url, variant.config_url]
        if include_optional:
            names.extend(OPTIONAL_FILES)
            urls.extend(variant.optional_urls)
        return [
            Artifact(name, url, archived=self.archived_packages and index < 2)
            for index, (name, url) in enumerate(zip(names, urls))
        ]

    def common_artifacts(self) -> List[Artifact]:
        """Variant-independent tokenizer assets."""
        return [
            Artifact(name, f"{self.base_url}/{COMMON_FOLDER}/{name}") for name in COMMON_FILES
        ]
