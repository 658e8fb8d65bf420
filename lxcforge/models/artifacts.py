"""Artifact models: cache entries, checksums, manifests and packaged templates."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class CacheKey(BaseModel):
    """Deterministic identity of a cached download."""

    model_config = ConfigDict(frozen=True)

    distribution: str
    version: str
    architecture: str

    @property
    def slug(self) -> str:
        return f"{self.distribution}/{self.version}/{self.architecture}"


class ImageCacheEntry(BaseModel):
    """One verified file in the image cache.

    The entry is only trusted while ``digest`` matches a freshly computed
    digest of the bytes at ``path``.
    """

    model_config = ConfigDict(frozen=True)

    key: CacheKey
    path: Path
    filename: str
    digest: str
    digest_source: Literal["published", "local"] = "published"
    size_bytes: int = 0
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source_url: str = ""


class CacheStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    cache_dir: Path
    entry_count: int = 0
    total_bytes: int = 0


class ChecksumSet(BaseModel):
    """Digests of the outer artifact archive, one per algorithm."""

    model_config = ConfigDict(frozen=True)

    digests: dict[str, str] = Field(default_factory=dict)
    files: dict[str, Path] = Field(default_factory=dict)


class ManifestTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    architecture: str
    description: str = ""
    author: str = ""


class ManifestRuntime(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = "k3s"
    version: str


class ManifestBuild(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    builder: str
    base_image: str = ""


class ManifestRootfs(BaseModel):
    model_config = ConfigDict(frozen=True)

    sha256: str = ""
    size_bytes: int = 0
    file_count: int = 0


class TemplateManifest(BaseModel):
    """The ``manifest.json`` member of a packaged template."""

    model_config = ConfigDict(frozen=True)

    template: ManifestTemplate
    runtime: ManifestRuntime
    build: ManifestBuild
    rootfs: ManifestRootfs = Field(default_factory=ManifestRootfs)


class Artifact(BaseModel):
    """A packaged template and its integrity metadata."""

    model_config = ConfigDict(frozen=True)

    path: Path
    manifest: TemplateManifest
    checksums: ChecksumSet
    packed_size: int
    unpacked_size: int
    compression_ratio: float
    low_compression: bool = False
    warnings: list[str] = Field(default_factory=list)
