"""Process-level builder settings, driven by the environment.

These are the knobs of the builder itself (paths, retry counts, thresholds),
not the template being built; the template is described by a
``BuildConfig`` resolved from a YAML document.

All settings can be overridden with ``LXCFORGE_*`` environment variables or
a ``.env`` file in the working directory.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from lxcforge.core.hasher import SUPPORTED_ALGORITHMS


class BuilderSettings(BaseSettings):
    """Builder settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export LXCFORGE_LOG_LEVEL=DEBUG
        export LXCFORGE_CACHE_DIR=/var/cache/lxcforge
        export LXCFORGE_FETCH_RETRIES=5

    Or via .env file::

        LXCFORGE_BUILD_DIR=/srv/build
        LXCFORGE_STRICT_VERSION_RESOLUTION=true
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LXCFORGE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    log_level: str = "INFO"
    debug: bool = False

    # Paths
    config_file: Path = Path("config/template.yaml")
    build_dir: Path = Path(".build")
    cache_dir: Path = Path(".cache/images")
    output_dir: Path = Path("output")
    work_dir: Path = Path(".test")

    # Release sources
    alpine_mirror: str = "https://dl-cdn.alpinelinux.org/alpine"
    k3s_release_url: str = "https://github.com/k3s-io/k3s/releases/download"

    # Network
    fetch_retries: int = 3
    fetch_retry_delay: float = 5.0
    connect_timeout: float = 30.0
    download_timeout: float = 300.0
    strict_version_resolution: bool = False

    # Cache eviction
    cache_max_age_days: int = 30
    cache_max_size_bytes: int = 10 * 1024**3

    # Build environment
    min_free_disk_bytes: int = 2 * 1024**3
    required_commands: list[str] = ["chroot", "mount", "umount"]
    required_kernel_modules: list[str] = ["loop", "overlay"]
    remove_build_root_on_failure: bool = False

    # Packaging
    checksum_algorithms: list[str] = ["sha256"]
    min_compression_ratio: float = 0.30
    max_package_size_bytes: int = 500 * 1024**2

    # Validation
    functional_timeout: float = 300.0
    ready_timeout: float = 120.0
    api_check_retries: int = 10
    runtime_image_prefix: str = "lxcforge-validate"

    @field_validator("checksum_algorithms")
    @classmethod
    def _check_algorithms(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one checksum algorithm is required")
        unsupported = sorted(set(value) - SUPPORTED_ALGORITHMS)
        if unsupported:
            raise ValueError(
                f"unsupported checksum algorithm(s) {unsupported}; "
                f"choose from {sorted(SUPPORTED_ALGORITHMS)}"
            )
        return value

