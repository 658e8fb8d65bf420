"""Stage 3: Fetch Base Image.

Resolves the base-image version specifier, then fetches the base image and
the K3s binary concurrently through the image cache.  Both downloads
converge here before the next stage starts.
"""

from __future__ import annotations

import logging
from typing import Any

from lxcforge.core.image_cache import ImageCache
from lxcforge.models.artifacts import CacheKey
from lxcforge.models.config import BuildConfig
from lxcforge.stages.base import BaseStage

logger = logging.getLogger(__name__)

RUNTIME_DISTRIBUTION = "k3s"


class FetchBaseImageStage(BaseStage):
    """Stage 3: populate the cache with the base image and runtime binary."""

    @property
    def stage_id(self) -> str:
        return "fetch_base_image"

    @property
    def display_name(self) -> str:
        return "Fetch Base Image"

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        config: BuildConfig = run_context["config"]
        cache: ImageCache = run_context["image_cache"]
        base = config.template.base_image
        arch = config.template.architecture

        version = cache.resolve_version(base.distribution, base.version_spec, arch)
        base_key = CacheKey(distribution=base.distribution, version=version, architecture=arch)
        runtime_key = CacheKey(
            distribution=RUNTIME_DISTRIBUTION,
            version=config.runtime.version,
            architecture=arch,
        )

        entries = cache.fetch_many(
            [
                (base_key.distribution, base_key.version, base_key.architecture),
                (runtime_key.distribution, runtime_key.version, runtime_key.architecture),
            ]
        )
        base_entry = entries[base_key]
        runtime_entry = entries[runtime_key]

        run_context["resolved_base_version"] = version
        run_context["base_image_path"] = base_entry.path
        run_context["runtime_binary_path"] = runtime_entry.path
        logger.info("Base image %s:%s ready at %s", base.distribution, version, base_entry.path)

        return {
            "base_image": f"{base.distribution}:{version}",
            "base_image_sha256": base_entry.digest,
            "base_image_digest_source": base_entry.digest_source,
            "runtime_sha256": runtime_entry.digest,
            "runtime_digest_source": runtime_entry.digest_source,
        }
