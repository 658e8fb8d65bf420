"""Stage 0: Load Configuration.

Resolves the configuration source into the immutable ``BuildConfig`` every
later stage reads.  A ``BuildConfig`` handed to the pipeline directly is
used as-is (with any overrides applied through ``with_overrides``).
"""

from __future__ import annotations

import logging
from typing import Any

from lxcforge.core.config_resolver import ConfigResolver
from lxcforge.models.config import BuildConfig
from lxcforge.stages.base import BaseStage

logger = logging.getLogger(__name__)


class LoadConfigStage(BaseStage):
    """Stage 0: resolve and freeze the build configuration."""

    @property
    def stage_id(self) -> str:
        return "load_config"

    @property
    def display_name(self) -> str:
        return "Load Configuration"

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        """Reads ``config_source`` and ``overrides``; writes ``config``."""
        source = run_context.get("config_source")
        overrides: dict[str, Any] = run_context.get("overrides") or {}

        if isinstance(source, BuildConfig):
            config = source.with_overrides(overrides) if overrides else source
        else:
            resolver: ConfigResolver = run_context.get("resolver") or ConfigResolver()
            config = resolver.resolve(source, overrides)

        run_context["config"] = config
        logger.info(
            "Building %s from %s (k3s %s)",
            config.artifact_stem,
            config.template.base_image,
            config.runtime.version,
        )
        return {
            "template": config.artifact_stem,
            "base_image": str(config.template.base_image),
            "runtime_version": config.runtime.version,
            "overrides": sorted(overrides),
        }
