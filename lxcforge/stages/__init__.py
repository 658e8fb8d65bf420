"""lxcforge pipeline stages: registry mapping stage_id to stage class.

Usage::

    from lxcforge.stages import STAGE_REGISTRY, get_stage

    stage_cls = STAGE_REGISTRY["fetch_base_image"]
    stage = stage_cls()
    result = stage.run_stage(run_context)

    # Or use the convenience helper:
    stage = get_stage("apply_hardening")
"""

from __future__ import annotations

from lxcforge.stages.base import BaseStage, StagePredecessorError
from lxcforge.stages.s00_load_config import LoadConfigStage
from lxcforge.stages.s01_check_environment import CheckEnvironmentStage
from lxcforge.stages.s02_prepare_build_root import PrepareBuildRootStage
from lxcforge.stages.s03_fetch_base_image import FetchBaseImageStage
from lxcforge.stages.s04_extract_base_image import ExtractBaseImageStage
from lxcforge.stages.s05_optimize_system import OptimizeSystemStage
from lxcforge.stages.s06_install_runtime import InstallRuntimeStage
from lxcforge.stages.s07_configure_runtime_service import ConfigureRuntimeServiceStage
from lxcforge.stages.s08_apply_hardening import ApplyHardeningStage
from lxcforge.stages.s09_final_cleanup import FinalCleanupStage
from lxcforge.stages.s10_verify_build import VerifyBuildStage

# ---------------------------------------------------------------------------
# Stage registry: stage_id -> stage class
# ---------------------------------------------------------------------------

STAGE_REGISTRY: dict[str, type[BaseStage]] = {
    "load_config": LoadConfigStage,
    "check_environment": CheckEnvironmentStage,
    "prepare_build_root": PrepareBuildRootStage,
    "fetch_base_image": FetchBaseImageStage,
    "extract_base_image": ExtractBaseImageStage,
    "optimize_system": OptimizeSystemStage,
    "install_runtime": InstallRuntimeStage,
    "configure_runtime_service": ConfigureRuntimeServiceStage,
    "apply_hardening": ApplyHardeningStage,
    "final_cleanup": FinalCleanupStage,
    "verify_build": VerifyBuildStage,
}

# The build order.  Matches DEFAULT_STAGE_DEFINITIONS.
STAGE_ORDER: list[str] = [
    "load_config",
    "check_environment",
    "prepare_build_root",
    "fetch_base_image",
    "extract_base_image",
    "optimize_system",
    "install_runtime",
    "configure_runtime_service",
    "apply_hardening",
    "final_cleanup",
    "verify_build",
]


def get_stage(stage_id: str) -> BaseStage:
    """Instantiate and return a stage by its ``stage_id``.

    Raises ``KeyError`` if the stage_id is not registered.
    """
    try:
        cls = STAGE_REGISTRY[stage_id]
    except KeyError:
        raise KeyError(
            f"Unknown stage_id {stage_id!r}. "
            f"Registered stages: {sorted(STAGE_REGISTRY.keys())}"
        ) from None
    return cls()


__all__ = [
    # Base
    "BaseStage",
    "StagePredecessorError",
    # Registry
    "STAGE_REGISTRY",
    "STAGE_ORDER",
    "get_stage",
    # Concrete stages
    "LoadConfigStage",
    "CheckEnvironmentStage",
    "PrepareBuildRootStage",
    "FetchBaseImageStage",
    "ExtractBaseImageStage",
    "OptimizeSystemStage",
    "InstallRuntimeStage",
    "ConfigureRuntimeServiceStage",
    "ApplyHardeningStage",
    "FinalCleanupStage",
    "VerifyBuildStage",
]
