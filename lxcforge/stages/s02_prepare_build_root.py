"""Stage 2: Prepare Build Root.

Removes any previous build directory and recreates the layout.  Partial
state from an earlier run is never reused.
"""

from __future__ import annotations

from typing import Any

from lxcforge.core.build_root import BuildRoot
from lxcforge.stages.base import BaseStage


class PrepareBuildRootStage(BaseStage):
    """Stage 2: destructive-safe recreation of the build directory."""

    @property
    def stage_id(self) -> str:
        return "prepare_build_root"

    @property
    def display_name(self) -> str:
        return "Prepare Build Root"

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        build_root: BuildRoot = run_context["build_root"]
        build_root.prepare()
        return {
            "build_dir": str(build_root.build_dir),
            "rootfs": str(build_root.rootfs),
        }
