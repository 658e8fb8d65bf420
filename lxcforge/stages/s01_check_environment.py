"""Stage 1: Check Environment.

Fail-fast gate before any destructive action: privileges, required tools,
free disk space and kernel modules.
"""

from __future__ import annotations

import logging
from typing import Any

from lxcforge.core.environment import EnvironmentProbe
from lxcforge.stages.base import BaseStage

logger = logging.getLogger(__name__)


class CheckEnvironmentStage(BaseStage):
    """Stage 1: validate that this host can run a build."""

    @property
    def stage_id(self) -> str:
        return "check_environment"

    @property
    def display_name(self) -> str:
        return "Check Environment"

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        probe: EnvironmentProbe = run_context.get("environment_probe") or EnvironmentProbe(
            run_context["settings"], run_context.get("runner")
        )
        return probe.check(run_context["build_root"].build_dir)
