"""Stage 10: Verify Build.

Checks that every critical path exists and that the installed runtime
reports exactly the configured version.  Any mismatch, or a runtime that
cannot be executed at all, fails the build.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from lxcforge.core import rootfs as fs
from lxcforge.core.build_root import BuildRoot
from lxcforge.core.execution import ContextKind, ExecutionContext, Operation
from lxcforge.errors import StageError
from lxcforge.models.config import BuildConfig
from lxcforge.stages.base import BaseStage
from lxcforge.stages.s06_install_runtime import K3S_BINARY
from lxcforge.stages.s09_final_cleanup import TEMPLATE_INFO

logger = logging.getLogger(__name__)

CRITICAL_PATHS: tuple[str, ...] = (
    K3S_BINARY,
    "/etc/rancher/k3s",
    "/var/lib/rancher/k3s",
    TEMPLATE_INFO,
    "/etc/rancher/k3s/config.yaml",
)


def parse_runtime_version(output: str) -> str | None:
    """Extract ``v1.28.4+k3s1`` from ``k3s version v1.28.4+k3s1 (abcdef)``."""
    lines = output.strip().splitlines()
    if not lines:
        return None
    tokens = lines[0].split()
    return tokens[2] if len(tokens) >= 3 else None


class VerifyBuildStage(BaseStage):
    """Stage 10: prove the rootfs is complete and the runtime is the right one."""

    @property
    def stage_id(self) -> str:
        return "verify_build"

    @property
    def display_name(self) -> str:
        return "Verify Build"

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        config: BuildConfig = run_context["config"]
        build_root: BuildRoot = run_context["build_root"]
        root = build_root.rootfs

        missing = [p for p in CRITICAL_PATHS if not fs.in_root(root, p).exists()]
        if missing:
            raise StageError(
                self.stage_id,
                f"critical paths missing from rootfs: {', '.join(missing)}",
                context={"missing": missing},
            )
        binary = fs.in_root(root, K3S_BINARY)
        if not os.access(binary, os.X_OK):
            raise StageError(self.stage_id, f"{K3S_BINARY} is not executable")

        reported = self._runtime_version(run_context)
        expected = config.runtime.version
        if reported != expected:
            raise StageError(
                self.stage_id,
                f"runtime reports version {reported!r}, expected {expected!r}",
                context={"expected": expected, "reported": reported},
            )
        logger.info("Runtime version verified: %s", reported)

        stats = fs.collect_stats(root, skip=run_context["build_root"].mounted)
        run_context["rootfs_stats"] = stats
        return {
            "runtime_version": reported,
            "critical_paths": list(CRITICAL_PATHS),
            **stats.model_dump(),
        }

    def _runtime_version(self, run_context: dict[str, Any]) -> str:
        selected: ExecutionContext = run_context["execution"]
        host: ExecutionContext = run_context["host"]
        if selected.kind is ContextKind.ISOLATED:
            operation = Operation(
                name="runtime-version", argv=[K3S_BINARY, "--version"], in_root_only=True, check=False
            )
        else:
            # Without isolation the static binary is run from the host side.
            path = str(fs.in_root(host.root_path, K3S_BINARY))
            operation = Operation(name="runtime-version", argv=[path, "--version"], check=False)

        result = self.run_operations(run_context, [operation])[0]
        if result.returncode != 0:
            raise StageError(
                self.stage_id,
                f"cannot run {K3S_BINARY} --version (exit {result.returncode}): "
                f"{result.stderr.strip()[:200]}",
            )
        version = parse_runtime_version(result.stdout)
        if version is None:
            raise StageError(
                self.stage_id, f"unrecognised version output: {result.stdout.strip()[:200]!r}"
            )
        return version
