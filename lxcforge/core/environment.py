"""Build environment checks: the fail-fast gate before anything destructive.

All requirements are evaluated and every violation is reported together,
so one run tells the operator everything that has to be fixed.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import Any

from lxcforge.config import BuilderSettings
from lxcforge.core.execution import CommandRunner, SubprocessRunner
from lxcforge.errors import BuildEnvironmentError, EnvironmentErrorReason

logger = logging.getLogger(__name__)

PROC_MODULES = Path("/proc/modules")
SYS_MODULES = Path("/sys/module")

# Severity order used to pick the primary reason for the exit code.
_SEVERITY: list[EnvironmentErrorReason] = [
    EnvironmentErrorReason.INSUFFICIENT_PRIVILEGE,
    EnvironmentErrorReason.INSUFFICIENT_DISK,
    EnvironmentErrorReason.MISSING_CAPABILITY,
]


def _module_loaded(name: str) -> bool:
    if (SYS_MODULES / name).exists():
        return True
    try:
        text = PROC_MODULES.read_text()
    except OSError:
        return False
    return any(line.split(" ", 1)[0] == name for line in text.splitlines())


class EnvironmentProbe:
    """Checks privileges, tools, disk space and kernel modules.

    Every probe is injectable so tests run without root.

    Parameters
    ----------
    settings:
        Supplies the required commands, modules and the free-space minimum.
    runner:
        Used to ``modprobe`` a missing kernel module.
    """

    def __init__(
        self,
        settings: BuilderSettings | None = None,
        runner: CommandRunner | None = None,
        *,
        which: Callable[[str], str | None] = shutil.which,
        geteuid: Callable[[], int] = os.geteuid,
        disk_usage: Callable[[str], Any] = shutil.disk_usage,
        module_loaded: Callable[[str], bool] = _module_loaded,
    ) -> None:
        self._settings = settings or BuilderSettings()
        self._runner = runner or SubprocessRunner()
        self._which = which
        self._geteuid = geteuid
        self._disk_usage = disk_usage
        self._module_loaded = module_loaded

    def check(self, build_dir: Path) -> dict[str, Any]:
        """Run every check for a build in *build_dir*.

        Returns a summary dict on success.

        Raises
        ------
        BuildEnvironmentError
            Listing every violation; ``reason`` is the most severe one.
        """
        violations: list[tuple[EnvironmentErrorReason, str]] = []

        # 1. Privilege
        euid = self._geteuid()
        if euid != 0:
            violations.append(
                (
                    EnvironmentErrorReason.INSUFFICIENT_PRIVILEGE,
                    f"root privileges are required (effective uid is {euid})",
                )
            )

        # 2. Required commands
        missing = [cmd for cmd in self._settings.required_commands if not self._which(cmd)]
        for cmd in missing:
            violations.append(
                (EnvironmentErrorReason.MISSING_CAPABILITY, f"required command '{cmd}' not found")
            )

        # 3. Free disk space where the build directory will live
        free = self._free_bytes(build_dir)
        minimum = self._settings.min_free_disk_bytes
        if free < minimum:
            violations.append(
                (
                    EnvironmentErrorReason.INSUFFICIENT_DISK,
                    f"{free // 1024**2} MiB free at {build_dir}, "
                    f"{minimum // 1024**2} MiB required",
                )
            )

        # 4. Kernel modules, loading them when possible
        unavailable: list[str] = []
        for module in self._settings.required_kernel_modules:
            if self._module_loaded(module):
                continue
            result = self._runner.run(["modprobe", module])
            if result.returncode == 0:
                logger.info("Loaded kernel module %s", module)
                continue
            unavailable.append(module)
            violations.append(
                (
                    EnvironmentErrorReason.MISSING_CAPABILITY,
                    f"kernel module '{module}' is not loaded and could not be loaded",
                )
            )

        if violations:
            reasons = sorted({r for r, _ in violations}, key=_SEVERITY.index)
            msg = "Build environment check failed.\n" + "\n".join(
                f"  - {text}" for _, text in violations
            )
            logger.critical(msg)
            raise BuildEnvironmentError(
                reasons,
                msg,
                context={
                    "build_dir": str(build_dir),
                    "missing_commands": missing,
                    "missing_modules": unavailable,
                    "free_bytes": free,
                },
            )

        logger.info("Build environment check passed (%d MiB free)", free // 1024**2)
        return {
            "euid": euid,
            "free_bytes": free,
            "commands": list(self._settings.required_commands),
            "kernel_modules": list(self._settings.required_kernel_modules),
        }

    def _free_bytes(self, build_dir: Path) -> int:
        # The build directory may not exist yet; measure its nearest ancestor.
        candidate = Path(build_dir).absolute()
        while not candidate.exists() and candidate != candidate.parent:
            candidate = candidate.parent
        return int(self._disk_usage(str(candidate)).free)
