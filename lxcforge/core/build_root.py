"""Scoped guard over the on-disk build directory.

Layout::

    {build_dir}/rootfs/   target filesystem under construction
    {build_dir}/temp/     scratch space (staging, downloads in flight)
    {build_dir}/output/   stage outputs and the build report

A ``BuildRoot`` is owned by exactly one pipeline run, enforced with an
exclusive ``flock`` on ``{build_dir}.lock``.  Everything mounted below the
rootfs is tracked and torn down by ``cleanup()``, which is idempotent and
safe to call when nothing was ever mounted.
"""

from __future__ import annotations

import fcntl
import logging
import os
import shutil
from pathlib import Path
from typing import IO

from lxcforge.core.execution import CommandRunner, SubprocessRunner
from lxcforge.errors import BuildEnvironmentError, EnvironmentErrorReason

logger = logging.getLogger(__name__)

# Pseudo filesystems bound into the rootfs before entering isolation.
PSEUDO_MOUNTS: tuple[tuple[str, list[str]], ...] = (
    ("proc", ["-t", "proc", "proc"]),
    ("sys", ["-t", "sysfs", "sysfs"]),
    ("dev", ["--bind", "/dev"]),
)

SCRATCH_PREFIX = "lxcforge-"
PROC_MOUNTS = Path("/proc/self/mounts")


class BuildRoot:
    """Exclusive owner of one build directory.

    Parameters
    ----------
    build_dir:
        The build directory.  Its parent must be writable.
    runner:
        Command runner used for ``mount``/``umount``.
    mounts_file:
        Mount table to scan during cleanup (``/proc/self/mounts``).
    """

    def __init__(
        self,
        build_dir: Path,
        runner: CommandRunner | None = None,
        *,
        mounts_file: Path = PROC_MOUNTS,
    ) -> None:
        self.build_dir = Path(build_dir).absolute()
        self._runner = runner or SubprocessRunner()
        self._mounts_file = mounts_file
        self._lock_path = self.build_dir.with_name(f"{self.build_dir.name}.lock")
        self._lock_handle: IO[str] | None = None
        self._mounted: list[Path] = []
        self._isolated = False

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    @property
    def rootfs(self) -> Path:
        return self.build_dir / "rootfs"

    @property
    def temp(self) -> Path:
        return self.build_dir / "temp"

    @property
    def output(self) -> Path:
        return self.build_dir / "output"

    @property
    def mounted(self) -> list[Path]:
        return list(self._mounted)

    @property
    def locked(self) -> bool:
        return self._lock_handle is not None

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    def acquire(self) -> None:
        """Take the exclusive lock, failing fast if another run holds it."""
        if self._lock_handle is not None:
            return
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self._lock_path, "a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            raise BuildEnvironmentError(
                EnvironmentErrorReason.BUILD_ROOT_BUSY,
                f"build directory {self.build_dir} is in use by another build",
                context={"build_dir": str(self.build_dir), "lock": str(self._lock_path)},
            ) from None
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._lock_handle = handle
        logger.debug("Acquired build root lock %s", self._lock_path)

    def prepare(self) -> None:
        """Recreate the build directory from scratch.  Destructive."""
        if self.build_dir.exists():
            logger.info("Removing existing build directory %s", self.build_dir)
            self.remove()
        for directory in (self.rootfs, self.temp, self.output):
            directory.mkdir(parents=True, exist_ok=True)
            directory.chmod(0o755)
        logger.info("Prepared build root %s", self.build_dir)

    def remove(self) -> None:
        """Unmount everything and delete the build directory.

        Raises
        ------
        BuildEnvironmentError
            When anything below the rootfs is still mounted after cleanup.
            Nothing is deleted in that case.
        """
        self.cleanup()
        remaining = self._active_mounts_below(self.rootfs)
        if remaining:
            raise BuildEnvironmentError(
                EnvironmentErrorReason.BUILD_ROOT_BUSY,
                f"{len(remaining)} mount(s) remain below {self.rootfs}; "
                f"refusing to remove {self.build_dir}",
                context={"build_dir": str(self.build_dir), "mounts": [str(p) for p in remaining]},
            )
        shutil.rmtree(self.build_dir)

    def release(self) -> None:
        """Run cleanup and drop the lock."""
        try:
            self.cleanup()
        finally:
            if self._lock_handle is not None:
                fcntl.flock(self._lock_handle.fileno(), fcntl.LOCK_UN)
                self._lock_handle.close()
                self._lock_handle = None

    def __enter__(self) -> BuildRoot:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    # ------------------------------------------------------------------
    # Isolation
    # ------------------------------------------------------------------

    def enter_isolation(self) -> None:
        """Mount the pseudo filesystems into the rootfs (once per run)."""
        if self._isolated:
            return
        for name, args in PSEUDO_MOUNTS:
            target = self.rootfs / name
            target.mkdir(parents=True, exist_ok=True)
            result = self._runner.run(["mount", *args, str(target)])
            if result.returncode != 0:
                logger.warning("Could not mount %s: %s", target, result.stderr.strip())
                continue
            self._mounted.append(target)
            logger.debug("Mounted %s", target)
        self._isolated = True

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup(self) -> None:
        """Unmount everything below the rootfs and remove transient paths.

        Idempotent: a second call, or a call with nothing mounted, is a no-op.
        """
        targets = list(reversed(self._mounted))
        for mount_point in self._active_mounts_below(self.rootfs):
            if mount_point not in targets:
                targets.append(mount_point)
        # deepest first
        targets.sort(key=lambda p: len(p.parts), reverse=True)

        for target in targets:
            result = self._runner.run(["umount", "-l", str(target)])
            if result.returncode != 0:
                logger.warning("umount %s failed: %s", target, result.stderr.strip())
            else:
                logger.debug("Unmounted %s", target)
        self._mounted.clear()
        self._isolated = False

        if self.temp.exists():
            shutil.rmtree(self.temp, ignore_errors=True)
        scratch_dir = self.rootfs / "tmp"
        if scratch_dir.is_dir():
            for leftover in scratch_dir.glob(f"{SCRATCH_PREFIX}*"):
                if leftover.is_dir() and not leftover.is_symlink():
                    shutil.rmtree(leftover, ignore_errors=True)
                else:
                    leftover.unlink(missing_ok=True)

    def _active_mounts_below(self, base: Path) -> list[Path]:
        try:
            lines = self._mounts_file.read_text().splitlines()
        except OSError:
            return []
        found: list[Path] = []
        prefix = f"{base}/"
        for line in lines:
            fields = line.split()
            if len(fields) < 2:
                continue
            # /proc/self/mounts escapes spaces as \040
            mount_point = fields[1].replace("\\040", " ")
            if mount_point == str(base) or mount_point.startswith(prefix):
                found.append(Path(mount_point))
        return found

    def __repr__(self) -> str:
        return f"<BuildRoot {str(self.build_dir)!r} locked={self.locked}>"
