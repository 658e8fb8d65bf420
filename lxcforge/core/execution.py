"""Execution contexts: run an operation against a target root filesystem.

Two realizations share one contract:

* ``HostContext`` runs operations directly on the calling host.  Operations
  flagged ``in_root_only`` (package management, service configuration, user
  management) cannot be meaningfully applied from outside the target, so
  they are skipped with an informational log line and reported as a
  successful, skipped result.  They never touch the filesystem.
* ``IsolatedContext`` runs every operation inside the target root, through
  ``chroot`` or natively when the caller already is the target system.

The kind of context is detected once per pipeline run and passed down.
File actions (``Operation.action``) receive the root path and are written to
be idempotent, so the same operation list is safe to re-run.
"""

from __future__ import annotations

import abc
import logging
import os
import shutil
import subprocess
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from lxcforge.errors import LxcforgeError

logger = logging.getLogger(__name__)

ROOT_PATH_ENV = "PATH"
ROOT_PATH_VALUE = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

# Marker proving the running system is itself an Alpine root.
NATIVE_MARKER = Path("/etc/alpine-release")


class ContextKind(str, Enum):
    HOST = "host"
    ISOLATED = "isolated"


class CommandFailedError(LxcforgeError):
    """Raised when a checked command exits non-zero."""

    component = "execution"

    def __init__(self, argv: list[str], returncode: int, stderr: str) -> None:
        super().__init__(
            f"command {' '.join(argv)!r} exited with {returncode}: {stderr.strip()[:500]}",
            context={"argv": argv, "returncode": returncode},
        )
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


class Operation(BaseModel):
    """One unit of work against a root filesystem.

    An operation has a command (``argv``), a host-side file ``action``
    (called with the root path), or both; the action runs first.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    argv: list[str] = Field(default_factory=list)
    action: Callable[[Path], Any] | None = None
    in_root_only: bool = False
    check: bool = True
    env: dict[str, str] = Field(default_factory=dict)
    description: str = ""


class OperationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    context: ContextKind
    skipped: bool = False
    returncode: int = 0
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    returncode: int
    stdout: str = ""
    stderr: str = ""


# ---------------------------------------------------------------------------
# Command runners
# ---------------------------------------------------------------------------


@runtime_checkable
class CommandRunner(Protocol):
    """Runs an argv and captures its output."""

    def run(
        self,
        argv: list[str],
        *,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult: ...


class SubprocessRunner:
    """Default runner backed by ``subprocess.run`` with captured text output."""

    def run(
        self,
        argv: list[str],
        *,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        full_env = {**os.environ, **env} if env else None
        logger.debug("exec: %s", " ".join(argv))
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                env=full_env,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            return CommandResult(returncode=127, stderr=str(exc))
        except subprocess.TimeoutExpired as exc:
            return CommandResult(returncode=124, stderr=f"timed out after {exc.timeout}s")
        return CommandResult(returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)


# ---------------------------------------------------------------------------
# Contexts
# ---------------------------------------------------------------------------


class ExecutionContext(abc.ABC):
    """Runs operations against *root_path*.

    Parameters
    ----------
    root_path:
        The target root filesystem.
    runner:
        Command runner; defaults to ``SubprocessRunner``.
    """

    kind: ContextKind

    def __init__(self, root_path: Path, runner: CommandRunner | None = None) -> None:
        self.root_path = Path(root_path)
        self.runner: CommandRunner = runner or SubprocessRunner()

    def run(self, operation: Operation) -> OperationResult:
        """Execute *operation*, raising ``CommandFailedError`` on a checked failure."""
        started = time.monotonic()
        if self._skips(operation):
            logger.info(
                "Skipping %s in %s context (requires the target root)",
                operation.name,
                self.kind.value,
            )
            return OperationResult(name=operation.name, context=self.kind, skipped=True)

        if operation.action is not None:
            operation.action(self.root_path)

        result = CommandResult(returncode=0)
        if operation.argv:
            argv = self.command(operation.argv)
            result = self.runner.run(argv, env=self._env(operation))
            if result.returncode != 0:
                if operation.check:
                    raise CommandFailedError(argv, result.returncode, result.stderr)
                logger.warning(
                    "%s exited with %d (ignored): %s",
                    operation.name,
                    result.returncode,
                    result.stderr.strip()[:200],
                )

        return OperationResult(
            name=operation.name,
            context=self.kind,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_seconds=time.monotonic() - started,
        )

    @abc.abstractmethod
    def _skips(self, operation: Operation) -> bool: ...

    @abc.abstractmethod
    def command(self, argv: list[str]) -> list[str]:
        """The argv actually executed for *argv* in this context."""

    def _env(self, operation: Operation) -> dict[str, str] | None:
        return dict(operation.env) or None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} root={str(self.root_path)!r}>"


class HostContext(ExecutionContext):
    """Run directly on the calling host; in-root-only operations are no-ops."""

    kind = ContextKind.HOST

    def _skips(self, operation: Operation) -> bool:
        return operation.in_root_only

    def command(self, argv: list[str]) -> list[str]:
        return list(argv)


class IsolatedContext(ExecutionContext):
    """Run inside the target root.

    Parameters
    ----------
    native:
        When True the caller already is the target system and commands run
        without a ``chroot`` prefix.
    """

    kind = ContextKind.ISOLATED

    def __init__(
        self,
        root_path: Path,
        runner: CommandRunner | None = None,
        *,
        native: bool = False,
    ) -> None:
        super().__init__(root_path, runner)
        self.native = native

    def _skips(self, operation: Operation) -> bool:
        return False

    def command(self, argv: list[str]) -> list[str]:
        if self.native:
            return list(argv)
        return ["chroot", str(self.root_path), *argv]

    def _env(self, operation: Operation) -> dict[str, str] | None:
        return {ROOT_PATH_ENV: ROOT_PATH_VALUE, **operation.env}


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


class ContextProbe(BaseModel):
    """What ``detect`` found out about the host."""

    model_config = ConfigDict(frozen=True)

    kind: ContextKind
    native: bool = False
    reasons: list[str] = Field(default_factory=list)


def probe(
    root_path: Path,
    *,
    which: Callable[[str], str | None] = shutil.which,
    geteuid: Callable[[], int] = os.geteuid,
    native_marker: Path = NATIVE_MARKER,
) -> ContextProbe:
    """Decide how operations can reach *root_path*.

    ISOLATED when the caller is already inside an Alpine system (``apk`` on
    PATH and the release marker present), or when a chroot into the root is
    possible (``chroot`` available, effective uid 0, and the root carries
    ``sbin/apk``).  HOST otherwise, with the reasons recorded.
    """
    root = Path(root_path)
    if which("apk") and native_marker.exists():
        return ContextProbe(kind=ContextKind.ISOLATED, native=True)

    reasons: list[str] = []
    if not which("chroot"):
        reasons.append("chroot is not available")
    if geteuid() != 0:
        reasons.append("not running as root")
    if not (root / "sbin" / "apk").exists():
        reasons.append(f"{root} has no sbin/apk")
    if reasons:
        return ContextProbe(kind=ContextKind.HOST, reasons=reasons)
    return ContextProbe(kind=ContextKind.ISOLATED)


def detect(root_path: Path, **probes: Any) -> ContextKind:
    """Return the ``ContextKind`` usable for *root_path*."""
    return probe(root_path, **probes).kind


def create_context(
    kind: ContextKind,
    root_path: Path,
    runner: CommandRunner | None = None,
    *,
    native: bool = False,
) -> ExecutionContext:
    """Build the realization for *kind*."""
    if kind is ContextKind.ISOLATED:
        return IsolatedContext(root_path, runner, native=native)
    return HostContext(root_path, runner)


def run(
    kind: ContextKind,
    root_path: Path,
    operation: Operation,
    runner: CommandRunner | None = None,
) -> OperationResult:
    """Run a single *operation* against *root_path* in a context of *kind*."""
    return create_context(kind, root_path, runner).run(operation)
