"""Post-build validator for packaged templates.

Checks run in a fixed order and each produces a ``CheckResult``:

1. ``archive_integrity``: the archive opens, holds every member, and any
   sibling checksum files match.
2. ``manifest``: ``manifest.json`` parses and names the template, its
   version, architecture, runtime version and build time.
3. ``rootfs_structure``: the unpacked root filesystem has every critical path.
4. ``functional`` (on request): the rootfs boots K3s in an isolated runtime
   and reports a Ready node.
5. ``performance``: unpack timing and size figures, informational only.

A failure in 1-3 is fatal: every later check is reported as skipped.  A
missing isolated runtime skips the functional check instead of failing it.
"""

from __future__ import annotations

import json
import logging
import shutil
import stat
import tarfile
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, ValidationError

from lxcforge.config import BuilderSettings
from lxcforge.core import rootfs as fs
from lxcforge.core.execution import (
    CommandFailedError,
    CommandResult,
    CommandRunner,
    SubprocessRunner,
)
from lxcforge.core.hasher import SUPPORTED_ALGORITHMS, file_digest, parse_checksum_text
from lxcforge.core.packager import ARCHIVE_MEMBERS, MANIFEST_MEMBER, ROOTFS_MEMBER
from lxcforge.core.retry import poll_until
from lxcforge.models.artifacts import TemplateManifest
from lxcforge.models.reports import CheckCategory, CheckResult, CheckStatus, ValidationReport

logger = logging.getLogger(__name__)

REQUIRED_DIRECTORIES: tuple[str, ...] = ("bin", "etc", "usr", "var", "lib", "sbin")
SERVICE_FILES: tuple[str, ...] = ("/etc/init.d/k3s", "/lib/systemd/system/k3s.service")

K3S_SERVER_ARGS: tuple[str, ...] = (
    "server",
    "--disable=traefik",
    "--disable=servicelb",
    "--write-kubeconfig-mode=644",
)
READYZ_COMMAND: list[str] = ["k3s", "kubectl", "get", "--raw", "/readyz"]
NODES_COMMAND: list[str] = ["k3s", "kubectl", "get", "nodes", "--no-headers"]


class _CheckFailed(Exception):
    """A check found a defect; the message is the check detail."""


# ---------------------------------------------------------------------------
# Isolated runtimes
# ---------------------------------------------------------------------------


class RuntimeHandle(BaseModel):
    model_config = ConfigDict(frozen=True)

    container: str
    image: str


@runtime_checkable
class IsolatedRuntime(Protocol):
    """Backend able to boot a root filesystem archive in isolation."""

    name: str

    def available(self) -> tuple[bool, str]:
        """(usable, reason when not usable)."""
        ...

    def start(self, rootfs_archive: Path, *, tag: str) -> RuntimeHandle: ...

    def exec(self, handle: RuntimeHandle, argv: list[str]) -> CommandResult: ...

    def remove(self, handle: RuntimeHandle) -> None: ...


class DockerRuntime:
    """Drives the ``docker`` CLI: import the rootfs, run K3s privileged."""

    name = "docker"

    def __init__(
        self,
        runner: CommandRunner | None = None,
        settings: BuilderSettings | None = None,
    ) -> None:
        self._runner = runner or SubprocessRunner()
        self._settings = settings or BuilderSettings()

    def available(self) -> tuple[bool, str]:
        result = self._runner.run(["docker", "info", "--format", "{{.ServerVersion}}"], timeout=30)
        if result.returncode == 127:
            return False, "docker is not installed"
        if result.returncode != 0:
            return False, f"docker daemon unavailable: {result.stderr.strip()[:200]}"
        return True, ""

    def start(self, rootfs_archive: Path, *, tag: str) -> RuntimeHandle:
        image = f"{self._settings.runtime_image_prefix}:{tag}"
        self._checked(["docker", "import", str(rootfs_archive), image])
        run = self._checked(
            [
                "docker", "run", "-d", "--privileged",
                "--tmpfs", "/run", "--tmpfs", "/var/run",
                "-v", "/lib/modules:/lib/modules:ro",
                "--name", f"{self._settings.runtime_image_prefix}-{tag}",
                image,
                "/usr/local/bin/k3s", *K3S_SERVER_ARGS,
            ],
            image=image,
        )
        container = run.stdout.strip()
        logger.debug("Started container %s from %s", container[:12], image)
        return RuntimeHandle(container=container, image=image)

    def exec(self, handle: RuntimeHandle, argv: list[str]) -> CommandResult:
        return self._runner.run(["docker", "exec", handle.container, *argv], timeout=60)

    def remove(self, handle: RuntimeHandle) -> None:
        self._runner.run(["docker", "rm", "-f", handle.container], timeout=60)
        self._runner.run(["docker", "rmi", "-f", handle.image], timeout=60)

    def _checked(self, argv: list[str], *, image: str | None = None) -> CommandResult:
        result = self._runner.run(argv, timeout=self._settings.functional_timeout)
        if result.returncode != 0:
            if image is not None:
                self._runner.run(["docker", "rmi", "-f", image], timeout=60)
            raise CommandFailedError(argv, result.returncode, result.stderr)
        return result


def node_ready(output: str) -> bool:
    """True when ``kubectl get nodes --no-headers`` lists a Ready node."""
    for line in output.splitlines():
        fields = line.split()
        if len(fields) >= 2 and "Ready" in fields[1].split(","):
            return True
    return False


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class Validator:
    """Runs the check sequence against a packaged template.

    Parameters
    ----------
    settings:
        Supplies the work directory, functional timeouts and retry counts.
    runtime:
        Isolated runtime backend for the functional check.  Defaults to
        ``DockerRuntime``.
    clock, sleep:
        Injected for polling tests.
    """

    def __init__(
        self,
        settings: BuilderSettings | None = None,
        runtime: IsolatedRuntime | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings or BuilderSettings()
        self._runtime = runtime
        self._clock = clock
        self._sleep = sleep

    @property
    def runtime(self) -> IsolatedRuntime:
        if self._runtime is None:
            self._runtime = DockerRuntime(settings=self._settings)
        return self._runtime

    def validate(
        self,
        artifact_path: Path,
        functional: bool = False,
        timeout: float | None = None,
    ) -> ValidationReport:
        """Validate *artifact_path* and return the ordered report."""
        artifact_path = Path(artifact_path)
        started = time.monotonic()
        work_parent = Path(self._settings.work_dir)
        work_parent.mkdir(parents=True, exist_ok=True)
        work = Path(tempfile.mkdtemp(prefix="lxcforge-validate-", dir=work_parent))
        state: dict[str, Any] = {"work": work}

        checks: list[tuple[str, CheckCategory, Callable[[], tuple[CheckStatus, str, dict]]]] = [
            (
                "archive_integrity",
                CheckCategory.INTEGRITY,
                lambda: self._integrity(artifact_path, state),
            ),
            ("manifest", CheckCategory.METADATA, lambda: self._manifest(state)),
            ("rootfs_structure", CheckCategory.STRUCTURE, lambda: self._structure(state)),
            (
                "functional",
                CheckCategory.FUNCTIONAL,
                lambda: self._functional(functional, timeout, state),
            ),
            (
                "performance",
                CheckCategory.PERFORMANCE,
                lambda: self._performance(artifact_path, state),
            ),
        ]

        results: list[CheckResult] = []
        blocking: str | None = None
        try:
            for name, category, check in checks:
                if blocking is not None:
                    results.append(
                        CheckResult(
                            name=name,
                            category=category,
                            status=CheckStatus.SKIPPED,
                            detail=f"{blocking} failed",
                        )
                    )
                    continue
                result = self._run_check(name, category, check)
                results.append(result)
                fatal = category in (
                    CheckCategory.INTEGRITY,
                    CheckCategory.METADATA,
                    CheckCategory.STRUCTURE,
                )
                if fatal and result.status is CheckStatus.FAILED:
                    blocking = name
        finally:
            shutil.rmtree(work, ignore_errors=True)

        report = ValidationReport(
            artifact=artifact_path,
            checks=results,
            duration_seconds=round(time.monotonic() - started, 3),
        )
        summary = report.summary()
        logger.info(
            "Validated %s: %d passed, %d failed, %d skipped",
            artifact_path.name,
            summary["passed"],
            summary["failed"],
            summary["skipped"],
        )
        return report

    @staticmethod
    def _run_check(
        name: str,
        category: CheckCategory,
        check: Callable[[], tuple[CheckStatus, str, dict]],
    ) -> CheckResult:
        started = time.monotonic()
        try:
            status, detail, data = check()
        except _CheckFailed as exc:
            status, detail, data = CheckStatus.FAILED, str(exc), {}
        duration = round(time.monotonic() - started, 3)
        log = logger.error if status is CheckStatus.FAILED else logger.info
        log("%s: %s%s", name, status.value, f" ({detail})" if detail else "")
        return CheckResult(
            name=name,
            category=category,
            status=status,
            detail=detail,
            duration_seconds=duration,
            data=data,
        )

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _integrity(self, artifact: Path, state: dict[str, Any]) -> tuple[CheckStatus, str, dict]:
        if not artifact.is_file():
            raise _CheckFailed(f"artifact {artifact} does not exist")
        extract = state["work"] / "package"
        started = time.monotonic()
        try:
            with tarfile.open(artifact, "r:gz") as archive:
                names = sorted(m.name for m in archive.getmembers())
            missing = [m for m in ARCHIVE_MEMBERS if m not in names]
            unexpected = [n for n in names if n not in ARCHIVE_MEMBERS]
            problems = []
            if missing:
                problems.append(f"missing members: {', '.join(missing)}")
            if unexpected:
                problems.append(f"unexpected members: {', '.join(unexpected)}")
            if problems:
                raise _CheckFailed("; ".join(problems))
            fs.extract_archive(artifact, extract)
        except (tarfile.TarError, OSError, EOFError, ValueError) as exc:
            raise _CheckFailed(f"archive is corrupt or unreadable: {exc}") from exc
        state["package_dir"] = extract
        state["package_seconds"] = time.monotonic() - started

        verified: dict[str, str] = {}
        for algorithm in sorted(SUPPORTED_ALGORITHMS):
            sidecar = artifact.with_name(f"{artifact.name}.{algorithm}")
            if not sidecar.is_file():
                continue
            expected = parse_checksum_text(sidecar.read_text(encoding="utf-8"), artifact.name)
            actual = file_digest(artifact, algorithm)
            if expected != actual:
                raise _CheckFailed(f"{algorithm} checksum mismatch ({sidecar.name})")
            verified[algorithm] = actual
        detail = f"{len(names)} members"
        if verified:
            detail += f", checksums verified: {', '.join(verified)}"
        return CheckStatus.PASSED, detail, {"members": names, "checksums": verified}

    def _manifest(self, state: dict[str, Any]) -> tuple[CheckStatus, str, dict]:
        path: Path = state["package_dir"] / MANIFEST_MEMBER
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
            manifest = TemplateManifest.model_validate(document)
        except (OSError, json.JSONDecodeError) as exc:
            raise _CheckFailed(f"manifest is unreadable: {exc}") from exc
        except ValidationError as exc:
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
            raise _CheckFailed(
                f"manifest is missing or has invalid fields: {', '.join(fields)}"
            ) from exc

        rootfs_archive = state["package_dir"] / ROOTFS_MEMBER
        if manifest.rootfs.sha256 and file_digest(rootfs_archive) != manifest.rootfs.sha256:
            raise _CheckFailed(f"{ROOTFS_MEMBER} does not match the manifest digest")

        state["manifest"] = manifest
        t = manifest.template
        return (
            CheckStatus.PASSED,
            f"{t.name} {t.version} ({t.architecture}), k3s {manifest.runtime.version}",
            {"template": t.name, "version": t.version, "runtime_version": manifest.runtime.version},
        )

    def _structure(self, state: dict[str, Any]) -> tuple[CheckStatus, str, dict]:
        rootfs = state["work"] / "rootfs"
        started = time.monotonic()
        try:
            fs.extract_archive(state["package_dir"] / ROOTFS_MEMBER, rootfs)
        except (tarfile.TarError, OSError, EOFError, ValueError) as exc:
            raise _CheckFailed(f"cannot unpack {ROOTFS_MEMBER}: {exc}") from exc
        state["rootfs"] = rootfs
        state["rootfs_seconds"] = time.monotonic() - started

        problems = [
            f"missing directory /{d}" for d in REQUIRED_DIRECTORIES if not (rootfs / d).is_dir()
        ]
        k3s = fs.in_root(rootfs, "/usr/local/bin/k3s")
        if not k3s.is_file():
            problems.append("missing /usr/local/bin/k3s")
        elif not k3s.stat().st_mode & stat.S_IXUSR:
            problems.append("/usr/local/bin/k3s is not executable")
        if not fs.in_root(rootfs, "/etc/rancher/k3s").is_dir():
            problems.append("missing /etc/rancher/k3s")
        if not any(fs.in_root(rootfs, s).is_file() for s in SERVICE_FILES):
            problems.append("missing K3s service file")
        if not fs.in_root(rootfs, "/etc/lxc-template-info").is_file():
            problems.append("missing /etc/lxc-template-info")
        if problems:
            raise _CheckFailed("; ".join(problems))
        return CheckStatus.PASSED, "all critical paths present", {}

    def _functional(
        self, requested: bool, timeout: float | None, state: dict[str, Any]
    ) -> tuple[CheckStatus, str, dict]:
        if not requested:
            return CheckStatus.SKIPPED, "not requested", {}
        runtime = self.runtime
        usable, reason = runtime.available()
        if not usable:
            logger.warning("Functional validation skipped: %s", reason)
            return CheckStatus.SKIPPED, reason, {"runtime": runtime.name}

        overall = timeout if timeout is not None else self._settings.functional_timeout
        deadline = self._clock() + overall
        manifest: TemplateManifest = state["manifest"]
        tag = f"{manifest.template.version}-{int(time.time())}"
        handle: RuntimeHandle | None = None
        try:
            try:
                handle = runtime.start(state["package_dir"] / ROOTFS_MEMBER, tag=tag)
            except CommandFailedError as exc:
                raise _CheckFailed(f"cannot start {runtime.name} runtime: {exc.detail}") from exc

            attempts = max(1, self._settings.api_check_retries)
            interval = self._settings.ready_timeout / attempts
            api_ready = poll_until(
                lambda: runtime.exec(handle, READYZ_COMMAND).stdout.strip() == "ok",
                attempts=attempts,
                interval=interval,
                timeout=max(0.0, deadline - self._clock()),
                sleep=self._sleep,
                clock=self._clock,
            )
            if not api_ready:
                raise _CheckFailed("K3s API server never reported ready")

            nodes = poll_until(
                lambda: node_ready(
                    runtime.exec(handle, NODES_COMMAND).stdout
                ),
                attempts=attempts,
                interval=interval,
                timeout=max(0.0, deadline - self._clock()),
                sleep=self._sleep,
                clock=self._clock,
            )
            if not nodes:
                raise _CheckFailed("no node reached Ready")
        finally:
            if handle is not None:
                runtime.remove(handle)
        return CheckStatus.PASSED, f"K3s ready in {runtime.name}", {"runtime": runtime.name}

    def _performance(self, artifact: Path, state: dict[str, Any]) -> tuple[CheckStatus, str, dict]:
        stats = fs.collect_stats(state["rootfs"])
        average = stats.size_bytes // stats.file_count if stats.file_count else 0
        data = {
            "archive_bytes": artifact.stat().st_size,
            "package_extract_seconds": round(state["package_seconds"], 3),
            "rootfs_extract_seconds": round(state["rootfs_seconds"], 3),
            "file_count": stats.file_count,
            "directory_count": stats.directory_count,
            "rootfs_bytes": stats.size_bytes,
            "average_file_bytes": average,
        }
        detail = (
            f"{stats.file_count} files, {stats.directory_count} directories, "
            f"unpacked in {data['package_extract_seconds'] + data['rootfs_extract_seconds']:.2f}s"
        )
        return CheckStatus.INFO, detail, data


def write_report(report: ValidationReport, path: Path) -> Path:
    """Persist *report* as JSON (with its summary) and return the path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    document = report.model_dump(mode="json")
    document["summary"] = report.summary()
    path.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
    return path


def validate(
    artifact_path: Path,
    functional: bool = False,
    timeout: float | None = None,
    *,
    settings: BuilderSettings | None = None,
    runtime: IsolatedRuntime | None = None,
) -> ValidationReport:
    """Validate *artifact_path* with a default Validator."""
    return Validator(settings, runtime).validate(artifact_path, functional, timeout)
