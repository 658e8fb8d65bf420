"""Shared test fixtures for lxcforge.

Nothing here touches the network or needs root: release sources, command
runners, environment probes and isolated runtimes are all fakes.
"""

from __future__ import annotations

import io
import tarfile
import threading
from collections.abc import Callable
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
import requests
import yaml

from lxcforge.config import BuilderSettings
from lxcforge.core.environment import EnvironmentProbe
from lxcforge.core.execution import CommandResult, ContextKind, ContextProbe
from lxcforge.core.hasher import sha256_hex
from lxcforge.core.image_cache import ImageCache
from lxcforge.core.pipeline import BuildPipeline
from lxcforge.errors import FetchError, FetchErrorReason

K3S_VERSION = "v1.28.4+k3s1"
K3S_VERSION_OUTPUT = f"k3s version {K3S_VERSION} (90a6a5c2)\ngo version go1.20.11\n"
ALPINE_VERSIONS = ["3.18.4", "3.18.9", "3.18.10"]

MINIMAL_CONFIG: dict[str, Any] = {
    "template": {"name": "alpine-k3s", "version": "1.0.0", "base_image": "alpine:3.18"},
    "k3s": {"version": K3S_VERSION},
}


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeReleaseSource:
    """In-memory release source serving fixed bytes per (version, architecture).

    ``fail_downloads`` and ``corrupt_downloads`` make the next N downloads
    raise a connection error or write the wrong bytes.
    """

    def __init__(
        self,
        distribution: str,
        artifacts: dict[tuple[str, str], bytes],
        *,
        versions: list[str] | None = None,
        publish_digests: bool = True,
        suffix: str = "",
    ) -> None:
        self.distribution = distribution
        self.artifacts = dict(artifacts)
        self.versions = list(versions or [])
        self.publish_digests = publish_digests
        self.suffix = suffix
        self.fail_downloads = 0
        self.corrupt_downloads = 0
        self.index_error: Exception | None = None
        self.downloads: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def map_architecture(self, architecture: str) -> str:
        return architecture

    def list_versions(self, prefix: str, architecture: str) -> list[str]:
        if self.index_error is not None:
            raise self.index_error
        return [v for v in self.versions if v.startswith(f"{prefix}.")]

    def artifact_filename(self, version: str, architecture: str) -> str:
        return f"{self.distribution}-{version}-{architecture}{self.suffix}"

    def artifact_url(self, version: str, architecture: str) -> str:
        return f"https://releases.invalid/{self.distribution}/{version}/{architecture}"

    def published_digest(self, version: str, architecture: str) -> str | None:
        data = self.artifacts.get((version, architecture))
        if data is None or not self.publish_digests:
            return None
        return sha256_hex(data)

    def download(self, version: str, architecture: str, destination: Path) -> int:
        with self._lock:
            self.downloads.append((version, architecture))
            if self.fail_downloads:
                self.fail_downloads -= 1
                raise requests.ConnectionError("connection reset by peer")
            corrupt = self.corrupt_downloads > 0
            if corrupt:
                self.corrupt_downloads -= 1
        data = self.artifacts.get((version, architecture))
        if data is None:
            raise FetchError(
                FetchErrorReason.NOT_FOUND,
                f"{self.artifact_url(version, architecture)} does not exist (HTTP 404)",
            )
        payload = b"garbage" + data if corrupt else data
        Path(destination).write_bytes(payload)
        return len(payload)


class FakeRunner:
    """Records every argv and answers with canned results.

    ``responses`` maps a substring of the joined argv to the result to
    return.  ``k3s --version`` (directly, by host path or through chroot)
    answers with ``version_output``.
    """

    def __init__(
        self,
        responses: dict[str, CommandResult] | None = None,
        version_output: str = K3S_VERSION_OUTPUT,
    ) -> None:
        self.responses = dict(responses or {})
        self.version_output = version_output
        self.calls: list[list[str]] = []

    def run(
        self,
        argv: list[str],
        *,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        self.calls.append(list(argv))
        joined = " ".join(argv)
        for needle, result in self.responses.items():
            if needle in joined:
                return result
        if argv and argv[-1] == "--version" and any(a.endswith("/k3s") for a in argv):
            return CommandResult(returncode=0, stdout=self.version_output)
        return CommandResult(returncode=0)

    def commands(self, program: str) -> list[list[str]]:
        """Calls whose argv (after any chroot prefix) starts with *program*."""
        found = []
        for argv in self.calls:
            body = argv[2:] if argv and argv[0] == "chroot" else argv
            if body and body[0] == program:
                found.append(argv)
        return found


class FakeRuntime:
    """Isolated runtime double for the validator's functional check."""

    name = "fake"

    def __init__(
        self,
        *,
        usable: bool = True,
        readyz: str = "ok",
        nodes: str = f"lxc-node   Ready   control-plane,master   1m   {K3S_VERSION}",
    ) -> None:
        self.usable = usable
        self.readyz = readyz
        self.nodes = nodes
        self.started: list[Path] = []
        self.removed: list[Any] = []

    def available(self) -> tuple[bool, str]:
        return (True, "") if self.usable else (False, "fake runtime is switched off")

    def start(self, rootfs_archive: Path, *, tag: str):
        from lxcforge.core.validator import RuntimeHandle

        self.started.append(rootfs_archive)
        return RuntimeHandle(container="c0ffee", image=f"fake:{tag}")

    def exec(self, handle: Any, argv: list[str]) -> CommandResult:
        if "/readyz" in argv:
            return CommandResult(returncode=0, stdout=self.readyz)
        return CommandResult(returncode=0, stdout=self.nodes)

    def remove(self, handle: Any) -> None:
        self.removed.append(handle)


# ---------------------------------------------------------------------------
# Archive helpers
# ---------------------------------------------------------------------------


def make_tar_gz(files: dict[str, bytes], directories: list[str] = ()) -> bytes:
    """Build an in-memory tar.gz from directory names and file contents."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name in directories:
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            archive.addfile(info)
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755 if "bin/" in name else 0o644
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def make_minirootfs() -> bytes:
    """A tiny Alpine-like minirootfs."""
    return make_tar_gz(
        {
            "bin/busybox": b"\x7fELF busybox" * 64,
            "sbin/apk": b"\x7fELF apk" * 64,
            "etc/alpine-release": b"3.18.10\n",
            "etc/passwd": b"root:x:0:0:root:/root:/bin/ash\n",
            "etc/group": b"root:x:0:root\n",
            "etc/shadow": b"root:*:19000:0:::::\n",
            "etc/login.defs": b"# login defaults\nPASS_MAX_DAYS\t99999\nUMASK\t022\n",
            "etc/ssh/sshd_config": b"#PermitRootLogin prohibit-password\nPort 22\n",
            "usr/share/man/man1/ls.1": b"manual page\n" * 16,
            "var/log/messages": b"boot log\n",
        },
        directories=["bin", "etc", "lib", "sbin", "usr", "var", "tmp", "var/cache/apk"],
    )


def write_rootfs(root: Path) -> Path:
    """A finished-looking rootfs on disk, ready to be packaged."""
    for directory in ("bin", "etc", "lib", "sbin", "usr", "var", "etc/rancher/k3s", "tmp"):
        (root / directory).mkdir(parents=True, exist_ok=True)
    k3s = root / "usr/local/bin/k3s"
    k3s.parent.mkdir(parents=True, exist_ok=True)
    k3s.write_bytes(b"\x7fELF k3s" * 256)
    k3s.chmod(0o755)
    (root / "usr/local/bin/kubectl").symlink_to("k3s")
    (root / "bin/busybox").write_bytes(b"\x7fELF busybox" * 128)
    (root / "etc/init.d").mkdir(parents=True, exist_ok=True)
    (root / "etc/init.d/k3s").write_text("#!/sbin/openrc-run\n")
    (root / "etc/rancher/k3s/config.yaml").write_text("cluster-init: true\n")
    (root / "etc/lxc-template-info").write_text(
        f"TEMPLATE_NAME=alpine-k3s\nBASE_IMAGE=alpine:3.18.10\nK3S_VERSION={K3S_VERSION}\n"
    )
    return root


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def run_id() -> str:
    """Provide a deterministic test run ID."""
    return "lx-test-run-001"


@pytest.fixture
def settings(tmp_dir: Path) -> BuilderSettings:
    """Builder settings with every path inside the test directory."""
    return BuilderSettings(
        config_file=tmp_dir / "template.yaml",
        build_dir=tmp_dir / "build",
        cache_dir=tmp_dir / "cache",
        output_dir=tmp_dir / "output",
        work_dir=tmp_dir / "work",
        fetch_retries=2,
        fetch_retry_delay=0.0,
        api_check_retries=3,
        ready_timeout=3.0,
        functional_timeout=30.0,
    )


@pytest.fixture
def config_dict() -> dict[str, Any]:
    """A fresh copy of the minimal valid configuration document."""
    return yaml.safe_load(yaml.safe_dump(MINIMAL_CONFIG))


@pytest.fixture
def config_file(tmp_dir: Path, config_dict: dict[str, Any]) -> Path:
    """The minimal configuration written as YAML."""
    path = tmp_dir / "template.yaml"
    path.write_text(yaml.safe_dump(config_dict), encoding="utf-8")
    return path


@pytest.fixture
def minirootfs() -> bytes:
    return make_minirootfs()


@pytest.fixture
def k3s_binary() -> bytes:
    return b"#!/bin/sh\necho k3s\n" + b"\0" * 4096


@pytest.fixture
def sources(minirootfs: bytes, k3s_binary: bytes) -> dict[str, FakeReleaseSource]:
    """Fake Alpine and K3s release sources."""
    return {
        "alpine": FakeReleaseSource(
            "alpine",
            {(v, "amd64"): minirootfs for v in ALPINE_VERSIONS},
            versions=ALPINE_VERSIONS,
            suffix=".tar.gz",
        ),
        "k3s": FakeReleaseSource("k3s", {(K3S_VERSION, "amd64"): k3s_binary}),
    }


@pytest.fixture
def sleeps() -> list[float]:
    """Collects the delays requested by retry loops."""
    return []


@pytest.fixture
def image_cache(
    settings: BuilderSettings, sources: dict[str, FakeReleaseSource], sleeps: list[float]
) -> ImageCache:
    """An ImageCache over the fake sources that never really sleeps."""
    return ImageCache(settings.cache_dir, sources, settings, sleep=sleeps.append)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def environment_probe(settings: BuilderSettings, runner: FakeRunner) -> EnvironmentProbe:
    """An EnvironmentProbe that finds a privileged, well-equipped host."""
    return EnvironmentProbe(
        settings,
        runner,
        which=lambda cmd: f"/usr/bin/{cmd}",
        geteuid=lambda: 0,
        disk_usage=lambda path: SimpleNamespace(free=100 * 1024**3),
        module_loaded=lambda name: True,
    )


def fixed_context(kind: ContextKind, native: bool = False) -> Callable[[Path], ContextProbe]:
    reasons = [] if kind is ContextKind.ISOLATED else ["chroot is not available"]
    return lambda root: ContextProbe(kind=kind, native=native, reasons=reasons)


@pytest.fixture
def make_pipeline(
    settings: BuilderSettings,
    config_dict: dict[str, Any],
    image_cache: ImageCache,
    runner: FakeRunner,
    environment_probe: EnvironmentProbe,
    run_id: str,
) -> Callable[..., BuildPipeline]:
    """Factory fixture: a BuildPipeline wired to the fakes.

    Defaults to an isolated (chroot) context; pass ``kind=ContextKind.HOST``
    for a host-only build.
    """

    def _factory(
        config: Any = None,
        *,
        kind: ContextKind = ContextKind.ISOLATED,
        **overrides: Any,
    ) -> BuildPipeline:
        kwargs: dict[str, Any] = {
            "settings": settings,
            "build_dir": settings.build_dir,
            "image_cache": image_cache,
            "runner": runner,
            "environment_probe": environment_probe,
            "context_probe": fixed_context(kind),
            "run_id": run_id,
        }
        kwargs.update(overrides)
        return BuildPipeline(config if config is not None else config_dict, **kwargs)

    return _factory
