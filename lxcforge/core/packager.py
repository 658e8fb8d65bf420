"""Packager: turn a finished build root into a distributable template.

The artifact is one gzip tar holding exactly four members::

    rootfs.tar.gz    the root filesystem, reproducible member order
    config           the LXC instantiation descriptor
    manifest.json    TemplateManifest (identity and build provenance)
    README.md        usage note

Each configured digest algorithm produces a sibling checksum file
``<archive>.<algorithm>`` in ``sha256sum`` format.  Size findings (a low
compression ratio, an oversized archive, leftover files that a cleanup
should have removed) are warnings on the Artifact, never failures.
Only a build whose report passed and whose template info matches the
configuration is packaged.
"""

from __future__ import annotations

import fnmatch
import gzip
import json
import logging
import os
import shutil
import stat
import tarfile
import tempfile
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from lxcforge import __version__
from lxcforge.config import BuilderSettings
from lxcforge.core import rootfs as fs
from lxcforge.core.hasher import file_digest, format_checksum_line
from lxcforge.errors import PackagingError
from lxcforge.models.artifacts import (
    Artifact,
    ChecksumSet,
    ManifestBuild,
    ManifestRootfs,
    ManifestRuntime,
    ManifestTemplate,
    TemplateManifest,
)
from lxcforge.models.config import BuildConfig

logger = logging.getLogger(__name__)

ROOTFS_MEMBER = "rootfs.tar.gz"
CONFIG_MEMBER = "config"
MANIFEST_MEMBER = "manifest.json"
README_MEMBER = "README.md"
ARCHIVE_MEMBERS: tuple[str, ...] = (CONFIG_MEMBER, MANIFEST_MEMBER, README_MEMBER, ROOTFS_MEMBER)

# Files matching these (in-target) patterns should not survive a cleanup.
UNNECESSARY_PATTERNS: tuple[str, ...] = (
    "*.log",
    "*/cache/*",
    "*/tmp/*",
    "*/man/*",
    "*/doc/*",
    "*/.git/*",
)

# Template architecture -> LXC arch
LXC_ARCHITECTURES: dict[str, str] = {
    "amd64": "amd64",
    "arm64": "arm64",
    "armv7": "armhf",
}


# ---------------------------------------------------------------------------
# Member rendering
# ---------------------------------------------------------------------------


def render_lxc_config(config: BuildConfig) -> str:
    """The instantiation descriptor.  K3s needs nesting, keyctl and open cgroups."""
    arch = LXC_ARCHITECTURES.get(config.template.architecture, config.template.architecture)
    return (
        f"# LXC configuration for {config.artifact_stem}\n"
        f"arch: {arch}\n"
        "ostype: alpine\n"
        "features: keyctl=1,nesting=1\n"
        "lxc.apparmor.profile: unconfined\n"
        "lxc.cgroup2.devices.allow: a\n"
        "lxc.cap.drop:\n"
        "lxc.mount.auto: proc:rw sys:rw cgroup:rw\n"
    )


def render_readme(config: BuildConfig, manifest: TemplateManifest) -> str:
    t = config.template
    archive = f"{config.artifact_stem}.tar.gz"
    return (
        f"# {t.name} {t.version}\n\n"
        f"{t.description or 'Alpine Linux LXC template with K3s preinstalled.'}\n\n"
        "## Contents\n\n"
        f"- Base image: {manifest.build.base_image}\n"
        f"- K3s: {config.runtime.version}\n"
        f"- Architecture: {t.architecture}\n"
        f"- Built: {manifest.build.timestamp.strftime('%Y-%m-%d %H:%M:%S UTC')}"
        f" by {manifest.build.builder}\n\n"
        "## Usage\n\n"
        "Verify and unpack the template, then create a container from the root\n"
        "filesystem:\n\n"
        "```sh\n"
        f"sha256sum -c {archive}.sha256\n"
        f"tar -xzf {archive}\n"
        "pct create 100 ./rootfs.tar.gz --ostype alpine --unprivileged 0 \\\n"
        "    --features keyctl=1,nesting=1 --memory 2048 --cores 2\n"
        "pct start 100\n"
        "```\n\n"
        "K3s starts from OpenRC on boot.  The server configuration is in\n"
        "`/etc/rancher/k3s/config.yaml`, build details in `/etc/lxc-template-info`.\n"
    )


TEMPLATE_INFO = "/etc/lxc-template-info"
BUILD_REPORT = "build-report.json"


def read_template_info(rootfs: Path) -> dict[str, str]:
    """The ``KEY=VALUE`` header of the rootfs's template info file."""
    info = fs.in_root(rootfs, TEMPLATE_INFO)
    if not info.is_file():
        return {}
    values: dict[str, str] = {}
    for line in info.read_text(encoding="utf-8").splitlines():
        key, sep, value = line.partition("=")
        if sep and key.isupper() and not key.startswith("#"):
            values[key] = value.strip()
    return values


def check_build(build_dir: Path, config: BuildConfig) -> dict[str, str]:
    """Make sure *build_dir* holds a finished build of *config*.

    Returns the template info of the rootfs.

    Raises
    ------
    PackagingError
        When the last build failed, the rootfs carries no template info, or
        the template info names another template or runtime than *config*.
    """
    report = build_dir / BUILD_REPORT
    if report.is_file():
        try:
            status = json.loads(report.read_text(encoding="utf-8")).get("status")
        except (OSError, ValueError) as exc:
            raise PackagingError(
                f"cannot read build report {report}: {exc}", context={"report": str(report)}
            ) from exc
        if status != "passed":
            raise PackagingError(
                f"the last build in {build_dir} did not pass (status {status!r}); rebuild first",
                context={"report": str(report), "status": status},
            )

    info = read_template_info(build_dir / "rootfs")
    if not info:
        raise PackagingError(
            f"no {TEMPLATE_INFO} in {build_dir / 'rootfs'}; the build did not finish",
            context={"build_dir": str(build_dir)},
        )
    t = config.template
    configured = {
        "TEMPLATE_NAME": t.name,
        "TEMPLATE_VERSION": t.version,
        "ARCHITECTURE": t.architecture,
        "K3S_VERSION": config.runtime.version,
    }
    mismatched = {
        key: {"built": info[key], "configured": value}
        for key, value in configured.items()
        if key in info and info[key] != value
    }
    if mismatched:
        summary = ", ".join(
            f"{key} built {m['built']!r} but configured {m['configured']!r}"
            for key, m in mismatched.items()
        )
        raise PackagingError(
            f"build root does not match the configuration: {summary}",
            context={"build_dir": str(build_dir), "mismatched": mismatched},
        )
    return info


# ---------------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------------


def write_reproducible_tar(destination: Path, entries: list[tuple[Path, str]]) -> None:
    """Write a gzip tar of *entries* (source path, arcname) in the given order.

    The gzip header carries no timestamp or file name.
    """
    with open(destination, "wb") as raw:
        with gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as gz:
            with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as archive:
                for source, arcname in entries:
                    archive.add(source, arcname=arcname, recursive=False)


def rootfs_entries(rootfs: Path) -> list[tuple[Path, str]]:
    """Every entry below *rootfs*, sorted by in-archive name."""
    entries = [(rootfs, ".")]
    for path, st in fs.walk_files(rootfs):
        if stat.S_ISSOCK(st.st_mode):
            continue
        entries.append((path, f"./{path.relative_to(rootfs).as_posix()}"))
    entries.sort(key=lambda e: e[1])
    return entries


def find_unnecessary_files(rootfs: Path) -> dict[str, int]:
    """Count regular files matching each UNNECESSARY_PATTERNS entry."""
    found: dict[str, int] = {}
    for path, st in fs.walk_files(rootfs):
        if not stat.S_ISREG(st.st_mode):
            continue
        in_target = "/" + path.relative_to(rootfs).as_posix()
        for pattern in UNNECESSARY_PATTERNS:
            if fnmatch.fnmatch(in_target, pattern):
                found[pattern] = found.get(pattern, 0) + 1
    return found


# ---------------------------------------------------------------------------
# Packager
# ---------------------------------------------------------------------------


class Packager:
    """Builds the template archive and its checksum files.

    Parameters
    ----------
    settings:
        Supplies the checksum algorithms, compression threshold, size limit
        and the default output directory.
    now:
        Injected clock for the manifest build timestamp.
    """

    def __init__(
        self,
        settings: BuilderSettings | None = None,
        *,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or BuilderSettings()
        self._now = now or (lambda: datetime.now(timezone.utc))

    def package(
        self,
        build_dir: Path,
        config: BuildConfig,
        output_dir: Path | None = None,
    ) -> Artifact:
        """Package ``{build_dir}/rootfs`` into ``{output_dir}/{stem}.tar.gz``.

        Raises
        ------
        PackagingError
            When the rootfs is missing, the build failed or does not match
            *config*, or any staging or write step fails.  A failed step leaves
            neither the archive nor its checksum files behind.
        """
        build_dir = Path(build_dir)
        rootfs = build_dir / "rootfs"
        if not rootfs.is_dir():
            raise PackagingError(
                f"no root filesystem at {rootfs}; run a build first",
                context={"build_dir": str(build_dir)},
            )
        info = check_build(build_dir, config)
        output = Path(output_dir or self._settings.output_dir)
        archive_path = output / f"{config.artifact_stem}.tar.gz"
        staging_parent = build_dir / "temp"

        logger.info("Packaging %s", archive_path.name)
        try:
            staging_parent.mkdir(parents=True, exist_ok=True)
            output.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix="lxcforge-package-", dir=staging_parent))
        except OSError as exc:
            raise PackagingError(
                f"cannot create staging directory: {exc}", context={"build_dir": str(build_dir)}
            ) from exc

        try:
            return self._package(rootfs, config, info, staging, archive_path)
        except (OSError, tarfile.TarError, ValueError) as exc:
            raise PackagingError(
                f"cannot package {archive_path.name}: {exc}",
                context={"archive": str(archive_path), "rootfs": str(rootfs)},
            ) from exc
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def _package(
        self,
        rootfs: Path,
        config: BuildConfig,
        info: dict[str, str],
        staging: Path,
        archive_path: Path,
    ) -> Artifact:
        stats = fs.collect_stats(rootfs)
        rootfs_archive = staging / ROOTFS_MEMBER
        write_reproducible_tar(rootfs_archive, rootfs_entries(rootfs))
        logger.debug("Wrote %s (%d files)", ROOTFS_MEMBER, stats.file_count)

        t = config.template
        manifest = TemplateManifest(
            template=ManifestTemplate(
                name=t.name,
                version=t.version,
                architecture=t.architecture,
                description=t.description,
                author=t.author,
            ),
            runtime=ManifestRuntime(version=config.runtime.version),
            build=ManifestBuild(
                timestamp=self._now(),
                builder=f"lxcforge {__version__}",
                base_image=info.get("BASE_IMAGE", str(t.base_image)),
            ),
            rootfs=ManifestRootfs(
                sha256=file_digest(rootfs_archive),
                size_bytes=stats.size_bytes,
                file_count=stats.file_count,
            ),
        )
        (staging / MANIFEST_MEMBER).write_text(
            manifest.model_dump_json(indent=2) + "\n", encoding="utf-8"
        )
        (staging / CONFIG_MEMBER).write_text(render_lxc_config(config), encoding="utf-8")
        (staging / README_MEMBER).write_text(render_readme(config, manifest), encoding="utf-8")

        partial = archive_path.with_name(f".{archive_path.name}.partial")
        try:
            write_reproducible_tar(
                partial, [(staging / name, name) for name in sorted(ARCHIVE_MEMBERS)]
            )
            digests = {
                algorithm: file_digest(partial, algorithm)
                for algorithm in self._settings.checksum_algorithms
            }
            os.replace(partial, archive_path)
        except (OSError, tarfile.TarError, ValueError):
            partial.unlink(missing_ok=True)
            raise
        checksums = self._write_checksums(archive_path, digests)
        packed = archive_path.stat().st_size
        ratio = 1 - packed / stats.size_bytes if stats.size_bytes else 0.0
        warnings = self._size_warnings(rootfs, packed, ratio)
        low_compression = ratio < self._settings.min_compression_ratio

        logger.info(
            "Packaged %s: %d bytes, compression ratio %.1f%%",
            archive_path.name,
            packed,
            ratio * 100,
        )
        return Artifact(
            path=archive_path,
            manifest=manifest,
            checksums=checksums,
            packed_size=packed,
            unpacked_size=stats.size_bytes,
            compression_ratio=round(ratio, 4),
            low_compression=low_compression,
            warnings=warnings,
        )

    @staticmethod
    def _write_checksums(archive_path: Path, digests: dict[str, str]) -> ChecksumSet:
        """Write one sidecar per digest; on failure remove the archive and the sidecars written."""
        files = {
            algorithm: archive_path.with_name(f"{archive_path.name}.{algorithm}")
            for algorithm in digests
        }
        written: list[Path] = []
        try:
            for algorithm, digest in digests.items():
                files[algorithm].write_text(
                    format_checksum_line(digest, archive_path.name), encoding="utf-8"
                )
                written.append(files[algorithm])
        except OSError:
            for path in (archive_path, *written):
                path.unlink(missing_ok=True)
            raise
        return ChecksumSet(digests=digests, files=files)

    def _size_warnings(self, rootfs: Path, packed: int, ratio: float) -> list[str]:
        warnings: list[str] = []
        if ratio < self._settings.min_compression_ratio:
            warnings.append(
                f"compression ratio {ratio:.0%} is below {self._settings.min_compression_ratio:.0%}"
            )
        if packed > self._settings.max_package_size_bytes:
            warnings.append(
                f"archive is {packed // 1024**2} MiB, above "
                f"{self._settings.max_package_size_bytes // 1024**2} MiB"
            )
        for pattern, count in sorted(find_unnecessary_files(rootfs).items()):
            warnings.append(f"{count} file(s) match {pattern}")
        for warning in warnings:
            logger.warning("Packaging: %s", warning)
        return warnings


def package(
    build_dir: Path,
    config: BuildConfig,
    output_dir: Path | None = None,
    *,
    settings: BuilderSettings | None = None,
) -> Artifact:
    """Package *build_dir* with a default Packager."""
    return Packager(settings).package(build_dir, config, output_dir)
