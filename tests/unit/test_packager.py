"""Tests for the Packager: archive layout, checksums, manifest and size warnings."""

from __future__ import annotations

import json
import os
import tarfile
from datetime import datetime, timezone

import pytest

from conftest import K3S_VERSION, write_rootfs
from lxcforge.core.hasher import file_digest, parse_checksum_text
from lxcforge.core.packager import (
    ARCHIVE_MEMBERS,
    Packager,
    find_unnecessary_files,
    package,
    read_template_info,
    render_lxc_config,
)
from lxcforge.errors import PackagingError
from lxcforge.models.config import BuildConfig

BUILT_AT = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def config(config_dict) -> BuildConfig:
    return BuildConfig.model_validate(config_dict)


@pytest.fixture
def build_dir(tmp_dir):
    write_rootfs(tmp_dir / "build" / "rootfs")
    return tmp_dir / "build"


@pytest.fixture
def packager(settings) -> Packager:
    return Packager(settings, now=lambda: BUILT_AT)


class TestPackageLayout:
    def test_archive_members(self, packager, build_dir, config, settings):
        artifact = packager.package(build_dir, config)
        assert artifact.path == settings.output_dir / "alpine-k3s-1.0.0-amd64.tar.gz"
        with tarfile.open(artifact.path, "r:gz") as archive:
            assert sorted(archive.getnames()) == sorted(ARCHIVE_MEMBERS)
            manifest = json.load(archive.extractfile("manifest.json"))
            readme = archive.extractfile("README.md").read().decode()

        assert manifest["template"]["name"] == "alpine-k3s"
        assert manifest["runtime"] == {"name": "k3s", "version": K3S_VERSION}
        assert manifest["build"]["base_image"] == "alpine:3.18.10"
        assert manifest["build"]["timestamp"].startswith("2024-03-01T12:00:00")
        assert manifest["rootfs"]["file_count"] == artifact.manifest.rootfs.file_count
        assert "pct create" in readme

    def test_rootfs_member_sorted_and_complete(self, packager, build_dir, config, tmp_dir):
        artifact = packager.package(build_dir, config)
        with tarfile.open(artifact.path, "r:gz") as archive:
            archive.extract("rootfs.tar.gz", tmp_dir / "unpacked", filter="data")
        with tarfile.open(tmp_dir / "unpacked" / "rootfs.tar.gz", "r:gz") as rootfs:
            names = rootfs.getnames()
            link = rootfs.getmember("./usr/local/bin/kubectl")
        assert names == sorted(names)
        assert "./usr/local/bin/k3s" in names
        assert link.issym() and link.linkname == "k3s"

    def test_gzip_header_has_no_timestamp(self, packager, build_dir, config):
        artifact = packager.package(build_dir, config)
        header = artifact.path.read_bytes()[:10]
        assert header[:2] == b"\x1f\x8b"
        assert header[4:8] == b"\x00\x00\x00\x00"

    def test_rootfs_member_is_reproducible(self, packager, build_dir, config, tmp_dir):
        first = packager.package(build_dir, config, tmp_dir / "a")
        second = packager.package(build_dir, config, tmp_dir / "b")
        assert first.manifest.rootfs.sha256 == second.manifest.rootfs.sha256

    def test_staging_removed(self, packager, build_dir, config):
        packager.package(build_dir, config)
        assert list((build_dir / "temp").iterdir()) == []
        output = build_dir.parent / "output"
        assert not [p for p in output.iterdir() if p.name.endswith(".partial")]

    def test_lxc_config(self, config):
        text = render_lxc_config(config.with_overrides({"template.architecture": "armv7"}))
        assert "arch: armhf\n" in text
        assert "features: keyctl=1,nesting=1\n" in text


class TestChecksums:
    def test_sidecar_per_algorithm(self, settings, build_dir, config):
        multi = settings.model_copy(update={"checksum_algorithms": ["sha256", "sha512"]})
        artifact = Packager(multi, now=lambda: BUILT_AT).package(build_dir, config)

        assert set(artifact.checksums.digests) == {"sha256", "sha512"}
        for algorithm, sidecar in artifact.checksums.files.items():
            assert sidecar.name == f"{artifact.path.name}.{algorithm}"
            text = sidecar.read_text()
            assert text.endswith(f"  {artifact.path.name}\n")
            assert parse_checksum_text(text, artifact.path.name) == file_digest(
                artifact.path, algorithm
            )


class TestWarnings:
    def test_compressible_rootfs_has_no_warnings(self, packager, build_dir, config):
        (build_dir / "rootfs" / "usr" / "share.dat").write_bytes(b"lxcforge " * 100_000)
        artifact = packager.package(build_dir, config)
        assert artifact.compression_ratio > 0.3
        assert artifact.low_compression is False
        assert artifact.warnings == []

    def test_low_compression_ratio(self, packager, build_dir, config):
        (build_dir / "rootfs" / "usr" / "random.bin").write_bytes(os.urandom(256 * 1024))
        artifact = packager.package(build_dir, config)
        assert artifact.low_compression is True
        assert any("compression ratio" in w for w in artifact.warnings)

    def test_oversized_archive(self, settings, build_dir, config):
        tiny = settings.model_copy(update={"max_package_size_bytes": 1})
        artifact = Packager(tiny, now=lambda: BUILT_AT).package(build_dir, config)
        assert any("above" in w for w in artifact.warnings)

    def test_unnecessary_files(self, packager, build_dir, config):
        log_dir = build_dir / "rootfs" / "var" / "log"
        log_dir.mkdir(parents=True)
        (log_dir / "k3s.log").write_text("started\n")
        (log_dir / "build.log").write_text("done\n")
        artifact = packager.package(build_dir, config)
        assert "2 file(s) match *.log" in artifact.warnings

    def test_find_unnecessary_files(self, build_dir):
        rootfs = build_dir / "rootfs"
        (rootfs / "usr/share/man/man1").mkdir(parents=True)
        (rootfs / "usr/share/man/man1/ls.1").write_text("x")
        (rootfs / "tmp/scratch").write_text("x")
        assert find_unnecessary_files(rootfs) == {"*/man/*": 1, "*/tmp/*": 1}


class TestErrors:
    def test_missing_rootfs(self, packager, tmp_dir, config):
        with pytest.raises(PackagingError, match="run a build first"):
            packager.package(tmp_dir / "never-built", config)

    def test_module_level_package(self, settings, build_dir, config):
        artifact = package(build_dir, config, settings=settings)
        assert artifact.path.is_file()

    def test_unsupported_algorithm_publishes_nothing(self, settings, build_dir, config):
        broken = settings.model_copy(update={"checksum_algorithms": ["sha256", "md5"]})
        with pytest.raises(PackagingError, match="md5"):
            Packager(broken, now=lambda: BUILT_AT).package(build_dir, config)
        assert list(settings.output_dir.iterdir()) == []

    def test_failed_sidecar_withdraws_archive(self, settings, build_dir, config):
        multi = settings.model_copy(update={"checksum_algorithms": ["sha256", "sha512"]})
        blocked = settings.output_dir / "alpine-k3s-1.0.0-amd64.tar.gz.sha512"
        blocked.mkdir(parents=True)
        with pytest.raises(PackagingError):
            Packager(multi, now=lambda: BUILT_AT).package(build_dir, config)
        assert sorted(p.name for p in settings.output_dir.iterdir()) == [blocked.name]


class TestBuildCheck:
    """Only a passed build of the configured template is packaged."""

    def _info(self, build_dir, **values):
        lines = {
            "TEMPLATE_NAME": "alpine-k3s",
            "TEMPLATE_VERSION": "1.0.0",
            "BASE_IMAGE": "alpine:3.18.12",
            "ARCHITECTURE": "amd64",
            "K3S_VERSION": K3S_VERSION,
            **values,
        }
        text = "".join(f"{k}={v}\n" for k, v in lines.items())
        (build_dir / "rootfs/etc/lxc-template-info").write_text(
            text + "\n# Configuration:\n# K3S_VERSION=ignored\n"
        )

    def test_read_template_info(self, build_dir):
        self._info(build_dir)
        info = read_template_info(build_dir / "rootfs")
        assert info["BASE_IMAGE"] == "alpine:3.18.12"
        assert info["K3S_VERSION"] == K3S_VERSION
        assert not any(key.startswith("#") for key in info)

    def test_matching_build_is_packaged(self, packager, build_dir, config):
        self._info(build_dir)
        (build_dir / "build-report.json").write_text(json.dumps({"status": "passed"}))
        artifact = packager.package(build_dir, config)
        assert artifact.manifest.build.base_image == "alpine:3.18.12"

    def test_runtime_mismatch(self, packager, build_dir, config, settings):
        self._info(build_dir, K3S_VERSION="v1.27.1+k3s1")
        with pytest.raises(PackagingError, match="K3S_VERSION") as exc_info:
            packager.package(build_dir, config)
        assert exc_info.value.context["mismatched"] == {
            "K3S_VERSION": {"built": "v1.27.1+k3s1", "configured": K3S_VERSION}
        }
        assert not settings.output_dir.exists() or list(settings.output_dir.iterdir()) == []

    def test_template_version_mismatch(self, packager, build_dir, config):
        self._info(build_dir, TEMPLATE_VERSION="0.9.0", ARCHITECTURE="arm64")
        with pytest.raises(PackagingError) as exc_info:
            packager.package(build_dir, config)
        assert set(exc_info.value.context["mismatched"]) == {"TEMPLATE_VERSION", "ARCHITECTURE"}

    def test_missing_template_info(self, packager, build_dir, config):
        (build_dir / "rootfs/etc/lxc-template-info").unlink()
        with pytest.raises(PackagingError, match="did not finish"):
            packager.package(build_dir, config)

    def test_failed_build_report(self, packager, build_dir, config, settings):
        (build_dir / "build-report.json").write_text(json.dumps({"status": "failed"}))
        with pytest.raises(PackagingError, match="did not pass") as exc_info:
            packager.package(build_dir, config)
        assert exc_info.value.context["status"] == "failed"
        assert not (settings.output_dir / "alpine-k3s-1.0.0-amd64.tar.gz").exists()

    def test_unreadable_build_report(self, packager, build_dir, config):
        (build_dir / "build-report.json").write_text("{not json")
        with pytest.raises(PackagingError, match="cannot read build report"):
            packager.package(build_dir, config)
