"""Unit tests for the CLI: Typer command registration and basic behavior.

Every invocation points the builder settings at the test directory through
``LXCFORGE_*`` environment variables.
"""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from conftest import K3S_VERSION, write_rootfs
from lxcforge.cli.app import app

runner = CliRunner()


@pytest.fixture
def env(tmp_dir, config_file) -> dict[str, str]:
    return {
        "LXCFORGE_CONFIG_FILE": str(config_file),
        "LXCFORGE_BUILD_DIR": str(tmp_dir / "build"),
        "LXCFORGE_CACHE_DIR": str(tmp_dir / "cache"),
        "LXCFORGE_OUTPUT_DIR": str(tmp_dir / "output"),
        "LXCFORGE_WORK_DIR": str(tmp_dir / "work"),
        "COLUMNS": "200",
    }


# ---------------------------------------------------------------------------
# Test: CLI help and registration
# ---------------------------------------------------------------------------


class TestCliApp:
    """The CLI must register all expected commands and show help."""

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        # Typer's no_args_is_help may exit with 0 or 2 depending on version
        assert result.exit_code in (0, 2)
        assert "usage" in result.output.lower()

    def test_help_flag(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("build", "package", "validate", "cache", "config"):
            assert command in result.output

    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert result.output.strip() == "lxcforge 0.1.0"

    @pytest.mark.parametrize(
        "args",
        [["build", "--help"], ["package", "--help"], ["validate", "--help"], ["cache", "info", "--help"]],
    )
    def test_subcommand_help(self, args):
        result = runner.invoke(app, args)
        assert result.exit_code == 0


# ---------------------------------------------------------------------------
# Test: config show
# ---------------------------------------------------------------------------


class TestConfigShow:
    def test_summary(self, env):
        result = runner.invoke(app, ["config", "show"], env=env)
        assert result.exit_code == 0, result.output
        assert "alpine-k3s-1.0.0-amd64" in result.output
        assert K3S_VERSION in result.output

    def test_full_document(self, env):
        result = runner.invoke(app, ["config", "show", "--full"], env=env)
        assert result.exit_code == 0
        assert "cluster_init" in result.output
        assert "firewall_rules" in result.output

    def test_set_override(self, env):
        result = runner.invoke(app, ["config", "show", "--set", "template.version=2.1.0"], env=env)
        assert result.exit_code == 0
        assert "alpine-k3s-2.1.0-amd64" in result.output

    def test_environment_override(self, env):
        env = {**env, "LXCFORGE_CFG__SYSTEM__TIMEZONE": "Europe/Berlin"}
        result = runner.invoke(app, ["config", "show"], env=env)
        assert result.exit_code == 0
        assert "Europe/Berlin" in result.output

    def test_invalid_override(self, env):
        result = runner.invoke(app, ["config", "show", "--set", "template.version=abc"], env=env)
        assert result.exit_code == 3
        assert "template.version" in result.output

    def test_missing_config(self, env, tmp_dir):
        env = {**env, "LXCFORGE_CONFIG_FILE": str(tmp_dir / "absent.yaml")}
        result = runner.invoke(app, ["config", "show"], env=env)
        assert result.exit_code == 3


# ---------------------------------------------------------------------------
# Test: build, package, validate
# ---------------------------------------------------------------------------


class TestBuildCommand:
    def test_missing_config_exits_3(self, env, tmp_dir):
        env = {**env, "LXCFORGE_CONFIG_FILE": str(tmp_dir / "absent.yaml")}
        result = runner.invoke(app, ["build"], env=env)
        assert result.exit_code == 3
        assert "exit code 3" in result.output


class TestPackageAndValidate:
    def test_package_without_build(self, env):
        result = runner.invoke(app, ["package"], env=env)
        assert result.exit_code == 1
        assert "exit code 1" in result.output

    def test_package_then_validate(self, env, tmp_dir):
        write_rootfs(tmp_dir / "build" / "rootfs")
        result = runner.invoke(app, ["package"], env=env)
        assert result.exit_code == 0, result.output

        archive = tmp_dir / "output" / "alpine-k3s-1.0.0-amd64.tar.gz"
        assert archive.is_file()
        assert (tmp_dir / "output" / "alpine-k3s-1.0.0-amd64.tar.gz.sha256").is_file()

        report = tmp_dir / "validation.json"
        result = runner.invoke(app, ["validate", str(archive), "--report", str(report)], env=env)
        assert result.exit_code == 0, result.output
        assert "releasable" in result.output
        assert json.loads(report.read_text())["summary"]["failed"] == 0

    def test_validate_tampered_artifact(self, env, tmp_dir):
        write_rootfs(tmp_dir / "build" / "rootfs")
        runner.invoke(app, ["package"], env=env)
        archive = tmp_dir / "output" / "alpine-k3s-1.0.0-amd64.tar.gz"
        archive.with_name(archive.name + ".sha256").write_text(f"{'0' * 64}  {archive.name}\n")

        result = runner.invoke(app, ["validate", str(archive)], env=env)
        assert result.exit_code == 1
        assert "NOT releasable" in result.output

    def test_package_refuses_other_runtime(self, env, tmp_dir):
        write_rootfs(tmp_dir / "build" / "rootfs")
        result = runner.invoke(app, ["package", "--set", "k3s.version=v1.27.1+k3s1"], env=env)
        assert result.exit_code == 1
        assert "K3S_VERSION" in result.output
        assert not (tmp_dir / "output" / "alpine-k3s-1.0.0-amd64.tar.gz").exists()

    def test_unsupported_checksum_algorithm_exits_3(self, env, tmp_dir):
        write_rootfs(tmp_dir / "build" / "rootfs")
        env = {**env, "LXCFORGE_CHECKSUM_ALGORITHMS": '["sha256", "md5"]'}
        result = runner.invoke(app, ["package"], env=env)
        assert result.exit_code == 3
        assert "exit code 3" in result.output
        assert not (tmp_dir / "output").exists()


# ---------------------------------------------------------------------------
# Test: cache
# ---------------------------------------------------------------------------


class TestCacheCommands:
    def test_info_empty(self, env):
        result = runner.invoke(app, ["cache", "info"], env=env)
        assert result.exit_code == 0
        assert "empty" in result.output

    def test_info_lists_entries(self, env, image_cache):
        image_cache.fetch("alpine", "3.18.10", "amd64")
        result = runner.invoke(app, ["cache", "info"], env=env)
        assert result.exit_code == 0
        assert "1 entries" in result.output

    def test_evict_by_size(self, env, image_cache):
        image_cache.fetch("alpine", "3.18.10", "amd64")
        result = runner.invoke(app, ["cache", "evict", "--max-size-bytes", "0"], env=env)
        assert result.exit_code == 0
        assert "Evicted 1 entries" in result.output
        assert image_cache.entries() == []
