"""Tests for the BuildPipeline: ordering, failure handling, cleanup and the report."""

from __future__ import annotations

import json
import signal
from types import SimpleNamespace

import pytest

from conftest import K3S_VERSION, FakeRunner
from lxcforge.core.build_root import BuildRoot
from lxcforge.core.environment import EnvironmentProbe
from lxcforge.core.execution import CommandResult, ContextKind
from lxcforge.core.pipeline import _defer_during_cleanup
from lxcforge.errors import ConfigError, ExitCode, PipelineError
from lxcforge.models.stages import StageState
from lxcforge.stages import STAGE_ORDER, STAGE_REGISTRY
from lxcforge.stages.s05_optimize_system import OptimizeSystemStage


class _InterruptedStage(OptimizeSystemStage):
    def execute(self, run_context):
        raise KeyboardInterrupt


def _states(pipeline) -> dict[str, StageState]:
    return pipeline.get_states()


class TestSuccessfulBuild:
    def test_isolated_build(self, make_pipeline, runner, run_id):
        pipeline = make_pipeline()
        result = pipeline.run()

        assert result.run_id == run_id
        assert result.template == "alpine-k3s-1.0.0-amd64"
        assert result.context_kind == "isolated"
        assert [o.stage_id for o in result.outcomes] == STAGE_ORDER
        assert all(o.state == StageState.PASSED for o in result.outcomes)
        assert all(len(o.output_hash) == 64 for o in result.outcomes)
        assert result.stats.file_count > 0

        rootfs = result.rootfs
        assert (rootfs / "usr/local/bin/k3s").is_file()
        assert "BASE_IMAGE=alpine:3.18.10" in (rootfs / "etc/lxc-template-info").read_text()

        # pseudo filesystems were mounted once and torn down at the end
        assert len(runner.commands("mount")) == 3
        assert len(runner.commands("umount")) == 3
        assert not pipeline.build_root.locked

    def test_host_build_skips_in_root_commands(self, make_pipeline, runner):
        result = make_pipeline(kind=ContextKind.HOST).run()
        assert result.context_kind == "host"
        assert runner.calls == [[str(result.rootfs / "usr/local/bin/k3s"), "--version"]]
        assert (result.rootfs / "etc/init.d/k3s").is_file()

    def test_report_written(self, make_pipeline):
        pipeline = make_pipeline()
        pipeline.run()
        report = json.loads(pipeline.report_path.read_text())
        assert report["status"] == "passed"
        assert report["base_image"] == "3.18.10"
        assert report["runtime_version"] == K3S_VERSION
        assert report["context"] == "isolated"
        assert [s["stage_id"] for s in report["stages"]] == STAGE_ORDER
        assert len(report["transitions"]) == 2 * len(STAGE_ORDER)

    def test_overrides_applied(self, make_pipeline):
        pipeline = make_pipeline(overrides={"template.version": "2.0.0"})
        assert pipeline.run().template == "alpine-k3s-2.0.0-amd64"

    def test_input_hashes_chain(self, make_pipeline):
        outcomes = make_pipeline().run().outcomes
        assert len({o.input_hash for o in outcomes}) == len(outcomes)


class TestFailedBuild:
    def test_command_failure_blocks_later_stages(self, make_pipeline):
        runner = FakeRunner({"rc-update add k3s": CommandResult(returncode=1, stderr="oops")})
        pipeline = make_pipeline(runner=runner)

        with pytest.raises(PipelineError) as exc_info:
            pipeline.run()
        err = exc_info.value
        assert err.stage_id == "configure_runtime_service"
        assert err.exit_code == ExitCode.FAILURE
        assert err.context["template"] == "alpine-k3s-1.0.0-amd64"
        assert err.context["base_version"] == "3.18.10"

        states = _states(pipeline)
        assert states["install_runtime"] == StageState.PASSED
        assert states["configure_runtime_service"] == StageState.FAILED
        for stage_id in ("apply_hardening", "final_cleanup", "verify_build"):
            assert states[stage_id] == StageState.BLOCKED
        # cleanup still ran
        assert len(runner.commands("umount")) == len(runner.commands("mount"))

        report = json.loads(pipeline.report_path.read_text())
        assert report["status"] == "failed"

    def test_version_mismatch(self, make_pipeline):
        runner = FakeRunner(version_output="k3s version v1.27.1+k3s1 (0000)\n")
        with pytest.raises(PipelineError) as exc_info:
            make_pipeline(runner=runner).run()
        err = exc_info.value
        assert err.stage_id == "verify_build"
        assert err.context["expected"] == K3S_VERSION
        assert err.context["reported"] == "v1.27.1+k3s1"

    def test_bad_config(self, make_pipeline):
        pipeline = make_pipeline({"template": {"name": "x"}})
        with pytest.raises(PipelineError) as exc_info:
            pipeline.run()
        err = exc_info.value
        assert err.stage_id == "load_config"
        assert err.exit_code == ExitCode.BAD_CONFIG
        assert isinstance(err.cause, ConfigError)
        assert all(
            state == StageState.BLOCKED
            for sid, state in _states(pipeline).items()
            if sid != "load_config"
        )

    def test_environment_not_privileged(self, make_pipeline, settings, runner):
        probe = EnvironmentProbe(
            settings,
            runner,
            which=lambda cmd: f"/usr/bin/{cmd}",
            geteuid=lambda: 1000,
            disk_usage=lambda path: SimpleNamespace(free=100 * 1024**3),
            module_loaded=lambda name: True,
        )
        pipeline = make_pipeline(environment_probe=probe)
        with pytest.raises(PipelineError) as exc_info:
            pipeline.run()
        assert exc_info.value.stage_id == "check_environment"
        assert exc_info.value.exit_code == ExitCode.PERMISSION
        # nothing destructive happened
        assert not (settings.build_dir / "rootfs").exists()

    def test_build_root_busy(self, make_pipeline, settings, tmp_dir):
        holder = BuildRoot(settings.build_dir, FakeRunner(), mounts_file=tmp_dir / "mounts")
        holder.acquire()
        pipeline = make_pipeline()
        try:
            with pytest.raises(PipelineError) as exc_info:
                pipeline.run()
        finally:
            holder.release()
        assert exc_info.value.stage_id == "load_config"
        assert exc_info.value.exit_code == ExitCode.FAILURE
        assert set(_states(pipeline).values()) == {StageState.BLOCKED}

    def test_interrupt(self, make_pipeline, runner):
        stages = {sid: cls() for sid, cls in STAGE_REGISTRY.items()}
        stages["optimize_system"] = _InterruptedStage()
        pipeline = make_pipeline(stages=stages)

        with pytest.raises(PipelineError) as exc_info:
            pipeline.run()
        err = exc_info.value
        assert err.exit_code == ExitCode.INTERRUPTED
        assert err.stage_id == "optimize_system"

        states = _states(pipeline)
        assert states["extract_base_image"] == StageState.PASSED
        assert states["optimize_system"] == StageState.FAILED
        assert states["install_runtime"] == StageState.BLOCKED
        assert states["verify_build"] == StageState.BLOCKED
        assert not pipeline.build_root.locked

    def test_rerun_after_failure_starts_clean(self, make_pipeline, settings):
        broken = FakeRunner(version_output="k3s version v1.27.1+k3s1 (0000)\n")
        with pytest.raises(PipelineError):
            make_pipeline(runner=broken).run()
        stale = settings.build_dir / "rootfs" / "stale-marker"
        stale.write_text("left over")

        result = make_pipeline().run()
        assert all(o.state == StageState.PASSED for o in result.outcomes)
        assert not stale.exists()

    def test_remove_build_root_on_failure(self, make_pipeline, settings):
        removing = settings.model_copy(update={"remove_build_root_on_failure": True})
        runner = FakeRunner(version_output="k3s version v1.27.1+k3s1 (0000)\n")
        with pytest.raises(PipelineError):
            make_pipeline(runner=runner, settings=removing).run()
        assert not settings.build_dir.exists()

    def test_failure_keeps_build_root_with_live_mounts(self, make_pipeline, settings, tmp_dir):
        removing = settings.model_copy(update={"remove_build_root_on_failure": True})
        runner = FakeRunner(
            {"umount": CommandResult(returncode=32, stderr="target is busy")},
            version_output="k3s version v1.27.1+k3s1 (0000)\n",
        )
        pipeline = make_pipeline(runner=runner, settings=removing)
        mounts = tmp_dir / "mounts"
        mounts.write_text(f"proc {pipeline.build_root.rootfs}/proc proc rw 0 0\n")
        pipeline.build_root._mounts_file = mounts

        with pytest.raises(PipelineError):
            pipeline.run()
        assert (pipeline.build_root.rootfs / "usr/local/bin/k3s").exists()
        assert json.loads(pipeline.report_path.read_text())["status"] == "failed"
        assert not pipeline.build_root.locked


class TestSignals:
    def test_handlers_restored(self, make_pipeline):
        before = signal.getsignal(signal.SIGTERM)
        make_pipeline().run()
        assert signal.getsignal(signal.SIGTERM) is before

    def test_sigint_during_cleanup_is_deferred(self, make_pipeline, monkeypatch):
        pipeline = make_pipeline()
        finish = pipeline._finish
        during = []

        def interrupted_finish(failed, duration):
            signal.raise_signal(signal.SIGINT)
            during.append(signal.getsignal(signal.SIGINT))
            finish(failed, duration)

        monkeypatch.setattr(pipeline, "_finish", interrupted_finish)
        before = signal.getsignal(signal.SIGINT)
        result = pipeline.run()

        assert all(o.state == StageState.PASSED for o in result.outcomes)
        assert during == [_defer_during_cleanup]
        assert json.loads(pipeline.report_path.read_text())["status"] == "passed"
        assert not pipeline.build_root.locked
        assert signal.getsignal(signal.SIGINT) is before
