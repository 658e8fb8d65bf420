"""Build pipeline: the central coordinator for one template build.

The BuildPipeline wires together the settings, the BuildRoot guard, the
ImageCache, the StageMachine and the execution-context probes into a single
run.  It delegates each step to the registered stage and enforces:

- strict linear order (a stage starts only after its predecessor passed)
- cascade blocking of every later stage on failure or interruption
- one idempotent cleanup on every exit path
- a single ``PipelineError`` at the boundary, carrying the failing stage,
  the cause, its diagnostic context and its exit code
"""

from __future__ import annotations

import json
import logging
import signal
import threading
import time
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from lxcforge.config import BuilderSettings
from lxcforge.core.build_root import BuildRoot
from lxcforge.core.config_resolver import ConfigResolver
from lxcforge.core.environment import EnvironmentProbe
from lxcforge.core.execution import CommandRunner, ContextProbe, SubprocessRunner
from lxcforge.core.image_cache import ImageCache
from lxcforge.core.release_source import ReleaseSource
from lxcforge.core.stage_machine import StageMachine
from lxcforge.errors import BuildEnvironmentError, ExitCode, LxcforgeError, PipelineError
from lxcforge.models.config import BuildConfig
from lxcforge.models.reports import BuildResult, RootfsStats
from lxcforge.models.stages import DEFAULT_STAGE_DEFINITIONS, StageOutcome, StageState
from lxcforge.stages import STAGE_REGISTRY
from lxcforge.stages.base import BaseStage

logger = logging.getLogger(__name__)

REPORT_FILENAME = "build-report.json"


class BuildInterrupted(BaseException):
    """Raised from the signal handler when the build receives SIGINT/SIGTERM."""

    def __init__(self, signum: int) -> None:
        super().__init__(signal.Signals(signum).name)
        self.signum = signum


def _raise_interrupted(signum: int, frame: Any) -> None:
    raise BuildInterrupted(signum)


def _defer_during_cleanup(signum: int, frame: Any) -> None:
    logger.warning(
        "%s received during cleanup; finishing cleanup first", signal.Signals(signum).name
    )


class BuildPipeline:
    """Runs the fixed stage sequence against one build directory.

    Parameters
    ----------
    config_source:
        A ``BuildConfig``, a path to a YAML document or an in-memory mapping.
        Defaults to ``settings.config_file``.
    overrides:
        Dotted-key overrides applied on top of the source.
    settings:
        Builder settings.  Uses the environment if not provided.
    build_dir:
        The build directory.  Defaults to ``settings.build_dir``.
    image_cache, sources:
        A ready ImageCache, or the release sources to build one with.
    runner:
        Command runner shared by every component.
    environment_probe, context_probe:
        Injectable host checks (used by tests to run without root).
    stages:
        Stage instances keyed by stage id.  Defaults to the registry.
    """

    def __init__(
        self,
        config_source: BuildConfig | Path | str | Mapping[str, Any] | None = None,
        *,
        overrides: Mapping[str, Any] | None = None,
        settings: BuilderSettings | None = None,
        build_dir: Path | None = None,
        image_cache: ImageCache | None = None,
        sources: dict[str, ReleaseSource] | None = None,
        runner: CommandRunner | None = None,
        environment_probe: EnvironmentProbe | None = None,
        context_probe: Callable[[Path], ContextProbe] | None = None,
        resolver: ConfigResolver | None = None,
        stages: dict[str, BaseStage] | None = None,
        run_id: str | None = None,
    ) -> None:
        self.settings = settings or BuilderSettings()
        self.config_source = config_source if config_source is not None else self.settings.config_file
        self.overrides = dict(overrides or {})
        self.runner: CommandRunner = runner or SubprocessRunner()

        self.build_root = BuildRoot(build_dir or self.settings.build_dir, self.runner)
        self.image_cache = image_cache or ImageCache(
            self.settings.cache_dir, sources, self.settings
        )
        self.stage_machine = StageMachine(DEFAULT_STAGE_DEFINITIONS)
        self.stages: dict[str, BaseStage] = stages or {
            sid: cls() for sid, cls in STAGE_REGISTRY.items()
        }
        self._environment_probe = environment_probe
        self._context_probe = context_probe
        self._resolver = resolver or ConfigResolver()

        ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        self.run_id = run_id or f"lx-{ts}-{uuid.uuid4().hex[:6]}"
        self.run_context: dict[str, Any] = {}
        self._outcomes: dict[str, StageOutcome] = {}

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def run(self) -> BuildResult:
        """Execute every stage in order and return the BuildResult.

        Raises
        ------
        PipelineError
            On any stage failure or interruption, after cleanup has run.
        """
        started = time.monotonic()
        self.stage_machine.reset()
        self._outcomes = {}
        self.run_context = self._initial_context()
        current = self.stage_machine.stage_ids[0]
        failed = True
        previous_handlers = self._install_signal_handlers()
        try:
            try:
                self.build_root.acquire()
            except LxcforgeError as exc:
                self.stage_machine.block_remaining(current, str(exc))
                raise PipelineError(current, exc.detail, cause=exc) from exc

            for stage_id in self.stage_machine.stage_ids:
                current = stage_id
                self._run_stage(stage_id)
            failed = False
        except BuildInterrupted as exc:
            raise self._interrupted(current, exc.args[0]) from None
        except KeyboardInterrupt:
            raise self._interrupted(current, "SIGINT") from None
        finally:
            if previous_handlers:
                self._install_signal_handlers(_defer_during_cleanup)
            try:
                self._finish(failed, time.monotonic() - started)
            finally:
                self._restore_signal_handlers(previous_handlers)

        result = self._result(time.monotonic() - started)
        logger.info(
            "Build %s finished in %.1fs (%s)",
            result.template,
            result.duration_seconds,
            result.context_kind,
        )
        return result

    def cleanup(self) -> None:
        """Unmount and remove transient paths.  Safe to call any number of times."""
        self.build_root.cleanup()

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------

    def _run_stage(self, stage_id: str) -> None:
        definition = self.stage_machine.definition(stage_id)
        stage = self.stages[stage_id]
        index, total = self.stage_machine.position(stage_id)
        logger.info(
            "[%d/%d] (%d%%) %s", index, total, int(index * 100 / total), definition.display_name
        )

        self.stage_machine.transition(stage_id, StageState.RUNNING)
        self.run_context["stage_states"] = self.stage_machine.get_all_states()
        started = time.monotonic()
        try:
            result = stage.run_stage(self.run_context)
        except Exception as exc:
            duration = time.monotonic() - started
            self.stage_machine.transition(stage_id, StageState.FAILED, reason=str(exc))
            self._record(stage_id, StageState.FAILED, duration, error=str(exc))
            logger.error("%s failed after %.1fs: %s", definition.display_name, duration, exc)
            detail = exc.detail if isinstance(exc, LxcforgeError) else f"{type(exc).__name__}: {exc}"
            raise PipelineError(
                stage_id,
                detail,
                cause=exc,
                context=self._diagnostics(),
            ) from exc

        duration = time.monotonic() - started
        self.stage_machine.transition(stage_id, StageState.PASSED)
        self.run_context["stage_states"] = self.stage_machine.get_all_states()
        self._record(stage_id, StageState.PASSED, duration, result=result)
        logger.debug("%s passed in %.1fs", definition.display_name, duration)

    def _interrupted(self, stage_id: str, signal_name: str) -> PipelineError:
        logger.warning("Build interrupted by %s during %s", signal_name, stage_id)
        if self.stage_machine.get_state(stage_id) is StageState.RUNNING:
            self.stage_machine.transition(
                stage_id, StageState.FAILED, reason=f"interrupted by {signal_name}"
            )
            self._record(stage_id, StageState.FAILED, 0.0, error=f"interrupted by {signal_name}")
        self.stage_machine.block_remaining(stage_id, "build interrupted")
        return PipelineError(
            stage_id,
            f"interrupted by {signal_name}",
            exit_code=ExitCode.INTERRUPTED,
            context=self._diagnostics(),
        )

    def _record(
        self,
        stage_id: str,
        state: StageState,
        duration: float,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        result = result or {}
        self._outcomes[stage_id] = StageOutcome(
            stage_id=stage_id,
            display_name=self.stage_machine.definition(stage_id).display_name,
            state=state,
            duration_seconds=round(duration, 3),
            input_hash=result.get("_input_hash", ""),
            output_hash=result.get("_output_hash", ""),
            summary={k: v for k, v in result.items() if not k.startswith("_")},
            error=error,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def outcomes(self) -> list[StageOutcome]:
        """One outcome per stage, in pipeline order."""
        states = self.stage_machine.get_all_states()
        outcomes: list[StageOutcome] = []
        for definition in DEFAULT_STAGE_DEFINITIONS:
            recorded = self._outcomes.get(definition.stage_id)
            if recorded is not None:
                outcomes.append(recorded)
            else:
                outcomes.append(
                    StageOutcome(
                        stage_id=definition.stage_id,
                        display_name=definition.display_name,
                        state=states[definition.stage_id],
                    )
                )
        return outcomes

    def get_states(self) -> dict[str, StageState]:
        return self.stage_machine.get_all_states()

    @property
    def report_path(self) -> Path:
        return self.build_root.build_dir / REPORT_FILENAME

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _initial_context(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "settings": self.settings,
            "build_root": self.build_root,
            "image_cache": self.image_cache,
            "runner": self.runner,
            "resolver": self._resolver,
            "environment_probe": self._environment_probe,
            "context_probe": self._context_probe,
            "config_source": self.config_source,
            "overrides": self.overrides,
            "stage_definitions": {d.stage_id: d for d in DEFAULT_STAGE_DEFINITIONS},
            "stage_states": self.stage_machine.get_all_states(),
            "stage_results": {},
        }

    def _diagnostics(self) -> dict[str, Any]:
        ctx: dict[str, Any] = {"run_id": self.run_id, "build_dir": str(self.build_root.build_dir)}
        config: BuildConfig | None = self.run_context.get("config")
        if config is not None:
            ctx["template"] = config.artifact_stem
            ctx["runtime_version"] = config.runtime.version
        if "resolved_base_version" in self.run_context:
            ctx["base_version"] = self.run_context["resolved_base_version"]
        return ctx

    def _finish(self, failed: bool, duration: float) -> None:
        try:
            self.cleanup()
            if self.build_root.build_dir.exists():
                self._write_report(failed, duration)
            if (
                failed
                and self.settings.remove_build_root_on_failure
                and self.build_root.build_dir.exists()
            ):
                logger.info("Removing build directory %s after failure", self.build_root.build_dir)
                try:
                    self.build_root.remove()
                except (BuildEnvironmentError, OSError) as exc:
                    logger.error("Keeping build directory: %s", exc)
        finally:
            self.build_root.release()

    def _write_report(self, failed: bool, duration: float) -> None:
        config: BuildConfig | None = self.run_context.get("config")
        execution = self.run_context.get("execution")
        stats: RootfsStats | None = self.run_context.get("rootfs_stats")
        report = {
            "run_id": self.run_id,
            "status": "failed" if failed else "passed",
            "template": config.artifact_stem if config is not None else None,
            "base_image": self.run_context.get("resolved_base_version"),
            "runtime_version": config.runtime.version if config is not None else None,
            "context": execution.kind.value if execution is not None else None,
            "duration_seconds": round(duration, 3),
            "rootfs": stats.model_dump() if stats is not None else None,
            "stages": [o.model_dump(mode="json") for o in self.outcomes],
            "transitions": [t.model_dump(mode="json") for t in self.stage_machine.history],
        }
        self.report_path.write_text(
            json.dumps(report, indent=2, sort_keys=True, default=str) + "\n", encoding="utf-8"
        )
        logger.debug("Wrote build report %s", self.report_path)

    def _result(self, duration: float) -> BuildResult:
        config: BuildConfig = self.run_context["config"]
        return BuildResult(
            run_id=self.run_id,
            template=config.artifact_stem,
            build_dir=self.build_root.build_dir,
            rootfs=self.build_root.rootfs,
            outcomes=self.outcomes,
            stats=self.run_context.get("rootfs_stats") or RootfsStats(),
            context_kind=self.run_context["execution"].kind.value,
            duration_seconds=round(duration, 3),
        )

    @staticmethod
    def _install_signal_handlers(
        handler: Callable[[int, Any], None] = _raise_interrupted,
    ) -> dict[int, Any]:
        # signal.signal only works from the main thread
        if threading.current_thread() is not threading.main_thread():
            return {}
        previous: dict[int, Any] = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, handler)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: dict[int, Any]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
