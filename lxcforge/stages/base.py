"""Abstract base stage with an enforced lifecycle.

Every concrete stage inherits from BaseStage and implements only ``execute()``.
The ``run_stage()`` wrapper is **not overridable**; it enforces the canonical
lifecycle ordering:

    validate_predecessor -> compute_input_hash -> execute
        -> compute_output_hash -> record

so every stage run is hash-recorded regardless of subclass behaviour.
"""

from __future__ import annotations

import abc
import logging
from typing import Any, final

from lxcforge.core.execution import (
    ContextKind,
    ExecutionContext,
    IsolatedContext,
    Operation,
    OperationResult,
)
from lxcforge.core.hasher import compute_input_hash, compute_output_hash
from lxcforge.errors import LxcforgeError, StageError
from lxcforge.models.stages import StageState

logger = logging.getLogger(__name__)


class StagePredecessorError(RuntimeError):
    """Raised when a stage runs before its predecessor passed."""


class BaseStage(abc.ABC):
    """Abstract base for all lxcforge pipeline stages.

    Subclasses **must** implement:
        * ``stage_id``: unique identifier (e.g. ``"optimize_system"``).
        * ``display_name``: human-readable name shown in progress output.
        * ``execute(run_context)``: the stage's core logic.

    Subclasses **must not** override ``run_stage()``.

    ``run_context`` is the run-wide mutable dict the pipeline owns.  Keys
    every stage may rely on: ``run_id``, ``settings``, ``build_root``,
    ``stage_states``, ``stage_definitions``, ``stage_results``.  Later
    stages additionally find ``config``, ``host``, ``execution`` and the
    cached artifact paths written by earlier stages.
    """

    # ------------------------------------------------------------------
    # Abstract interface
    # ------------------------------------------------------------------

    @property
    @abc.abstractmethod
    def stage_id(self) -> str:
        """Unique stage identifier."""
        ...

    @property
    @abc.abstractmethod
    def display_name(self) -> str:
        """Human-readable display name."""
        ...

    @abc.abstractmethod
    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        """Execute the stage's core logic and return a JSON-friendly summary."""
        ...

    # ------------------------------------------------------------------
    # Lifecycle, NOT overridable
    # ------------------------------------------------------------------

    @final
    def run_stage(self, run_context: dict[str, Any]) -> dict[str, Any]:
        """Execute the full stage lifecycle.  **Do not override.**

        Returns the result dict produced by ``execute()``, augmented with
        ``_input_hash`` and ``_output_hash``.

        Raises
        ------
        StageError
            Wrapping any unexpected exception from ``execute()``.  Errors
            that already belong to the lxcforge taxonomy propagate unchanged.
        """
        self.validate_predecessor(run_context)

        input_hash = self._compute_input_hash(run_context)
        logger.debug("%s [%s] input_hash=%s", self.display_name, self.stage_id, input_hash)

        try:
            result = self.execute(run_context)
        except LxcforgeError:
            raise
        except Exception as exc:
            logger.error("%s [%s] execution failed: %s", self.display_name, self.stage_id, exc)
            raise StageError(self.stage_id, f"{type(exc).__name__}: {exc}") from exc

        output_hash = compute_output_hash(
            self.stage_id, {k: v for k, v in result.items() if not k.startswith("_")}
        )
        run_context.setdefault("stage_results", {})[self.stage_id] = result
        result["_input_hash"] = input_hash
        result["_output_hash"] = output_hash
        logger.debug(
            "%s [%s] recorded input=%s output=%s",
            self.display_name,
            self.stage_id,
            input_hash[:12],
            output_hash[:12],
        )
        return result

    @final
    def validate_predecessor(self, run_context: dict[str, Any]) -> None:
        """Ensure the predecessor stage has PASSED."""
        definitions = run_context.get("stage_definitions", {})
        definition = definitions.get(self.stage_id)
        predecessor = definition.predecessor if definition is not None else None
        if predecessor is None:
            return
        state = run_context.get("stage_states", {}).get(predecessor, StageState.NOT_STARTED)
        if state != StageState.PASSED:
            raise StagePredecessorError(
                f"Cannot run {self.stage_id}: {predecessor} is {state.value}"
            )

    @final
    def _compute_input_hash(self, run_context: dict[str, Any]) -> str:
        config = run_context.get("config")
        inputs: dict[str, Any] = {
            "run_id": run_context.get("run_id", ""),
            "config": config.to_document() if config is not None else None,
            "prior_output_hashes": {
                sid: res.get("_output_hash", "")
                for sid, res in run_context.get("stage_results", {}).items()
            },
        }
        return compute_input_hash(self.stage_id, inputs)

    # ------------------------------------------------------------------
    # Helpers for in-root stages
    # ------------------------------------------------------------------

    def run_operations(
        self, run_context: dict[str, Any], operations: list[Operation]
    ) -> list[OperationResult]:
        """Run *operations* in order, in up to two phases.

        The host phase runs the whole list through the host context: file
        actions prepare the root and in-root-only commands are skipped.
        When the run selected an isolated context, the isolated phase then
        runs the same list inside the root, where every command applies.
        File actions are idempotent, so repeating them is harmless.

        Returns the results of the last phase that ran.
        """
        host: ExecutionContext = run_context["host"]
        selected: ExecutionContext = run_context["execution"]

        results = self._run_phase(host, operations)
        if selected.kind is not ContextKind.ISOLATED:
            return results

        if isinstance(selected, IsolatedContext) and not selected.native:
            run_context["build_root"].enter_isolation()
        return self._run_phase(selected, operations)

    def _run_phase(
        self, context: ExecutionContext, operations: list[Operation]
    ) -> list[OperationResult]:
        results: list[OperationResult] = []
        for operation in operations:
            logger.debug(
                "%s [%s]: %s",
                self.stage_id,
                context.kind.value,
                operation.description or operation.name,
            )
            results.append(context.run(operation))
        return results

    @staticmethod
    def summarize(results: list[OperationResult]) -> dict[str, int]:
        return {
            "operations": len(results),
            "executed": sum(1 for r in results if not r.skipped),
            "skipped": sum(1 for r in results if r.skipped),
            "nonzero": sum(1 for r in results if not r.skipped and r.returncode != 0),
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} stage_id={self.stage_id!r}>"
