"""Error taxonomy shared by every lxcforge component.

Every error carries the component that raised it, a human-readable detail,
a small diagnostic ``context`` mapping (versions, paths) and the process
exit code the CLI should use when the error reaches the top level.

Errors that are purely local to one module (``InvalidTransitionError``,
``RetryExhaustedError``) live beside the code that raises them.
"""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Any


class ExitCode(IntEnum):
    """Process exit codes used by the CLI."""

    SUCCESS = 0
    FAILURE = 1
    BAD_ARGUMENTS = 2
    BAD_CONFIG = 3
    NETWORK = 4
    PERMISSION = 5
    RESOURCES = 6
    INTERRUPTED = 130


class LxcforgeError(RuntimeError):
    """Base class for all lxcforge errors.

    Parameters
    ----------
    detail:
        Human-readable cause.
    component:
        Name of the component that raised the error.
    context:
        Minimal diagnostic context (versions, paths, return codes).
    """

    component: str = "lxcforge"
    exit_code: ExitCode = ExitCode.FAILURE

    def __init__(
        self,
        detail: str,
        *,
        component: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        if component is not None:
            self.component = component
        self.context: dict[str, Any] = dict(context or {})

    def __str__(self) -> str:
        return f"[{self.component}] {self.detail}"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigErrorReason(str, Enum):
    MISSING_FIELD = "missing_field"
    INVALID_FORMAT = "invalid_format"
    UNREADABLE = "unreadable"
    PARSE_ERROR = "parse_error"


class ConfigError(LxcforgeError):
    """Raised when a build configuration cannot be resolved."""

    component = "config"
    exit_code = ExitCode.BAD_CONFIG

    def __init__(
        self,
        reason: ConfigErrorReason,
        detail: str,
        *,
        field: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = dict(context or {})
        if field is not None:
            ctx.setdefault("field", field)
        super().__init__(detail, context=ctx)
        self.reason = reason
        self.field = field


# ---------------------------------------------------------------------------
# Image fetching
# ---------------------------------------------------------------------------


class FetchErrorReason(str, Enum):
    NETWORK_EXHAUSTED = "network_exhausted"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    NOT_FOUND = "not_found"


class FetchError(LxcforgeError):
    """Raised when an image or binary cannot be fetched into the cache."""

    component = "image_cache"
    exit_code = ExitCode.NETWORK

    def __init__(
        self,
        reason: FetchErrorReason,
        detail: str,
        *,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(detail, context=context)
        self.reason = reason


# ---------------------------------------------------------------------------
# Build environment
# ---------------------------------------------------------------------------


class EnvironmentErrorReason(str, Enum):
    INSUFFICIENT_PRIVILEGE = "insufficient_privilege"
    INSUFFICIENT_DISK = "insufficient_disk"
    MISSING_CAPABILITY = "missing_capability"
    BUILD_ROOT_BUSY = "build_root_busy"


_ENVIRONMENT_EXIT_CODES: dict[EnvironmentErrorReason, ExitCode] = {
    EnvironmentErrorReason.INSUFFICIENT_PRIVILEGE: ExitCode.PERMISSION,
    EnvironmentErrorReason.INSUFFICIENT_DISK: ExitCode.RESOURCES,
    EnvironmentErrorReason.MISSING_CAPABILITY: ExitCode.RESOURCES,
    EnvironmentErrorReason.BUILD_ROOT_BUSY: ExitCode.FAILURE,
}


class BuildEnvironmentError(LxcforgeError):
    """Raised when the host cannot run a build.

    ``reasons`` lists every violated requirement; ``reason`` is the most
    severe one and decides the exit code.
    """

    component = "environment"

    def __init__(
        self,
        reasons: list[EnvironmentErrorReason] | EnvironmentErrorReason,
        detail: str,
        *,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(detail, context=context)
        if isinstance(reasons, EnvironmentErrorReason):
            reasons = [reasons]
        self.reasons = list(reasons)
        self.reason = self.reasons[0]
        self.exit_code = _ENVIRONMENT_EXIT_CODES[self.reason]


# ---------------------------------------------------------------------------
# Stages, packaging, validation
# ---------------------------------------------------------------------------


class StageError(LxcforgeError):
    """Raised when a pipeline stage cannot complete."""

    component = "pipeline"

    def __init__(
        self,
        stage_id: str,
        detail: str,
        *,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(detail, context=context)
        self.stage_id = stage_id

    def __str__(self) -> str:
        return f"[{self.stage_id}] {self.detail}"


class PackagingError(LxcforgeError):
    """Raised when the packager cannot produce an artifact."""

    component = "packager"


class ArtifactValidationError(LxcforgeError):
    """Raised by callers that require a releasable validation report."""

    component = "validator"


class PipelineError(LxcforgeError):
    """Raised at the pipeline boundary after cleanup has run.

    Carries the failing stage id and the underlying cause; the exit code is
    inherited from the cause so the CLI can report it unchanged.
    """

    component = "pipeline"

    def __init__(
        self,
        stage_id: str,
        detail: str,
        *,
        cause: BaseException | None = None,
        exit_code: ExitCode | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx: dict[str, Any] = {}
        if isinstance(cause, LxcforgeError):
            ctx.update(cause.context)
        ctx.update(context or {})
        super().__init__(detail, context=ctx)
        self.stage_id = stage_id
        self.cause = cause
        if exit_code is not None:
            self.exit_code = exit_code
        elif isinstance(cause, LxcforgeError):
            self.exit_code = cause.exit_code

    def __str__(self) -> str:
        return f"Build failed at stage '{self.stage_id}': {self.detail}"
