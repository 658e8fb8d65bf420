"""Validation and build report models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from lxcforge.errors import ArtifactValidationError
from lxcforge.models.stages import StageOutcome


class CheckStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    INFO = "info"


class CheckCategory(str, Enum):
    INTEGRITY = "integrity"
    METADATA = "metadata"
    STRUCTURE = "structure"
    FUNCTIONAL = "functional"
    PERFORMANCE = "performance"


class CheckResult(BaseModel):
    """Outcome of one validator check."""

    model_config = ConfigDict(frozen=True)

    name: str
    category: CheckCategory
    status: CheckStatus
    detail: str = ""
    duration_seconds: float = 0.0
    data: dict[str, Any] = Field(default_factory=dict)


class ValidationReport(BaseModel):
    """Ordered validator results for one artifact.

    An artifact is releasable only when no check failed; skipped and
    informational checks do not count against it.
    """

    model_config = ConfigDict(frozen=True)

    artifact: Path
    checks: list[CheckResult] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    duration_seconds: float = 0.0

    def count(self, status: CheckStatus) -> int:
        return sum(1 for c in self.checks if c.status == status)

    @property
    def passed(self) -> int:
        return self.count(CheckStatus.PASSED)

    @property
    def failed(self) -> int:
        return self.count(CheckStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self.count(CheckStatus.SKIPPED)

    @property
    def releasable(self) -> bool:
        return self.failed == 0

    def get(self, name: str) -> CheckResult | None:
        """Return the check called *name*, if it ran."""
        for check in self.checks:
            if check.name == name:
                return check
        return None

    def require_releasable(self) -> None:
        """Raise ``ArtifactValidationError`` unless every check passed or was skipped."""
        if self.releasable:
            return
        failing = [c.name for c in self.checks if c.status == CheckStatus.FAILED]
        raise ArtifactValidationError(
            f"artifact {self.artifact.name} failed {len(failing)} check(s): "
            + ", ".join(failing),
            context={"artifact": str(self.artifact), "failed": failing},
        )

    def summary(self) -> dict[str, Any]:
        return {
            "total": len(self.checks),
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "info": self.count(CheckStatus.INFO),
            "releasable": self.releasable,
        }


class RootfsStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    size_bytes: int = 0
    file_count: int = 0
    directory_count: int = 0
    executable_count: int = 0


class BuildResult(BaseModel):
    """Everything a successful pipeline run produced."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    template: str
    build_dir: Path
    rootfs: Path
    outcomes: list[StageOutcome] = Field(default_factory=list)
    stats: RootfsStats = Field(default_factory=RootfsStats)
    context_kind: str = ""
    duration_seconds: float = 0.0
