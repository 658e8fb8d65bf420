"""lxcforge data models: all Pydantic v2, all frozen (immutable)."""

from lxcforge.models.artifacts import (
    Artifact,
    CacheKey,
    CacheStats,
    ChecksumSet,
    ImageCacheEntry,
    TemplateManifest,
)
from lxcforge.models.config import (
    BaseImageSpec,
    BuildConfig,
    FirewallRule,
    RuntimeSection,
    TemplateSection,
)
from lxcforge.models.reports import (
    BuildResult,
    CheckCategory,
    CheckResult,
    CheckStatus,
    RootfsStats,
    ValidationReport,
)
from lxcforge.models.stages import (
    DEFAULT_STAGE_DEFINITIONS,
    VALID_TRANSITIONS,
    StageDefinition,
    StageOutcome,
    StageState,
    StageTransition,
)

__all__ = [
    # config
    "BaseImageSpec",
    "BuildConfig",
    "FirewallRule",
    "RuntimeSection",
    "TemplateSection",
    # artifacts
    "Artifact",
    "CacheKey",
    "CacheStats",
    "ChecksumSet",
    "ImageCacheEntry",
    "TemplateManifest",
    # reports
    "BuildResult",
    "CheckCategory",
    "CheckResult",
    "CheckStatus",
    "RootfsStats",
    "ValidationReport",
    # stages
    "DEFAULT_STAGE_DEFINITIONS",
    "VALID_TRANSITIONS",
    "StageDefinition",
    "StageOutcome",
    "StageState",
    "StageTransition",
]
