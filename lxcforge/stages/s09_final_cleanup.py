"""Stage 9: Final Cleanup.

Empties temporary, cache and log directories, applies the configured
cleanup paths and writes ``/etc/lxc-template-info`` describing the build.
"""

from __future__ import annotations

from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Any

import yaml

from lxcforge import __version__
from lxcforge.core import rootfs as fs
from lxcforge.core.execution import Operation
from lxcforge.models.config import BuildConfig
from lxcforge.stages.base import BaseStage

TEMPLATE_INFO = "/etc/lxc-template-info"

# (path, mode) recreated empty at the end of every build
EMPTIED_DIRECTORIES: tuple[tuple[str, int], ...] = (
    ("/tmp", 0o1777),
    ("/var/cache/apk", 0o755),
    ("/var/log", 0o755),
)


def render_template_info(config: BuildConfig, base_version: str, built_at: datetime) -> str:
    t = config.template
    header = (
        f"TEMPLATE_NAME={t.name}\n"
        f"TEMPLATE_VERSION={t.version}\n"
        f"BUILD_DATE={built_at.strftime('%Y-%m-%dT%H:%M:%SZ')}\n"
        f"BASE_IMAGE={t.base_image.distribution}:{base_version}\n"
        f"ARCHITECTURE={t.architecture}\n"
        f"K3S_VERSION={config.runtime.version}\n"
        f"BUILDER=lxcforge {__version__}\n"
    )
    body = yaml.safe_dump(config.to_document(), default_flow_style=False, sort_keys=True)
    commented = "".join(f"# {line}\n" for line in body.splitlines())
    return header + "\n# Resolved build configuration\n" + commented


def _clean(config: BuildConfig, root: Path) -> None:
    if config.build.cleanup_after_install:
        for pattern in config.build.cleanup_paths:
            fs.remove_glob(root, pattern)
    for path, mode in EMPTIED_DIRECTORIES:
        fs.empty_dir(root, path, mode)


def _write_info(content: str, root: Path) -> None:
    fs.write_file(root, TEMPLATE_INFO, content)


class FinalCleanupStage(BaseStage):
    """Stage 9: leave the rootfs clean and self-describing."""

    @property
    def stage_id(self) -> str:
        return "final_cleanup"

    @property
    def display_name(self) -> str:
        return "Final Cleanup"

    def operations(self, config: BuildConfig, info: str) -> list[Operation]:
        return [
            Operation(
                name="apk-cache-clean",
                argv=["/bin/sh", "-c", "apk cache clean 2>/dev/null; true"],
                in_root_only=True,
                check=False,
            ),
            Operation(name="clean-paths", action=partial(_clean, config)),
            Operation(name="template-info", action=partial(_write_info, info)),
        ]

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        config: BuildConfig = run_context["config"]
        base_version = run_context.get(
            "resolved_base_version", config.template.base_image.version_spec
        )
        info = render_template_info(config, base_version, datetime.now(timezone.utc))
        results = self.run_operations(run_context, self.operations(config, info))
        return {**self.summarize(results), "template_info": TEMPLATE_INFO}
