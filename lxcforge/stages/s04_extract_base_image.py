"""Stage 4: Extract Base Image.

Unpacks the cached base image into the rootfs and checks that it looks like
a root filesystem.  Once the rootfs exists, the execution context for the
rest of the run is selected.
"""

from __future__ import annotations

import logging
import tarfile
from pathlib import Path
from typing import Any

from lxcforge.core import rootfs as fs
from lxcforge.core.build_root import BuildRoot
from lxcforge.core.execution import ContextKind, HostContext, create_context, probe
from lxcforge.errors import StageError
from lxcforge.stages.base import BaseStage

logger = logging.getLogger(__name__)

REQUIRED_DIRECTORIES: tuple[str, ...] = ("bin", "etc", "lib", "sbin", "usr", "var")


class ExtractBaseImageStage(BaseStage):
    """Stage 4: extract the base image and select the execution context."""

    @property
    def stage_id(self) -> str:
        return "extract_base_image"

    @property
    def display_name(self) -> str:
        return "Extract Base Image"

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        build_root: BuildRoot = run_context["build_root"]
        image: Path = run_context["base_image_path"]
        rootfs = build_root.rootfs

        try:
            member_count = fs.extract_archive(image, rootfs)
        except (tarfile.TarError, OSError, ValueError) as exc:
            raise StageError(
                self.stage_id,
                f"cannot extract base image {image.name}: {exc}",
                context={"image": str(image)},
            ) from exc

        missing = [d for d in REQUIRED_DIRECTORIES if not (rootfs / d).is_dir()]
        if missing:
            raise StageError(
                self.stage_id,
                f"base image {image.name} is not a root filesystem; missing: {', '.join(missing)}",
                context={"image": str(image), "missing": missing},
            )
        logger.info("Extracted %d entries from %s", member_count, image.name)

        # Select the execution context once for the rest of the run.
        probe_fn = run_context.get("context_probe") or probe
        found = probe_fn(rootfs)
        runner = run_context.get("runner")
        run_context["host"] = HostContext(rootfs, runner)
        run_context["execution"] = create_context(found.kind, rootfs, runner, native=found.native)
        if found.kind is ContextKind.HOST:
            logger.warning(
                "Isolated execution unavailable (%s); in-root operations will be skipped",
                "; ".join(found.reasons),
            )
        else:
            logger.info(
                "Using isolated execution (%s)", "native" if found.native else "chroot"
            )

        return {
            "entries": member_count,
            "context": found.kind.value,
            "native": found.native,
        }
