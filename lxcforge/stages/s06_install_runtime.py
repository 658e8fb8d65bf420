"""Stage 6: Install Runtime.

Installs the K3s binary from the image cache, its companion tool links, its
state directories and its configuration file.
"""

from __future__ import annotations

import logging
import shutil
from functools import partial
from pathlib import Path
from typing import Any

import yaml

from lxcforge.core import rootfs as fs
from lxcforge.core.execution import Operation
from lxcforge.models.config import BuildConfig
from lxcforge.stages.base import BaseStage

logger = logging.getLogger(__name__)

K3S_BINARY = "/usr/local/bin/k3s"
K3S_CONFIG_DIR = "/etc/rancher/k3s"
K3S_CONFIG_FILE = "/etc/rancher/k3s/config.yaml"
K3S_DATA_DIR = "/var/lib/rancher/k3s"
K3S_TOOL_LINKS: tuple[str, ...] = ("kubectl", "crictl", "ctr")

RUNTIME_PACKAGES: tuple[str, ...] = ("iptables", "ip6tables", "ca-certificates")


def options_to_config(options: list[str]) -> dict[str, Any]:
    """Turn ``--flag=value`` command-line options into K3s config-file keys.

    Repeated flags become lists; flags without a value become ``true``.
    """
    config: dict[str, Any] = {}
    for option in options:
        flag, sep, value = option.lstrip("-").partition("=")
        if not flag:
            continue
        parsed: Any = value if sep else True
        if flag in config:
            existing = config[flag]
            config[flag] = (existing if isinstance(existing, list) else [existing]) + [parsed]
        else:
            config[flag] = parsed
    # K3s expects list-valued options like ``disable`` as lists.
    if isinstance(config.get("disable"), str):
        config["disable"] = [config["disable"]]
    return config


def render_k3s_config(config: BuildConfig) -> str:
    runtime = config.runtime
    document: dict[str, Any] = {}
    if runtime.cluster_init:
        document["cluster-init"] = True
    document.update(options_to_config(runtime.install_options + runtime.server_options))
    return yaml.safe_dump(document, default_flow_style=False, sort_keys=True)


def _install_binary(source: Path, root: Path) -> None:
    target = fs.in_root(root, K3S_BINARY)
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, target)
    target.chmod(0o755)
    for tool in K3S_TOOL_LINKS:
        fs.symlink(root, f"/usr/local/bin/{tool}", "k3s")


def _install_layout(content: str, root: Path) -> None:
    fs.ensure_dir(root, K3S_CONFIG_DIR)
    fs.ensure_dir(root, K3S_DATA_DIR)
    fs.write_file(root, K3S_CONFIG_FILE, content, mode=0o600)


class InstallRuntimeStage(BaseStage):
    """Stage 6: install the K3s runtime into the rootfs."""

    @property
    def stage_id(self) -> str:
        return "install_runtime"

    @property
    def display_name(self) -> str:
        return "Install Runtime"

    def operations(self, config: BuildConfig, binary: Path) -> list[Operation]:
        return [
            Operation(
                name="apk-add-runtime-deps",
                argv=["apk", "add", "--no-cache", *RUNTIME_PACKAGES],
                in_root_only=True,
                description="install runtime dependencies",
            ),
            Operation(
                name="install-k3s-binary",
                action=partial(_install_binary, binary),
                description=f"copy K3s to {K3S_BINARY}",
            ),
            Operation(
                name="k3s-config",
                action=partial(_install_layout, render_k3s_config(config)),
                description=f"write {K3S_CONFIG_FILE}",
            ),
        ]

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        config: BuildConfig = run_context["config"]
        binary: Path = run_context["runtime_binary_path"]
        results = self.run_operations(run_context, self.operations(config, binary))
        logger.info("Installed K3s %s at %s", config.runtime.version, K3S_BINARY)
        return {
            **self.summarize(results),
            "binary": K3S_BINARY,
            "config_file": K3S_CONFIG_FILE,
            "runtime_version": config.runtime.version,
        }
