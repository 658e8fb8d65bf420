"""Stage 5: Optimize System.

Installs and removes packages, sets timezone and locale, writes the network
and kernel tuning files K3s needs, and strips documentation and caches.
Individual package failures are logged as warnings and do not abort the
build.
"""

from __future__ import annotations

import logging
import shlex
from functools import partial
from pathlib import Path
from typing import Any

from lxcforge.core import rootfs as fs
from lxcforge.core.execution import Operation
from lxcforge.models.config import BuildConfig
from lxcforge.stages.base import BaseStage

logger = logging.getLogger(__name__)

HOSTNAME = "alpine-k3s"

# Base services that serve no purpose inside a K3s container.
UNNEEDED_SERVICES: tuple[str, ...] = ("acpid", "crond")

K3S_SYSCTL = """\
# Kubernetes networking and stability
net.bridge.bridge-nf-call-iptables = 1
net.bridge.bridge-nf-call-ip6tables = 1
net.ipv4.ip_forward = 1
vm.overcommit_memory = 1
kernel.panic = 10
kernel.panic_on_oops = 1
"""

K3S_MODULES = """\
br_netfilter
overlay
iptable_nat
iptable_filter
"""

DOC_PATHS: tuple[str, ...] = (
    "/usr/share/man/*",
    "/usr/share/doc/*",
    "/usr/share/info/*",
)

CACHE_PATHS: tuple[str, ...] = (
    "/var/cache/misc/*",
    "/var/tmp/*",
)


def render_resolv_conf(dns_servers: list[str], search_domains: list[str]) -> str:
    lines = [f"nameserver {server}" for server in dns_servers]
    if search_domains:
        lines.append("search " + " ".join(search_domains))
    return "\n".join(lines) + "\n"


def render_hosts(hostname: str) -> str:
    return (
        "127.0.0.1\tlocalhost localhost.localdomain\n"
        "::1\t\tlocalhost localhost.localdomain\n"
        f"127.0.1.1\t{hostname}\n"
    )


def _set_timezone(timezone: str, root: Path) -> None:
    fs.symlink(root, "/etc/localtime", f"/usr/share/zoneinfo/{timezone}")
    fs.write_file(root, "/etc/timezone", f"{timezone}\n")


def _set_locale(locale: str, root: Path) -> None:
    fs.write_file(
        root,
        "/etc/profile.d/locale.sh",
        f"export LANG={locale}\nexport LC_ALL={locale}\n",
    )


def _write(path: str, content: str, root: Path) -> None:
    fs.write_file(root, path, content)


def _remove_globs(patterns: tuple[str, ...], root: Path) -> None:
    removed = sum(fs.remove_glob(root, pattern) for pattern in patterns)
    logger.debug("Removed %d entries matching %s", removed, ", ".join(patterns))


def package_operations(config: BuildConfig) -> list[Operation]:
    """apk operations for the configured install and remove lists."""
    ops = [
        Operation(
            name="apk-update",
            argv=["apk", "update"],
            in_root_only=True,
            check=False,
            description="refresh package index",
        )
    ]
    for package in config.system.packages:
        ops.append(
            Operation(
                name=f"apk-add-{package}",
                argv=["apk", "add", "--no-cache", package],
                in_root_only=True,
                check=False,
                description=f"install {package}",
            )
        )
    for package in config.system.remove_packages:
        quoted = shlex.quote(package)
        ops.append(
            Operation(
                name=f"apk-del-{package}",
                argv=[
                    "/bin/sh",
                    "-c",
                    f"if apk info -e {quoted} >/dev/null 2>&1; then apk del {quoted}; fi",
                ],
                in_root_only=True,
                check=False,
                description=f"remove {package} if installed",
            )
        )
    return ops


class OptimizeSystemStage(BaseStage):
    """Stage 5: tune the base system for a K3s container."""

    @property
    def stage_id(self) -> str:
        return "optimize_system"

    @property
    def display_name(self) -> str:
        return "Optimize System"

    def operations(self, config: BuildConfig) -> list[Operation]:
        net = config.network
        ops: list[Operation] = [
            # Name resolution first so apk can reach its mirrors
            Operation(
                name="resolv-conf",
                action=partial(
                    _write,
                    "/etc/resolv.conf",
                    render_resolv_conf(net.dns_servers, net.search_domains),
                ),
            ),
            *package_operations(config),
            Operation(name="timezone", action=partial(_set_timezone, config.system.timezone)),
            Operation(name="locale", action=partial(_set_locale, config.system.locale)),
            Operation(name="hostname", action=partial(_write, "/etc/hostname", f"{HOSTNAME}\n")),
            Operation(name="hosts", action=partial(_write, "/etc/hosts", render_hosts(HOSTNAME))),
            Operation(
                name="sysctl-k3s",
                action=partial(_write, "/etc/sysctl.d/99-k3s.conf", K3S_SYSCTL),
            ),
            Operation(
                name="modules-load-k3s",
                action=partial(_write, "/etc/modules-load.d/k3s.conf", K3S_MODULES),
            ),
        ]
        for service in UNNEEDED_SERVICES:
            ops.append(
                Operation(
                    name=f"disable-{service}",
                    argv=["rc-update", "del", service, "default"],
                    in_root_only=True,
                    check=False,
                )
            )
        if not config.build.include_docs:
            ops.append(Operation(name="strip-docs", action=partial(_remove_globs, DOC_PATHS)))
        ops.append(Operation(name="clean-caches", action=partial(_remove_globs, CACHE_PATHS)))
        if config.build.optimize_size:
            ops.append(
                Operation(
                    name="strip-binaries",
                    argv=[
                        "/bin/sh",
                        "-c",
                        "command -v strip >/dev/null 2>&1 && "
                        "find /usr/bin /usr/sbin /usr/lib -type f -perm -u+x "
                        "-exec strip --strip-unneeded {} + 2>/dev/null; true",
                    ],
                    in_root_only=True,
                    check=False,
                    description="strip debug symbols",
                )
            )
        return ops

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        config: BuildConfig = run_context["config"]
        results = self.run_operations(run_context, self.operations(config))
        failed = [
            r.name for r in results if r.name.startswith("apk-add-") and not r.skipped and not r.ok
        ]
        for name in failed:
            logger.warning("Package install failed: %s", name.removeprefix("apk-add-"))
        return {**self.summarize(results), "failed_packages": failed}
