"""Stage 7: Configure Runtime Service.

Writes the OpenRC service for K3s and its conf.d defaults, then enables and
disables services as configured.
"""

from __future__ import annotations

import shlex
from functools import partial
from pathlib import Path
from typing import Any

from lxcforge.core import rootfs as fs
from lxcforge.core.execution import Operation
from lxcforge.models.config import BuildConfig
from lxcforge.stages.base import BaseStage

SERVICE_SCRIPT = "/etc/init.d/k3s"
SERVICE_DEFAULTS = "/etc/conf.d/k3s"

OPENRC_SERVICE = """\
#!/sbin/openrc-run

depend() {
    after network-online
    want cgroups
}

start_pre() {
    rm -f /tmp/k3s.*
}

supervisor=supervise-daemon
name=k3s
command="/usr/local/bin/k3s"
command_args="${K3S_EXEC:-server} ${K3S_OPTS}"
output_log="/var/log/k3s.log"
error_log="/var/log/k3s.log"

pidfile="/var/run/k3s.pid"
respawn_delay=5
respawn_max=0

set -o allexport
if [ -f /etc/environment ]; then . /etc/environment; fi
if [ -f /etc/conf.d/k3s ]; then . /etc/conf.d/k3s; fi
set +o allexport
"""


def render_service_defaults(config: BuildConfig) -> str:
    agent = " ".join(shlex.quote(o) for o in config.runtime.agent_options)
    return (
        "# K3s service defaults; server options live in /etc/rancher/k3s/config.yaml\n"
        'K3S_EXEC="server"\n'
        'K3S_OPTS=""\n'
        f"K3S_AGENT_OPTS={shlex.quote(agent)}\n"
    )


def _write_service(defaults: str, root: Path) -> None:
    fs.write_file(root, SERVICE_SCRIPT, OPENRC_SERVICE, mode=0o755)
    fs.write_file(root, SERVICE_DEFAULTS, defaults)


class ConfigureRuntimeServiceStage(BaseStage):
    """Stage 7: register K3s with the init system."""

    @property
    def stage_id(self) -> str:
        return "configure_runtime_service"

    @property
    def display_name(self) -> str:
        return "Configure Runtime Service"

    def operations(self, config: BuildConfig) -> list[Operation]:
        ops = [
            Operation(
                name="k3s-service",
                action=partial(_write_service, render_service_defaults(config)),
                description=f"write {SERVICE_SCRIPT}",
            )
        ]
        for service in config.system.services.enable:
            ops.append(
                Operation(
                    name=f"enable-{service}",
                    argv=["rc-update", "add", service, "default"],
                    in_root_only=True,
                )
            )
        for service in config.system.services.disable:
            ops.append(
                Operation(
                    name=f"disable-{service}",
                    argv=["rc-update", "del", service],
                    in_root_only=True,
                    check=False,
                )
            )
        return ops

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        config: BuildConfig = run_context["config"]
        results = self.run_operations(run_context, self.operations(config))
        return {
            **self.summarize(results),
            "enabled": list(config.system.services.enable),
            "disabled": list(config.system.services.disable),
        }
