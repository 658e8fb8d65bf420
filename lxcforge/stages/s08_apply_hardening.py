"""Stage 8: Apply Hardening.

Kernel and network hardening, password policy, the unprivileged runtime
user, the persistent firewall ruleset and filesystem permissions.  The
firewall is rendered to ``/etc/iptables/rules-save`` and restored at boot
by an OpenRC service; it is never applied to the build host.  Package
removal runs last, once nothing else needs the package manager.
"""

from __future__ import annotations

import logging
import shlex
import stat
from functools import partial
from pathlib import Path
from typing import Any

from lxcforge.core import rootfs as fs
from lxcforge.core.execution import Operation
from lxcforge.models.config import BuildConfig, FirewallRule
from lxcforge.stages.base import BaseStage
from lxcforge.stages.s05_optimize_system import render_resolv_conf

logger = logging.getLogger(__name__)

MODULE_BLACKLIST = """\
# Rarely used network protocols
install dccp /bin/true
install sctp /bin/true
install rds /bin/true
install tipc /bin/true
"""

SECURITY_SYSCTL = """\
# Network hardening
net.ipv4.ip_forward = 1
net.ipv4.conf.all.send_redirects = 0
net.ipv4.conf.default.send_redirects = 0
net.ipv4.conf.all.accept_redirects = 0
net.ipv4.conf.default.accept_redirects = 0
net.ipv4.conf.all.accept_source_route = 0
net.ipv4.conf.default.accept_source_route = 0
net.ipv4.conf.all.log_martians = 1
net.ipv4.conf.default.log_martians = 1
net.ipv4.icmp_echo_ignore_broadcasts = 1
net.ipv4.icmp_ignore_bogus_error_responses = 1
net.ipv4.tcp_syncookies = 1
net.ipv6.conf.all.accept_redirects = 0
net.ipv6.conf.default.accept_redirects = 0
net.ipv6.conf.all.accept_source_route = 0
net.ipv6.conf.default.accept_source_route = 0

# Memory protection
kernel.dmesg_restrict = 1
kernel.kptr_restrict = 2
kernel.yama.ptrace_scope = 1

# Filesystem protection
fs.protected_hardlinks = 1
fs.protected_symlinks = 1
fs.suid_dumpable = 0
"""

DISABLE_IPV6_SYSCTL = """\

# IPv6 disabled by network policy
net.ipv6.conf.all.disable_ipv6 = 1
net.ipv6.conf.default.disable_ipv6 = 1
"""

PASSWORD_POLICY: dict[str, str] = {
    "PASS_MAX_DAYS": "90",
    "PASS_MIN_DAYS": "1",
    "PASS_WARN_AGE": "7",
    "PASS_MIN_LEN": "8",
}

SECURE_HOSTS = """\
127.0.0.1   localhost localhost.localdomain
::1         localhost localhost.localdomain ip6-localhost ip6-loopback
fe00::0     ip6-localnet
ff00::0     ip6-mcastprefix
ff02::1     ip6-allnodes
ff02::2     ip6-allrouters
"""

FIREWALL_SERVICE = """\
#!/sbin/openrc-run

name="iptables-restore"
description="Restore iptables rules"

depend() {
    need net
    before k3s
}

start() {
    ebegin "Restoring iptables rules"
    if [ -f /etc/iptables/rules-save ]; then
        iptables-restore < /etc/iptables/rules-save
    fi
    eend $?
}

stop() {
    ebegin "Clearing iptables rules"
    iptables -F
    iptables -X
    iptables -t nat -F
    iptables -t nat -X
    iptables -t mangle -F
    iptables -t mangle -X
    eend $?
}
"""

DEVELOPMENT_PACKAGES: tuple[str, ...] = (
    "build-base",
    "gcc",
    "g++",
    "make",
    "cmake",
    "git",
    "man-pages",
    "man-pages-posix",
    "docs",
    "apk-tools-doc",
)

INSECURE_SERVICES: tuple[str, ...] = (
    "telnet",
    "rsh",
    "rlogin",
    "vsftpd",
    "httpd",
    "nginx",
    "apache2",
)

SENSITIVE_MODES: dict[str, int] = {
    "/etc/shadow": 0o600,
    "/etc/gshadow": 0o600,
    "/etc/passwd": 0o644,
    "/etc/group": 0o644,
    "/etc/ssh/sshd_config": 0o600,
}

# Trees never scanned for world-writable files.
_SCAN_EXCLUDES: tuple[str, ...] = ("proc", "sys", "dev", "tmp", "var/tmp")

SSH_DAEMON = "/usr/sbin/sshd"


# ---------------------------------------------------------------------------
# Renderers
# ---------------------------------------------------------------------------


def render_firewall_rules(rules: list[FirewallRule], allow_ssh: bool) -> str:
    """Render an ``iptables-save`` ruleset: default-deny input plus *rules*."""
    lines = [
        "*filter",
        ":INPUT DROP [0:0]",
        ":FORWARD ACCEPT [0:0]",
        ":OUTPUT ACCEPT [0:0]",
        "-A INPUT -i lo -j ACCEPT",
        "-A OUTPUT -o lo -j ACCEPT",
        "-A INPUT -m state --state ESTABLISHED,RELATED -j ACCEPT",
    ]
    for rule in rules:
        comment = f' -m comment --comment "{rule.description}"' if rule.description else ""
        lines.append(
            f"-A INPUT -p {rule.protocol} -m {rule.protocol} --dport {rule.port}{comment} -j ACCEPT"
        )
    if allow_ssh:
        lines.append('-A INPUT -p tcp -m tcp --dport 22 -m comment --comment "SSH" -j ACCEPT')
    lines.append("COMMIT")
    return "\n".join(lines) + "\n"


def render_sudoers(user: str) -> str:
    return (
        f"# {user} may manage the K3s runtime only\n"
        f"{user} ALL=(root) NOPASSWD: /usr/local/bin/k3s\n"
        f"{user} ALL=(root) NOPASSWD: /sbin/rc-service k3s start\n"
        f"{user} ALL=(root) NOPASSWD: /sbin/rc-service k3s stop\n"
        f"{user} ALL=(root) NOPASSWD: /sbin/rc-service k3s restart\n"
        f"{user} ALL=(root) NOPASSWD: /sbin/rc-service k3s status\n"
    )


def apply_password_policy(text: str) -> str:
    """Set the ``PASS_*`` keys in a login.defs body, keeping everything else."""
    remaining = dict(PASSWORD_POLICY)
    out: list[str] = []
    for line in text.splitlines():
        key = line.split()[0] if line.strip() and not line.lstrip().startswith("#") else None
        if key in remaining:
            out.append(f"{key}\t{remaining.pop(key)}")
        else:
            out.append(line)
    out.extend(f"{key}\t{value}" for key, value in remaining.items())
    return "\n".join(out) + "\n"


# ---------------------------------------------------------------------------
# File actions
# ---------------------------------------------------------------------------


def _write(path: str, content: str, mode: int, root: Path) -> None:
    fs.write_file(root, path, content, mode=mode)


def _write_sysctl(disable_ipv6: bool, root: Path) -> None:
    body = SECURITY_SYSCTL + (DISABLE_IPV6_SYSCTL if disable_ipv6 else "")
    fs.write_file(root, "/etc/sysctl.d/99-security.conf", body)


def _login_defs(root: Path) -> None:
    target = fs.in_root(root, "/etc/login.defs")
    current = target.read_text(encoding="utf-8") if target.is_file() else ""
    fs.write_file(root, "/etc/login.defs", apply_password_policy(current))


def _firewall(rules: list[FirewallRule], root: Path) -> None:
    allow_ssh = fs.in_root(root, SSH_DAEMON).exists()
    fs.write_file(root, "/etc/iptables/rules-save", render_firewall_rules(rules, allow_ssh), 0o600)
    fs.write_file(root, "/etc/init.d/iptables-restore", FIREWALL_SERVICE, 0o755)


def _disable_ssh_root_login(root: Path) -> None:
    config = fs.in_root(root, "/etc/ssh/sshd_config")
    if not config.is_file():
        return
    lines = [
        "PermitRootLogin no" if line.lstrip("#").strip().startswith("PermitRootLogin") else line
        for line in config.read_text(encoding="utf-8").splitlines()
    ]
    if "PermitRootLogin no" not in lines:
        lines.append("PermitRootLogin no")
    config.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _file_permissions(findings: dict[str, list[str]], root: Path) -> None:
    for path, mode in SENSITIVE_MODES.items():
        fs.set_mode(root, path, mode)
    fs.ensure_dir(root, "/tmp", 0o1777)

    # Runs once per phase; record each finding only once.
    excluded = [fs.in_root(root, f"/{p}") for p in _SCAN_EXCLUDES]
    for path, st in fs.walk_files(root, skip=excluded):
        rel = path.relative_to(root).as_posix()
        if not stat.S_ISREG(st.st_mode):
            continue
        if st.st_mode & stat.S_IWOTH:
            path.chmod(stat.S_IMODE(st.st_mode) & ~stat.S_IWOTH)
            findings["world_writable_fixed"].append(f"/{rel}")
        if st.st_mode & (stat.S_ISUID | stat.S_ISGID) and f"/{rel}" not in findings["suid_sgid"]:
            findings["suid_sgid"].append(f"/{rel}")


# ---------------------------------------------------------------------------
# Stage
# ---------------------------------------------------------------------------


class ApplyHardeningStage(BaseStage):
    """Stage 8: security hardening of the template."""

    @property
    def stage_id(self) -> str:
        return "apply_hardening"

    @property
    def display_name(self) -> str:
        return "Apply Hardening"

    def operations(
        self, config: BuildConfig, findings: dict[str, list[str]]
    ) -> list[Operation]:
        sec = config.security
        net = config.network
        ops: list[Operation] = [
            Operation(
                name="module-blacklist",
                action=partial(_write, "/etc/modprobe.d/blacklist-rare-network.conf", MODULE_BLACKLIST, 0o644),
            ),
            Operation(name="sysctl-security", action=partial(_write_sysctl, net.disable_ipv6)),
            Operation(name="password-policy", action=_login_defs),
            Operation(name="firewall", action=partial(_firewall, list(sec.firewall_rules))),
            Operation(
                name="enable-firewall",
                argv=["rc-update", "add", "iptables-restore", "default"],
                in_root_only=True,
                check=False,
            ),
            Operation(name="hosts", action=partial(_write, "/etc/hosts", SECURE_HOSTS, 0o644)),
            Operation(
                name="resolv-conf",
                action=partial(
                    _write,
                    "/etc/resolv.conf",
                    render_resolv_conf(net.dns_servers, net.search_domains),
                    0o644,
                ),
            ),
        ]

        if sec.create_k3s_user:
            user = shlex.quote(sec.k3s_user)
            ops.append(
                Operation(
                    name="runtime-user",
                    argv=[
                        "/bin/sh",
                        "-c",
                        f"getent group {user} >/dev/null 2>&1 || addgroup -g {sec.k3s_gid} {user}; "
                        f"getent passwd {user} >/dev/null 2>&1 || "
                        f"adduser -D -u {sec.k3s_uid} -G {user} -s /bin/sh {user}",
                    ],
                    in_root_only=True,
                    description=f"create user {sec.k3s_user}",
                )
            )
            ops.append(
                Operation(
                    name="runtime-sudoers",
                    action=partial(
                        _write, f"/etc/sudoers.d/{sec.k3s_user}", render_sudoers(sec.k3s_user), 0o440
                    ),
                )
            )

        if sec.disable_root_login:
            ops.append(
                Operation(name="lock-root", argv=["passwd", "-l", "root"], in_root_only=True, check=False)
            )
            ops.append(Operation(name="ssh-root-login", action=_disable_ssh_root_login))

        for service in INSECURE_SERVICES:
            ops.append(
                Operation(
                    name=f"disable-{service}",
                    argv=["/bin/sh", "-c", f"rc-update del {service} 2>/dev/null; true"],
                    in_root_only=True,
                    check=False,
                )
            )

        ops.append(
            Operation(name="file-permissions", action=partial(_file_permissions, findings))
        )

        removals = list(dict.fromkeys([*sec.remove_packages, *DEVELOPMENT_PACKAGES]))
        script = "; ".join(
            f"if apk info -e {shlex.quote(p)} >/dev/null 2>&1; then apk del {shlex.quote(p)}; fi"
            for p in removals
        )
        ops.append(
            Operation(
                name="remove-packages",
                argv=["/bin/sh", "-c", f"{script}; true"],
                in_root_only=True,
                check=False,
                description="remove security-policy and development packages",
            )
        )
        return ops

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        config: BuildConfig = run_context["config"]
        findings: dict[str, list[str]] = {"world_writable_fixed": [], "suid_sgid": []}
        results = self.run_operations(run_context, self.operations(config, findings))

        for path in findings["suid_sgid"]:
            logger.info("SUID/SGID file: %s", path)
        if findings["world_writable_fixed"]:
            logger.warning(
                "Removed world-write permission from %d file(s)",
                len(findings["world_writable_fixed"]),
            )
        return {
            **self.summarize(results),
            "firewall_rules": len(config.security.firewall_rules),
            "suid_sgid": findings["suid_sgid"],
            "world_writable_fixed": findings["world_writable_fixed"],
        }
