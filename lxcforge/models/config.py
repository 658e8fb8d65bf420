"""Build configuration models: the immutable description of one template.

A ``BuildConfig`` is produced once by the ``ConfigResolver`` and then passed
to every component.  It is frozen; environment overrides go through
``with_overrides``, which returns a new, fully re-validated instance.
"""

from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Format patterns
# ---------------------------------------------------------------------------

TEMPLATE_VERSION_PATTERN = re.compile(r"^\d+\.\d+\.\d+$")
RUNTIME_VERSION_PATTERN = re.compile(r"^v\d+\.\d+\.\d+\+k3s\d+$")
BASE_IMAGE_PATTERN = re.compile(
    r"^(?P<distribution>[a-z][a-z0-9_-]*):(?P<version>\d+\.\d+(?:\.\d+)?)$"
)
ARCHITECTURE_PATTERN = re.compile(r"^[a-z0-9_]+$")

KNOWN_ARCHITECTURES: frozenset[str] = frozenset({"amd64", "arm64", "armv7"})


class BaseImageSpec(BaseModel):
    """A base-image specifier such as ``alpine:3.18`` or ``alpine:3.18.4``."""

    model_config = ConfigDict(frozen=True)

    distribution: str
    version_spec: str

    @property
    def is_prefix(self) -> bool:
        """True when only ``major.minor`` was given."""
        return self.version_spec.count(".") == 1

    @classmethod
    def parse(cls, value: str) -> BaseImageSpec:
        match = BASE_IMAGE_PATTERN.match(value.strip())
        if match is None:
            raise ValueError(
                f"base image {value!r} must look like '<distribution>:<major>.<minor>[.<patch>]'"
            )
        return cls(
            distribution=match.group("distribution"),
            version_spec=match.group("version"),
        )

    def __str__(self) -> str:
        return f"{self.distribution}:{self.version_spec}"


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


class TemplateSection(BaseModel):
    """Template identity."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    version: str
    base_image: BaseImageSpec
    architecture: str = "amd64"
    description: str = "Alpine Linux LXC template with pre-installed K3s"
    author: str = "PVE LXC K3s Template Generator"

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        if not TEMPLATE_VERSION_PATTERN.match(value):
            raise ValueError(f"template version {value!r} must be semantic (x.y.z)")
        return value

    @field_validator("base_image", mode="before")
    @classmethod
    def _parse_base_image(cls, value: Any) -> Any:
        if isinstance(value, str):
            return BaseImageSpec.parse(value)
        return value

    @field_validator("architecture")
    @classmethod
    def _check_architecture(cls, value: str) -> str:
        if not ARCHITECTURE_PATTERN.match(value):
            raise ValueError(f"architecture {value!r} must be a lowercase identifier")
        return value


class RuntimeSection(BaseModel):
    """The K3s workload runtime installed into the template."""

    model_config = ConfigDict(frozen=True)

    version: str
    cluster_init: bool = True
    install_options: list[str] = Field(
        default_factory=lambda: [
            "--disable=traefik",
            "--disable=servicelb",
            "--write-kubeconfig-mode=644",
        ]
    )
    server_options: list[str] = Field(default_factory=list)
    agent_options: list[str] = Field(default_factory=list)

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        if not RUNTIME_VERSION_PATTERN.match(value):
            raise ValueError(f"k3s version {value!r} must look like v1.28.4+k3s1")
        return value


class ServicesSection(BaseModel):
    model_config = ConfigDict(frozen=True)

    enable: list[str] = Field(default_factory=lambda: ["k3s"])
    disable: list[str] = Field(default_factory=lambda: ["chronyd"])


class SystemSection(BaseModel):
    """Base system tuning applied by the optimize stage."""

    model_config = ConfigDict(frozen=True)

    timezone: str = "UTC"
    locale: str = "en_US.UTF-8"
    packages: list[str] = Field(
        default_factory=lambda: [
            "curl",
            "wget",
            "ca-certificates",
            "openssl",
            "bash",
            "coreutils",
        ]
    )
    remove_packages: list[str] = Field(
        default_factory=lambda: ["apk-tools-doc", "man-pages", "docs"]
    )
    services: ServicesSection = Field(default_factory=ServicesSection)


class FirewallRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    port: int = Field(ge=1, le=65535)
    protocol: Literal["tcp", "udp"] = "tcp"
    description: str = ""


def _default_firewall_rules() -> list[FirewallRule]:
    return [
        FirewallRule(port=6443, protocol="tcp", description="K3s API Server"),
        FirewallRule(port=10250, protocol="tcp", description="Kubelet API"),
        FirewallRule(port=8472, protocol="udp", description="Flannel VXLAN"),
    ]


class SecuritySection(BaseModel):
    """Hardening policy applied by the hardening stage."""

    model_config = ConfigDict(frozen=True)

    disable_root_login: bool = True
    create_k3s_user: bool = True
    k3s_user: str = "k3s"
    k3s_uid: int = Field(default=1000, ge=0)
    k3s_gid: int = Field(default=1000, ge=0)
    firewall_rules: list[FirewallRule] = Field(default_factory=_default_firewall_rules)
    remove_packages: list[str] = Field(
        default_factory=lambda: ["apk-tools", "alpine-keys"]
    )


class NetworkSection(BaseModel):
    model_config = ConfigDict(frozen=True)

    interfaces: list[dict[str, Any]] = Field(default_factory=list)
    dns_servers: list[str] = Field(default_factory=lambda: ["8.8.8.8", "8.8.4.4"])
    search_domains: list[str] = Field(default_factory=list)
    disable_ipv6: bool = False


class BuildSection(BaseModel):
    """Build behaviour switches."""

    model_config = ConfigDict(frozen=True)

    cleanup_after_install: bool = True
    optimize_size: bool = True
    include_docs: bool = False
    parallel_jobs: int = Field(default=2, ge=1)
    cleanup_paths: list[str] = Field(
        default_factory=lambda: ["/tmp/*", "/var/cache/apk/*", "/var/log/*"]
    )


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


class BuildConfig(BaseModel):
    """The fully resolved, immutable build configuration.

    The YAML document uses ``k3s`` as the key of the runtime section; the
    attribute is ``runtime``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    template: TemplateSection
    runtime: RuntimeSection = Field(alias="k3s")
    system: SystemSection = Field(default_factory=SystemSection)
    security: SecuritySection = Field(default_factory=SecuritySection)
    network: NetworkSection = Field(default_factory=NetworkSection)
    build: BuildSection = Field(default_factory=BuildSection)

    # ------------------------------------------------------------------
    # Convenience accessors
    # ------------------------------------------------------------------

    @property
    def artifact_stem(self) -> str:
        """``<name>-<version>-<arch>``, the base name of the packaged artifact."""
        t = self.template
        return f"{t.name}-{t.version}-{t.architecture}"

    def to_document(self) -> dict[str, Any]:
        """Render back to the YAML document shape (``k3s`` key, string base image)."""
        data = self.model_dump(mode="json", by_alias=True)
        data["template"]["base_image"] = str(self.template.base_image)
        return data

    def with_overrides(self, overrides: dict[str, Any]) -> BuildConfig:
        """Return a new validated config with dotted-key *overrides* applied.

        ``self`` is never modified.  Invalid values raise the same
        ``ConfigError`` the resolver raises.
        """
        from lxcforge.core.config_resolver import build_config_from_document

        document = self.to_document()
        for key, value in overrides.items():
            set_dotted(document, key, value)
        return build_config_from_document(document)


def get_dotted(document: dict[str, Any], key: str, default: Any = None) -> Any:
    """Look up ``section.field`` style keys in a nested mapping."""
    node: Any = document
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


def set_dotted(document: dict[str, Any], key: str, value: Any) -> None:
    """Assign ``section.field`` style keys, creating intermediate mappings."""
    parts = key.split(".")
    node = document
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value
