"""Resolve a declarative build configuration into a frozen ``BuildConfig``.

Resolution is pure: it reads the configuration source and nothing else.
Explicit values are merged over the documented defaults field by field,
required fields are checked, and every format rule is enforced by the
models in ``lxcforge.models.config``.  Validation failures are reported as
``ConfigError`` naming the offending dotted field.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import ValidationError

from lxcforge.core.hasher import canonical_json_bytes, sha256_hex
from lxcforge.errors import ConfigError, ConfigErrorReason
from lxcforge.models.config import (
    KNOWN_ARCHITECTURES,
    BuildConfig,
    get_dotted,
    set_dotted,
)

logger = logging.getLogger(__name__)

REQUIRED_FIELDS: tuple[str, ...] = (
    "template.name",
    "template.version",
    "template.base_image",
    "k3s.version",
)

# Documented defaults, applied per field under explicit values.
DEFAULTS: dict[str, Any] = {
    "template.architecture": "amd64",
    "template.description": "Alpine Linux LXC template with pre-installed K3s",
    "template.author": "PVE LXC K3s Template Generator",
    "k3s.cluster_init": True,
    "k3s.install_options": [
        "--disable=traefik",
        "--disable=servicelb",
        "--write-kubeconfig-mode=644",
    ],
    "k3s.server_options": [],
    "k3s.agent_options": [],
    "system.timezone": "UTC",
    "system.locale": "en_US.UTF-8",
    "system.packages": ["curl", "wget", "ca-certificates", "openssl", "bash", "coreutils"],
    "system.remove_packages": ["apk-tools-doc", "man-pages", "docs"],
    "system.services.enable": ["k3s"],
    "system.services.disable": ["chronyd"],
    "security.disable_root_login": True,
    "security.create_k3s_user": True,
    "security.k3s_user": "k3s",
    "security.k3s_uid": 1000,
    "security.k3s_gid": 1000,
    "security.firewall_rules": [
        {"port": 6443, "protocol": "tcp", "description": "K3s API Server"},
        {"port": 10250, "protocol": "tcp", "description": "Kubelet API"},
        {"port": 8472, "protocol": "udp", "description": "Flannel VXLAN"},
    ],
    "security.remove_packages": ["apk-tools", "alpine-keys"],
    "network.interfaces": [],
    "network.dns_servers": ["8.8.8.8", "8.8.4.4"],
    "network.search_domains": [],
    "network.disable_ipv6": False,
    "build.cleanup_after_install": True,
    "build.optimize_size": True,
    "build.include_docs": False,
    "build.parallel_jobs": 2,
    "build.cleanup_paths": ["/tmp/*", "/var/cache/apk/*", "/var/log/*"],
}

ENV_OVERRIDE_PREFIX = "LXCFORGE_CFG__"


# ---------------------------------------------------------------------------
# Structured parser
# ---------------------------------------------------------------------------


class StructuredParser(Protocol):
    """Parses a configuration document into a mapping."""

    def parse(self, text: str) -> Any: ...


class YamlDocumentParser:
    """PyYAML ``safe_load`` parser.  JSON documents parse as YAML."""

    def parse(self, text: str) -> Any:
        return yaml.safe_load(text)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def merge_defaults(document: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of *document* with every missing default filled in."""
    merged = copy.deepcopy(dict(document))
    for key, default in DEFAULTS.items():
        if get_dotted(merged, key) is None:
            set_dotted(merged, key, copy.deepcopy(default))
    return merged


def missing_required_fields(document: Mapping[str, Any]) -> list[str]:
    """Required dotted fields that are absent or empty in *document*."""
    missing: list[str] = []
    for key in REQUIRED_FIELDS:
        value = get_dotted(dict(document), key)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(key)
    return missing


def _loc_to_field(loc: tuple[Any, ...]) -> str:
    return ".".join(str(part) for part in loc if not isinstance(part, int))


def build_config_from_document(document: Mapping[str, Any]) -> BuildConfig:
    """Validate a complete document (defaults already merged) into a BuildConfig.

    Raises
    ------
    ConfigError
        ``MISSING_FIELD`` for an absent required field, ``INVALID_FORMAT``
        for any value that fails model validation.
    """
    missing = missing_required_fields(document)
    if missing:
        raise ConfigError(
            ConfigErrorReason.MISSING_FIELD,
            f"required field '{missing[0]}' is missing",
            field=missing[0],
            context={"missing": missing},
        )

    try:
        config = BuildConfig.model_validate(document)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = _loc_to_field(first["loc"])
        raise ConfigError(
            ConfigErrorReason.INVALID_FORMAT,
            f"invalid value for '{field}': {first['msg']}",
            field=field,
            context={"errors": len(exc.errors())},
        ) from exc

    if config.template.architecture not in KNOWN_ARCHITECTURES:
        logger.warning(
            "Architecture %r is not one of %s; it will be passed through unmapped",
            config.template.architecture,
            sorted(KNOWN_ARCHITECTURES),
        )
    return config


def overrides_from_environ(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect ``LXCFORGE_CFG__<SECTION>__<FIELD>`` variables as dotted overrides.

    Values are parsed as YAML scalars, so ``true`` becomes a bool and
    ``[a, b]`` a list.
    """
    overrides: dict[str, Any] = {}
    for name, raw in environ.items():
        if not name.startswith(ENV_OVERRIDE_PREFIX):
            continue
        key = name[len(ENV_OVERRIDE_PREFIX):].lower().replace("__", ".")
        if not key:
            continue
        try:
            overrides[key] = yaml.safe_load(raw)
        except yaml.YAMLError:
            overrides[key] = raw
    return overrides


def parse_assignments(assignments: list[str]) -> dict[str, Any]:
    """Turn ``key=value`` strings (the CLI ``--set`` option) into overrides."""
    overrides: dict[str, Any] = {}
    for item in assignments:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise ConfigError(
                ConfigErrorReason.INVALID_FORMAT,
                f"override {item!r} must look like section.field=value",
                field=key.strip() or item,
            )
        try:
            overrides[key.strip()] = yaml.safe_load(raw)
        except yaml.YAMLError:
            overrides[key.strip()] = raw
    return overrides


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class ConfigResolver:
    """Resolves configuration sources into memoized ``BuildConfig`` instances.

    Parameters
    ----------
    parser:
        The structured document parser.  Defaults to ``YamlDocumentParser``.
    """

    def __init__(self, parser: StructuredParser | None = None) -> None:
        self._parser = parser or YamlDocumentParser()
        self._memo: dict[str, BuildConfig] = {}

    def reset(self) -> None:
        """Drop every memoized resolution."""
        self._memo.clear()

    def resolve(
        self,
        source: Path | str | Mapping[str, Any],
        overrides: Mapping[str, Any] | None = None,
    ) -> BuildConfig:
        """Resolve *source* (a path or an in-memory mapping) into a BuildConfig."""
        document, identity = self._load(source)
        memo_key = sha256_hex(
            canonical_json_bytes({"source": identity, "overrides": dict(overrides or {})})
        )
        cached = self._memo.get(memo_key)
        if cached is not None:
            logger.debug("Configuration %s served from memo", identity["name"])
            return cached

        merged = merge_defaults(document)
        for key, value in (overrides or {}).items():
            set_dotted(merged, key, value)

        config = build_config_from_document(merged)
        self._memo[memo_key] = config
        logger.info(
            "Resolved configuration %s (%s)",
            config.artifact_stem,
            identity["name"],
        )
        return config

    def _load(
        self, source: Path | str | Mapping[str, Any]
    ) -> tuple[dict[str, Any], dict[str, str]]:
        if isinstance(source, Mapping):
            document = copy.deepcopy(dict(source))
            digest = sha256_hex(canonical_json_bytes(document))
            return document, {"name": "<mapping>", "digest": digest}

        path = Path(source)
        try:
            raw = path.read_bytes()
        except OSError as exc:
            raise ConfigError(
                ConfigErrorReason.UNREADABLE,
                f"cannot read configuration file {path}: {exc.strerror or exc}",
                context={"path": str(path)},
            ) from exc

        try:
            document = self._parser.parse(raw.decode("utf-8"))
        except (yaml.YAMLError, UnicodeDecodeError, ValueError) as exc:
            raise ConfigError(
                ConfigErrorReason.PARSE_ERROR,
                f"cannot parse configuration file {path}: {exc}",
                context={"path": str(path)},
            ) from exc

        if document is None:
            document = {}
        if not isinstance(document, dict):
            raise ConfigError(
                ConfigErrorReason.PARSE_ERROR,
                f"configuration file {path} must contain a mapping at the top level",
                context={"path": str(path)},
            )
        identity = {"name": str(path.resolve()), "digest": sha256_hex(raw)}
        return document, identity


def describe(config: BuildConfig) -> list[tuple[str, str]]:
    """Human-readable summary rows for a resolved configuration."""
    t = config.template
    return [
        ("Template", t.name),
        ("Version", t.version),
        ("Base image", str(t.base_image)),
        ("Architecture", t.architecture),
        ("K3s version", config.runtime.version),
        ("Cluster init", str(config.runtime.cluster_init).lower()),
        ("Timezone", config.system.timezone),
        ("Packages", ", ".join(config.system.packages) or "-"),
        ("Runtime user", config.security.k3s_user if config.security.create_k3s_user else "-"),
        (
            "Firewall",
            ", ".join(f"{r.port}/{r.protocol}" for r in config.security.firewall_rules) or "-",
        ),
        ("DNS", ", ".join(config.network.dns_servers) or "-"),
    ]
