"""Release sources: where base images and runtime binaries come from.

A ``ReleaseSource`` knows, for one distribution, how to map an architecture
name, list published versions, build download URLs and fetch the published
digest.  The image cache drives sources; it never builds URLs itself.

Two production sources are provided:

* ``AlpineReleaseSource``: Alpine minirootfs tarballs from a mirror.
* ``K3sReleaseSource``: K3s binaries from GitHub release assets.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import quote

import requests

from lxcforge.config import BuilderSettings
from lxcforge.core.hasher import parse_checksum_text
from lxcforge.errors import FetchError, FetchErrorReason

logger = logging.getLogger(__name__)

_DOWNLOAD_CHUNK = 1024 * 1024

# ---------------------------------------------------------------------------
# Architecture mapping
# ---------------------------------------------------------------------------

ARCHITECTURE_MAP: dict[str, dict[str, str]] = {
    "alpine": {"amd64": "x86_64", "arm64": "aarch64", "armv7": "armv7"},
    "k3s": {"amd64": "amd64", "arm64": "arm64", "armv7": "arm"},
}


def map_architecture(distribution: str, architecture: str) -> str:
    """Translate a template architecture into *distribution*'s naming.

    Unknown architectures are passed through unchanged with a warning.
    """
    table = ARCHITECTURE_MAP.get(distribution, {})
    mapped = table.get(architecture)
    if mapped is None:
        logger.warning(
            "No %s mapping for architecture %r; using it unchanged",
            distribution,
            architecture,
        )
        return architecture
    return mapped


def version_sort_key(version: str) -> tuple[int, ...]:
    """Numeric ordering key, so ``3.18.10`` sorts after ``3.18.9``."""
    return tuple(int(part) for part in re.findall(r"\d+", version))


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class ReleaseSource(Protocol):
    """Interface every release source implements."""

    distribution: str

    def map_architecture(self, architecture: str) -> str: ...

    def list_versions(self, prefix: str, architecture: str) -> list[str]: ...

    def artifact_filename(self, version: str, architecture: str) -> str: ...

    def artifact_url(self, version: str, architecture: str) -> str: ...

    def published_digest(self, version: str, architecture: str) -> str | None: ...

    def download(self, version: str, architecture: str, destination: Path) -> int: ...


# ---------------------------------------------------------------------------
# HTTP base
# ---------------------------------------------------------------------------


class HttpReleaseSource:
    """Shared ``requests`` plumbing for HTTP release sources.

    Parameters
    ----------
    settings:
        Builder settings providing timeouts.
    session:
        Optional pre-configured ``requests.Session`` (tests pass a fake).
    """

    distribution: str = ""

    def __init__(
        self,
        settings: BuilderSettings | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self._settings = settings or BuilderSettings()
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", "lxcforge")

    @property
    def _timeout(self) -> tuple[float, float]:
        return (self._settings.connect_timeout, self._settings.download_timeout)

    def map_architecture(self, architecture: str) -> str:
        return map_architecture(self.distribution, architecture)

    def _get(self, url: str, *, stream: bool = False) -> requests.Response:
        response = self._session.get(url, timeout=self._timeout, stream=stream)
        if response.status_code == 404:
            response.close()
            raise FetchError(
                FetchErrorReason.NOT_FOUND,
                f"{url} does not exist (HTTP 404)",
                context={"url": url},
            )
        response.raise_for_status()
        return response

    def _get_text(self, url: str) -> str:
        response = self._get(url)
        try:
            return response.text
        finally:
            response.close()

    def download(self, version: str, architecture: str, destination: Path) -> int:
        """Stream the artifact to *destination*, returning the byte count."""
        url = self.artifact_url(version, architecture)
        logger.info("Downloading %s", url)
        written = 0
        response = self._get(url, stream=True)
        try:
            with open(destination, "wb") as fh:
                for chunk in response.iter_content(chunk_size=_DOWNLOAD_CHUNK):
                    if chunk:
                        fh.write(chunk)
                        written += len(chunk)
        finally:
            response.close()
        return written

    def artifact_url(self, version: str, architecture: str) -> str:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Alpine
# ---------------------------------------------------------------------------


class AlpineReleaseSource(HttpReleaseSource):
    """Alpine Linux minirootfs releases.

    Layout on the mirror::

        <mirror>/v3.18/releases/x86_64/alpine-minirootfs-3.18.4-x86_64.tar.gz
        <mirror>/v3.18/releases/x86_64/alpine-minirootfs-3.18.4-x86_64.tar.gz.sha256
    """

    distribution = "alpine"

    def _release_dir(self, version: str, architecture: str) -> str:
        major_minor = ".".join(version.split(".")[:2])
        mirror = self._settings.alpine_mirror.rstrip("/")
        return f"{mirror}/v{major_minor}/releases/{self.map_architecture(architecture)}"

    def artifact_filename(self, version: str, architecture: str) -> str:
        return f"alpine-minirootfs-{version}-{self.map_architecture(architecture)}.tar.gz"

    def artifact_url(self, version: str, architecture: str) -> str:
        return f"{self._release_dir(version, architecture)}/{self.artifact_filename(version, architecture)}"

    def list_versions(self, prefix: str, architecture: str) -> list[str]:
        """Scrape the release index for ``<prefix>.<patch>`` minirootfs builds."""
        arch = self.map_architecture(architecture)
        index = self._get_text(f"{self._release_dir(prefix, architecture)}/")
        pattern = re.compile(
            rf"alpine-minirootfs-({re.escape(prefix)}\.\d+)-{re.escape(arch)}\.tar\.gz"
        )
        return sorted(set(pattern.findall(index)), key=version_sort_key)

    def published_digest(self, version: str, architecture: str) -> str | None:
        filename = self.artifact_filename(version, architecture)
        url = f"{self.artifact_url(version, architecture)}.sha256"
        try:
            text = self._get_text(url)
        except FetchError as exc:
            if exc.reason is FetchErrorReason.NOT_FOUND:
                logger.warning("No published checksum for %s", filename)
                return None
            raise
        return parse_checksum_text(text, filename)


# ---------------------------------------------------------------------------
# K3s
# ---------------------------------------------------------------------------

_K3S_ASSETS: dict[str, str] = {"amd64": "k3s", "arm64": "k3s-arm64", "arm": "k3s-armhf"}


class K3sReleaseSource(HttpReleaseSource):
    """K3s binaries published as GitHub release assets.

    ``version`` is always a full release tag such as ``v1.28.4+k3s1``;
    there is no prefix resolution for runtime binaries.
    """

    distribution = "k3s"

    def _release_base(self, version: str) -> str:
        base = self._settings.k3s_release_url.rstrip("/")
        return f"{base}/{quote(version, safe='')}"

    def artifact_filename(self, version: str, architecture: str) -> str:
        arch = self.map_architecture(architecture)
        return _K3S_ASSETS.get(arch, f"k3s-{arch}")

    def artifact_url(self, version: str, architecture: str) -> str:
        return f"{self._release_base(version)}/{self.artifact_filename(version, architecture)}"

    def list_versions(self, prefix: str, architecture: str) -> list[str]:
        return []

    def published_digest(self, version: str, architecture: str) -> str | None:
        arch = self.map_architecture(architecture)
        url = f"{self._release_base(version)}/sha256sum-{arch}.txt"
        filename = self.artifact_filename(version, architecture)
        try:
            text = self._get_text(url)
        except FetchError as exc:
            if exc.reason is FetchErrorReason.NOT_FOUND:
                logger.warning("No published checksum list for k3s %s", version)
                return None
            raise
        return parse_checksum_text(text, filename)


def default_sources(
    settings: BuilderSettings | None = None,
    session: requests.Session | None = None,
) -> dict[str, ReleaseSource]:
    """The production release sources keyed by distribution."""
    return {
        "alpine": AlpineReleaseSource(settings, session),
        "k3s": K3sReleaseSource(settings, session),
    }
