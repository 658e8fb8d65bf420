"""Content-addressable cache for base images and runtime binaries.

Storage layout::

    {cache_dir}/{distribution}/{version}/{arch}/{filename}
    {cache_dir}/{distribution}/{version}/{arch}/{filename}.sha256
    {cache_dir}/index.json

An entry is trusted only while the digest recorded for it matches a fresh
digest of its bytes.  A mismatch purges the entry and triggers a re-fetch.
Every network operation goes through ``retry_call`` with the configured
policy; the cache is the only component in the builder that retries.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import requests

from lxcforge.config import BuilderSettings
from lxcforge.core.hasher import file_digest, format_checksum_line, parse_checksum_text
from lxcforge.core.release_source import ReleaseSource, default_sources, version_sort_key
from lxcforge.core.retry import RetryExhaustedError, RetryPolicy, retry_call
from lxcforge.errors import FetchError, FetchErrorReason
from lxcforge.models.artifacts import CacheKey, CacheStats, ImageCacheEntry

logger = logging.getLogger(__name__)

INDEX_FILENAME = "index.json"

# Transient failures worth another attempt; FetchError(NOT_FOUND) is not one.
_RETRYABLE: tuple[type[BaseException], ...] = (requests.RequestException, OSError)


class _ChecksumMismatch(Exception):
    """A downloaded file did not match its published digest."""


class ImageCache:
    """Verified download cache keyed by (distribution, version, architecture).

    Parameters
    ----------
    cache_dir:
        Root directory of the cache.
    sources:
        Release sources keyed by distribution name.  Defaults to the
        production Alpine and K3s sources.
    settings:
        Builder settings providing retry policy and resolution strictness.
    sleep:
        Injected delay function used between retries.
    now:
        Injected clock used for fetch timestamps and eviction.
    """

    def __init__(
        self,
        cache_dir: Path,
        sources: dict[str, ReleaseSource] | None = None,
        settings: BuilderSettings | None = None,
        *,
        sleep: Callable[[float], None] | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or BuilderSettings()
        self._dir = Path(cache_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._sources = sources if sources is not None else default_sources(self._settings)
        self._policy = RetryPolicy(
            attempts=max(1, self._settings.fetch_retries),
            delay=self._settings.fetch_retry_delay,
        )
        self._sleep_kwargs: dict[str, Any] = {"sleep": sleep} if sleep is not None else {}
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._index_lock = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()

    @property
    def cache_dir(self) -> Path:
        return self._dir

    # ------------------------------------------------------------------
    # Version resolution
    # ------------------------------------------------------------------

    def resolve_version(self, distribution: str, version_spec: str, architecture: str) -> str:
        """Resolve a ``major.minor`` prefix to the newest published patch release.

        A full ``major.minor.patch`` version is returned unchanged.  When
        the release index is unreachable or lists nothing, ``<prefix>.0``
        is returned with a warning (or ``FetchError(NOT_FOUND)`` is raised
        when strict resolution is enabled).
        """
        if version_spec.count(".") >= 2:
            return version_spec

        source = self._source(distribution)
        problem = "no matching releases listed"
        versions: list[str] = []
        try:
            versions = retry_call(
                lambda: source.list_versions(version_spec, architecture),
                self._policy,
                retry_on=_RETRYABLE,
                description=f"listing {distribution} {version_spec} releases",
                **self._sleep_kwargs,
            )
        except RetryExhaustedError as exc:
            problem = f"release index unreachable: {exc.last_error}"
        except FetchError as exc:
            problem = f"release index unavailable: {exc.detail}"

        if versions:
            resolved = max(versions, key=version_sort_key)
            logger.info("Resolved %s:%s to %s", distribution, version_spec, resolved)
            return resolved

        if self._settings.strict_version_resolution:
            raise FetchError(
                FetchErrorReason.NOT_FOUND,
                f"cannot resolve {distribution}:{version_spec} ({problem})",
                context={"distribution": distribution, "version_spec": version_spec},
            )
        fallback = f"{version_spec}.0"
        logger.warning(
            "Cannot resolve %s:%s (%s); falling back to %s",
            distribution,
            version_spec,
            problem,
            fallback,
        )
        return fallback

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def fetch(self, distribution: str, version: str, architecture: str) -> Path:
        """Return the local path of a verified cache entry, downloading if needed."""
        return self.fetch_entry(distribution, version, architecture).path

    def fetch_entry(self, distribution: str, version: str, architecture: str) -> ImageCacheEntry:
        """Return a verified ``ImageCacheEntry``, downloading if needed.

        Raises
        ------
        FetchError
            ``NOT_FOUND`` when the artifact does not exist upstream,
            ``CHECKSUM_MISMATCH`` or ``NETWORK_EXHAUSTED`` when every
            attempt failed.
        """
        key = CacheKey(distribution=distribution, version=version, architecture=architecture)
        with self._lock_for(key):
            entry = self._lookup(key)
            if entry is not None:
                if entry.path.is_file() and self.verify(entry.path, entry.digest):
                    logger.info("Cache hit for %s (%s)", key.slug, entry.filename)
                    return entry
                logger.warning(
                    "Cached %s failed verification; purging and re-fetching", key.slug
                )
                self._purge(key, entry)
            return self._download(key)

    def fetch_many(
        self, requests_: Iterable[tuple[str, str, str]]
    ) -> dict[CacheKey, ImageCacheEntry]:
        """Fetch several distinct artifacts concurrently.

        Duplicate keys are fetched once.  All downloads are allowed to
        settle; the first failure (in request order) is then raised.
        """
        keys = list(
            dict.fromkeys(
                CacheKey(distribution=d, version=v, architecture=a) for d, v, a in requests_
            )
        )
        if not keys:
            return {}

        workers = min(len(keys), os.cpu_count() or 1)
        results: dict[CacheKey, ImageCacheEntry] = {}
        failures: dict[CacheKey, Exception] = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="lxcforge-fetch") as ex:
            future_map = {
                ex.submit(self.fetch_entry, k.distribution, k.version, k.architecture): k
                for k in keys
            }
            for fut in as_completed(future_map):
                key = future_map[fut]
                try:
                    results[key] = fut.result()
                except Exception as exc:
                    logger.error("Fetch of %s failed: %s", key.slug, exc)
                    failures[key] = exc

        for key in keys:
            if key in failures:
                raise failures[key]
        return {key: results[key] for key in keys}

    def _download(self, key: CacheKey) -> ImageCacheEntry:
        source = self._source(key.distribution)
        filename = source.artifact_filename(key.version, key.architecture)
        target = self._entry_dir(key) / filename
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(f"{filename}.partial")
        context = {
            "distribution": key.distribution,
            "version": key.version,
            "architecture": key.architecture,
            "url": source.artifact_url(key.version, key.architecture),
        }

        try:
            published = retry_call(
                lambda: source.published_digest(key.version, key.architecture),
                self._policy,
                retry_on=_RETRYABLE,
                description=f"fetching checksum for {key.slug}",
                **self._sleep_kwargs,
            )
        except RetryExhaustedError as exc:
            raise FetchError(
                FetchErrorReason.NETWORK_EXHAUSTED,
                f"could not fetch checksum for {filename}: {exc.last_error}",
                context=context,
            ) from exc

        def attempt() -> tuple[str, int]:
            try:
                size = source.download(key.version, key.architecture, partial)
                digest = file_digest(partial)
                if published is not None and digest != published:
                    raise _ChecksumMismatch(
                        f"{filename}: expected {published[:16]}..., got {digest[:16]}..."
                    )
                os.replace(partial, target)
                return digest, size
            finally:
                partial.unlink(missing_ok=True)

        try:
            digest, size = retry_call(
                attempt,
                self._policy,
                retry_on=_RETRYABLE + (_ChecksumMismatch,),
                description=f"downloading {filename}",
                **self._sleep_kwargs,
            )
        except RetryExhaustedError as exc:
            if isinstance(exc.last_error, _ChecksumMismatch):
                raise FetchError(
                    FetchErrorReason.CHECKSUM_MISMATCH,
                    f"checksum mismatch for {filename} after {exc.attempts} attempts",
                    context=context,
                ) from exc
            raise FetchError(
                FetchErrorReason.NETWORK_EXHAUSTED,
                f"download of {filename} failed after {exc.attempts} attempts: {exc.last_error}",
                context=context,
            ) from exc

        if published is None:
            logger.warning(
                "No published digest for %s; recording local digest as trust anchor",
                filename,
            )
        self._checksum_path(target).write_text(format_checksum_line(digest, filename))

        entry = ImageCacheEntry(
            key=key,
            path=target,
            filename=filename,
            digest=digest,
            digest_source="published" if published is not None else "local",
            size_bytes=size or target.stat().st_size,
            fetched_at=self._now(),
            source_url=context["url"],
        )
        self._record(entry)
        logger.info("Cached %s (%d bytes, sha256 %s)", key.slug, entry.size_bytes, digest[:12])
        return entry

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    @staticmethod
    def verify(path: Path, digest: str) -> bool:
        """Recompute the SHA-256 of *path* and compare it against *digest*."""
        path = Path(path)
        if not path.is_file():
            return False
        return file_digest(path) == digest.lower()

    # ------------------------------------------------------------------
    # Enumerate and evict
    # ------------------------------------------------------------------

    def entries(self) -> list[ImageCacheEntry]:
        """All indexed entries, oldest first."""
        with self._index_lock:
            index = self._read_index()
        return sorted(index.values(), key=lambda e: e.fetched_at)

    def stats(self) -> CacheStats:
        entries = self.entries()
        return CacheStats(
            cache_dir=self._dir,
            entry_count=len(entries),
            total_bytes=sum(e.size_bytes for e in entries),
        )

    def evict(
        self,
        max_age_days: int | None = None,
        max_size_bytes: int | None = None,
    ) -> list[ImageCacheEntry]:
        """Remove entries older than *max_age_days*, then oldest-first over *max_size_bytes*.

        Index entries whose files have vanished are dropped.  Returns the
        evicted entries.
        """
        evicted: list[ImageCacheEntry] = []
        with self._index_lock:
            index = self._read_index()
            survivors: list[ImageCacheEntry] = []
            for entry in sorted(index.values(), key=lambda e: e.fetched_at):
                if not entry.path.is_file():
                    logger.debug("Dropping stale index entry %s", entry.key.slug)
                    continue
                survivors.append(entry)

            if max_age_days is not None:
                cutoff = self._now() - timedelta(days=max_age_days)
                kept: list[ImageCacheEntry] = []
                for entry in survivors:
                    (evicted if entry.fetched_at < cutoff else kept).append(entry)
                survivors = kept

            if max_size_bytes is not None:
                total = sum(e.size_bytes for e in survivors)
                while survivors and total > max_size_bytes:
                    oldest = survivors.pop(0)
                    evicted.append(oldest)
                    total -= oldest.size_bytes

            for entry in evicted:
                self._remove_files(entry)
                logger.info("Evicted %s (%s)", entry.key.slug, entry.filename)
            self._write_index({e.key.slug: e for e in survivors})
        return evicted

    # ------------------------------------------------------------------
    # Index and paths
    # ------------------------------------------------------------------

    def _source(self, distribution: str) -> ReleaseSource:
        try:
            return self._sources[distribution]
        except KeyError:
            raise FetchError(
                FetchErrorReason.NOT_FOUND,
                f"no release source for distribution {distribution!r}",
                context={"known": sorted(self._sources)},
            ) from None

    def _entry_dir(self, key: CacheKey) -> Path:
        return self._dir / key.distribution / key.version / key.architecture

    @staticmethod
    def _checksum_path(target: Path) -> Path:
        return target.with_name(f"{target.name}.sha256")

    def _lock_for(self, key: CacheKey) -> threading.Lock:
        with self._key_locks_guard:
            return self._key_locks.setdefault(key.slug, threading.Lock())

    def _lookup(self, key: CacheKey) -> ImageCacheEntry | None:
        with self._index_lock:
            entry = self._read_index().get(key.slug)
        if entry is not None:
            return entry
        return self._recover_from_sidecar(key)

    def _recover_from_sidecar(self, key: CacheKey) -> ImageCacheEntry | None:
        """Rebuild an entry from its ``.sha256`` file when the index lost it."""
        directory = self._entry_dir(key)
        if not directory.is_dir():
            return None
        for sidecar in sorted(directory.glob("*.sha256")):
            target = sidecar.with_name(sidecar.name[: -len(".sha256")])
            digest = parse_checksum_text(sidecar.read_text(), target.name)
            if digest is None or not target.is_file():
                continue
            entry = ImageCacheEntry(
                key=key,
                path=target,
                filename=target.name,
                digest=digest,
                digest_source="local",
                size_bytes=target.stat().st_size,
                fetched_at=datetime.fromtimestamp(target.stat().st_mtime, timezone.utc),
            )
            self._record(entry)
            return entry
        return None

    def _purge(self, key: CacheKey, entry: ImageCacheEntry) -> None:
        self._remove_files(entry)
        with self._index_lock:
            index = self._read_index()
            index.pop(key.slug, None)
            self._write_index(index)

    def _remove_files(self, entry: ImageCacheEntry) -> None:
        entry.path.unlink(missing_ok=True)
        self._checksum_path(entry.path).unlink(missing_ok=True)

    def _record(self, entry: ImageCacheEntry) -> None:
        with self._index_lock:
            index = self._read_index()
            index[entry.key.slug] = entry
            self._write_index(index)

    def _read_index(self) -> dict[str, ImageCacheEntry]:
        path = self._dir / INDEX_FILENAME
        if not path.exists():
            return {}
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Cache index %s is unreadable (%s); starting empty", path, exc)
            return {}
        return {
            slug: ImageCacheEntry.model_validate(data)
            for slug, data in raw.get("entries", {}).items()
        }

    def _write_index(self, index: dict[str, ImageCacheEntry]) -> None:
        path = self._dir / INDEX_FILENAME
        tmp = path.with_name(f"{INDEX_FILENAME}.tmp")
        payload = {
            "version": 1,
            "entries": {slug: e.model_dump(mode="json") for slug, e in sorted(index.items())},
        }
        tmp.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, path)
