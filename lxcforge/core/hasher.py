"""Canonical hashing helpers for cache verification and stage records.

File digests are computed by streaming, so multi-hundred-megabyte images
never have to be held in memory.  ``tree_digest`` gives a stable fingerprint
of a whole directory tree (paths, modes, link targets and contents) for
comparing a tree before and after an operation.
"""

from __future__ import annotations

import hashlib
import json
import os
import stat
from pathlib import Path
from typing import Any

_CHUNK_SIZE = 1024 * 1024

SUPPORTED_ALGORITHMS: frozenset[str] = frozenset({"sha256", "sha512"})


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes: sorted keys, compact separators, UTF-8."""
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def file_digest(path: Path, algorithm: str = "sha256") -> str:
    """Stream *path* through *algorithm* and return the hex digest."""
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(
            f"Unsupported digest algorithm {algorithm!r}. "
            f"Supported: {sorted(SUPPORTED_ALGORITHMS)}"
        )
    h = hashlib.new(algorithm)
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
            h.update(chunk)
    return h.hexdigest()


def tree_digest(root: Path) -> str:
    """SHA-256 over every entry below *root*.

    Covers relative path, file type, permission bits, symlink targets and
    regular file contents.  Timestamps are deliberately excluded.
    """
    root = Path(root)
    h = hashlib.sha256()
    if not root.exists():
        return h.hexdigest()
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(dirnames + filenames):
            full = Path(dirpath) / name
            rel = full.relative_to(root).as_posix()
            st = full.lstat()
            h.update(rel.encode("utf-8"))
            h.update(f":{stat.S_IFMT(st.st_mode)}:{stat.S_IMODE(st.st_mode)}".encode())
            if stat.S_ISLNK(st.st_mode):
                h.update(os.readlink(full).encode("utf-8"))
            elif stat.S_ISREG(st.st_mode):
                h.update(file_digest(full).encode("ascii"))
            h.update(b"\0")
    return h.hexdigest()


def compute_input_hash(stage_id: str, inputs: dict[str, Any]) -> str:
    """SHA-256 of canonical(stage_id + sorted inputs)."""
    payload = {"stage_id": stage_id, "inputs": inputs}
    return sha256_hex(canonical_json_bytes(payload))


def compute_output_hash(stage_id: str, outputs: dict[str, Any]) -> str:
    """SHA-256 of canonical(stage_id + sorted outputs)."""
    payload = {"stage_id": stage_id, "outputs": outputs}
    return sha256_hex(canonical_json_bytes(payload))


def format_checksum_line(digest: str, filename: str) -> str:
    """Render one line in ``sha256sum`` format."""
    return f"{digest}  {filename}\n"


def parse_checksum_text(text: str, filename: str | None = None) -> str | None:
    """Extract a digest from ``sha256sum``-style text.

    A bare digest (Alpine's ``.sha256`` files) or a single entry is returned
    as-is.  When *filename* is given and the text lists several entries, only
    the line naming it is accepted.  Returns ``None`` when nothing matches.
    """
    entries: list[tuple[str, str | None]] = []
    for line in text.splitlines():
        parts = line.strip().split()
        if not parts:
            continue
        digest = parts[0].lower()
        if not all(c in "0123456789abcdef" for c in digest):
            continue
        name = parts[-1].lstrip("*").rsplit("/", 1)[-1] if len(parts) > 1 else None
        entries.append((digest, name))

    if not entries:
        return None
    if filename is None or len(entries) == 1:
        return entries[0][0]
    for digest, name in entries:
        if name == filename:
            return digest
    return None
