"""Host-side file helpers for a root filesystem under construction.

Paths are always given as they appear inside the target (``/etc/hosts``)
and are mapped below the root directory; nothing here follows a path out
of the root.  Every helper is idempotent.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tarfile
from collections.abc import Iterable
from pathlib import Path, PurePosixPath

from lxcforge.models.reports import RootfsStats

logger = logging.getLogger(__name__)


def in_root(root: Path, path: str) -> Path:
    """Map an absolute in-target *path* to its location below *root*."""
    relative = Path(path.lstrip("/"))
    if any(part == ".." for part in relative.parts):
        raise ValueError(f"path {path!r} escapes the root filesystem")
    return Path(root) / relative


def write_file(root: Path, path: str, content: str, mode: int = 0o644) -> Path:
    """Write *content* to *path* inside *root*, creating parent directories."""
    target = in_root(root, path)
    target.parent.mkdir(parents=True, exist_ok=True)
    # Replace rather than rewrite: earlier passes may have left it read-only.
    if target.is_symlink() or target.is_file():
        target.unlink()
    target.write_text(content, encoding="utf-8")
    target.chmod(mode)
    return target


def ensure_dir(root: Path, path: str, mode: int = 0o755) -> Path:
    target = in_root(root, path)
    target.mkdir(parents=True, exist_ok=True)
    target.chmod(mode)
    return target


def symlink(root: Path, path: str, target: str) -> Path:
    """Create (or replace) a symlink at *path* pointing to *target*."""
    link = in_root(root, path)
    link.parent.mkdir(parents=True, exist_ok=True)
    if link.is_symlink() or link.is_file():
        link.unlink()
    elif link.is_dir():
        shutil.rmtree(link)
    link.symlink_to(target)
    return link


def remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink(missing_ok=True)
    elif path.is_dir():
        shutil.rmtree(path, ignore_errors=True)


def remove_glob(root: Path, pattern: str) -> int:
    """Remove everything matching the in-target glob *pattern*.  Returns the count."""
    relative = pattern.lstrip("/")
    if any(part == ".." for part in Path(relative).parts):
        raise ValueError(f"pattern {pattern!r} escapes the root filesystem")
    removed = 0
    for match in sorted(Path(root).glob(relative), reverse=True):
        remove_path(match)
        removed += 1
    return removed


def empty_dir(root: Path, path: str, mode: int = 0o755) -> Path:
    """Remove the contents of *path* and leave it in place with *mode*."""
    target = in_root(root, path)
    if target.is_dir() and not target.is_symlink():
        for child in target.iterdir():
            remove_path(child)
    else:
        remove_path(target)
        target.mkdir(parents=True, exist_ok=True)
    target.chmod(mode)
    return target


def set_mode(root: Path, path: str, mode: int) -> bool:
    """chmod *path* inside *root* if it exists."""
    target = in_root(root, path)
    if not target.exists() or target.is_symlink():
        return False
    target.chmod(mode)
    return True


def walk_files(root: Path, skip: Iterable[Path] = ()):
    """Yield (path, lstat) for every entry below *root*, without following links.

    Directories on another device than *root* (mounted pseudo filesystems
    such as ``/proc``) and the directories in *skip* are yielded nowhere and
    never descended into.  Entries that vanish during the walk are ignored.
    """
    device = os.lstat(root).st_dev
    pruned = {Path(p) for p in skip}
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        descend: list[str] = []
        for name in sorted(dirnames):
            full = base / name
            if full in pruned:
                continue
            st = _lstat(full)
            if st is None or (stat.S_ISDIR(st.st_mode) and st.st_dev != device):
                continue
            descend.append(name)
            yield full, st
        dirnames[:] = descend
        for name in sorted(filenames):
            full = base / name
            st = _lstat(full)
            if st is not None:
                yield full, st


def _lstat(path: Path) -> os.stat_result | None:
    try:
        return os.lstat(path)
    except FileNotFoundError:
        return None


def collect_stats(root: Path, skip: Iterable[Path] = ()) -> RootfsStats:
    """Size and entry counts of a root filesystem."""
    size = files = dirs = executables = 0
    for _, st in walk_files(root, skip):
        if stat.S_ISDIR(st.st_mode):
            dirs += 1
        elif stat.S_ISREG(st.st_mode):
            files += 1
            size += st.st_size
            if st.st_mode & 0o111:
                executables += 1
    return RootfsStats(
        size_bytes=size,
        file_count=files,
        directory_count=dirs,
        executable_count=executables,
    )


def extract_archive(archive_path: Path, destination: Path) -> int:
    """Extract a (compressed) tar into *destination*.  Returns the member count.

    Members with absolute names or ``..`` components are rejected with
    ``ValueError`` before anything is written.  Root filesystems carry
    absolute symlinks, so no further extraction filter is applied.
    """
    with tarfile.open(archive_path, "r:*") as archive:
        members = archive.getmembers()
        for member in members:
            path = PurePosixPath(member.name)
            if path.is_absolute() or ".." in path.parts:
                raise ValueError(f"archive member {member.name!r} escapes the extraction root")
        destination.mkdir(parents=True, exist_ok=True)
        if hasattr(tarfile, "fully_trusted_filter"):
            archive.extractall(destination, filter="fully_trusted")
        else:
            archive.extractall(destination)
    return len(members)
