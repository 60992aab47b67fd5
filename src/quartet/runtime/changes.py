from __future__ import annotations

import hashlib
import os
import stat
from collections.abc import Iterable, Iterator
from pathlib import Path

from quartet.config import DEFAULT_EXCLUDED_DIRS


def _is_excluded(name: str, excluded: set[str]) -> bool:
    return name.startswith(".") or name in excluded


def iter_workspace_files(
    root: Path,
    excluded_dirs: Iterable[str] = DEFAULT_EXCLUDED_DIRS,
) -> Iterator[tuple[str, os.stat_result]]:
    """Yield ``(relative_posix_path, lstat)`` for regular files under ``root``.

    Hidden and excluded directories are pruned, symlinks are never followed or
    reported, so nothing outside ``root`` can appear.
    """
    excluded = set(excluded_dirs)
    root = root.resolve()
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames[:] = sorted(name for name in dirnames if not _is_excluded(name, excluded))
        for filename in sorted(filenames):
            full_path = os.path.join(dirpath, filename)
            try:
                info = os.lstat(full_path)
            except OSError:
                continue
            if not stat.S_ISREG(info.st_mode):
                continue
            relative = Path(full_path).relative_to(root).as_posix()
            yield relative, info


def modified_since(
    root: Path,
    since_ns: int,
    excluded_dirs: Iterable[str] = DEFAULT_EXCLUDED_DIRS,
) -> list[str]:
    """Relative paths of regular files whose mtime is strictly after ``since_ns``."""
    return [
        relative
        for relative, info in iter_workspace_files(root, excluded_dirs)
        if info.st_mtime_ns > since_ns
    ]


def _digest(path: Path) -> str:
    hasher = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def snapshot_digests(
    root: Path,
    excluded_dirs: Iterable[str] = DEFAULT_EXCLUDED_DIRS,
) -> dict[str, str]:
    digests: dict[str, str] = {}
    resolved = root.resolve()
    for relative, _ in iter_workspace_files(resolved, excluded_dirs):
        try:
            digests[relative] = _digest(resolved / relative)
        except OSError:
            continue
    return digests


def changed_between(before: dict[str, str], after: dict[str, str]) -> list[str]:
    return sorted(path for path, digest in after.items() if before.get(path) != digest)
