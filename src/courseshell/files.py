"""Filesystem helpers for copying exercise trees and confining paths."""

from __future__ import annotations

import os
import shutil
from collections.abc import Iterator
from pathlib import Path, PurePosixPath

from .errors import InvalidPathError

META_MARKER = "_meta"
SKIPPED_NAMES = {".git"}


def is_visible(name: str) -> bool:
    """Return whether a top-level exercise entry belongs to the learner."""
    return not name.startswith(META_MARKER) and name not in SKIPPED_NAMES


def resolve_inside(root: Path, relative: str) -> Path:
    """Join a relative path onto root, rejecting anything that escapes it.

    Only string normalization is used, so no filesystem access happens
    before the containment check.
    """
    if not relative or "\x00" in relative:
        raise InvalidPathError(f"Invalid path: {relative!r}")
    base = Path(os.path.abspath(root))
    candidate = Path(os.path.normpath(os.path.join(base, relative)))
    if candidate == base or not candidate.is_relative_to(base):
        raise InvalidPathError(f"Path {relative!r} escapes {base}")
    return candidate


def normalize_exercise_path(exercise_path: str) -> str:
    """Return a canonical POSIX exercise path, rejecting traversal."""
    cleaned = (exercise_path or "").replace("\\", "/").strip("/")
    if not cleaned:
        raise InvalidPathError("Exercise path is empty.")
    parts = [part for part in cleaned.split("/") if part]
    if any(part in ("..", ".") for part in parts) or PurePosixPath(cleaned).is_absolute():
        raise InvalidPathError(f"Invalid exercise path: {exercise_path!r}")
    return "/".join(parts)


def copy_visible(source: Path, destination: Path) -> list[str]:
    """Copy visible top-level entries of source into destination, overwriting files."""
    destination.mkdir(parents=True, exist_ok=True)
    copied: list[str] = []
    for entry in sorted(source.iterdir(), key=lambda item: item.name):
        if not is_visible(entry.name):
            continue
        target = destination / entry.name
        if entry.is_dir():
            shutil.copytree(entry, target, dirs_exist_ok=True)
        else:
            shutil.copy2(entry, target)
        copied.append(entry.name)
    return copied


def replace_meta(source_exercise: Path, destination_exercise: Path) -> bool:
    """Mirror the ``_meta`` subtree of one exercise directory onto another.

    A destination ``_meta`` is removed when the source has none. Returns
    whether the destination changed.
    """
    source_meta = source_exercise / META_MARKER
    target_meta = destination_exercise / META_MARKER
    if not source_meta.is_dir():
        if not target_meta.exists():
            return False
        shutil.rmtree(target_meta)
        return True
    if target_meta.exists():
        shutil.rmtree(target_meta)
    shutil.copytree(source_meta, target_meta)
    return True


def iter_meta_exercises(course_root: Path) -> Iterator[tuple[str, Path]]:
    """Yield (relative path, directory) for every directory owning a ``_meta`` subtree."""
    for current, dirnames, _filenames in os.walk(course_root):
        dirnames[:] = sorted(name for name in dirnames if name not in SKIPPED_NAMES)
        if META_MARKER in dirnames:
            directory = Path(current)
            relative = directory.relative_to(course_root).as_posix()
            if relative != ".":
                yield relative, directory
        dirnames[:] = [name for name in dirnames if not name.startswith(META_MARKER)]


def list_relative_files(root: Path) -> list[str]:
    """Return sorted POSIX paths of all visible files under root."""
    files: list[str] = []
    for current, dirnames, filenames in os.walk(root):
        directory = Path(current)
        if directory == root:
            dirnames[:] = [name for name in dirnames if is_visible(name)]
            filenames = [name for name in filenames if is_visible(name)]
        else:
            dirnames[:] = [name for name in dirnames if name not in SKIPPED_NAMES]
        for name in filenames:
            files.append((directory / name).relative_to(root).as_posix())
    files.sort()
    return files
