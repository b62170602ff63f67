"""Build the chapter/exercise hierarchy of a cloned course."""

from __future__ import annotations

import re
from collections.abc import Callable
from pathlib import Path

from .models import TreeNode

NUMERIC_PREFIX_RE = re.compile(r"^\d+(?:_\d+)*")
_LEADING_SEGMENTS_RE = re.compile(r"^\d+(?:_\d+)*[\s._+-]*")
_NATURAL_SPLIT_RE = re.compile(r"(\d+)")

CompletionLookup = Callable[[str], bool]


def is_exercise_dir_name(name: str) -> bool:
    """Return whether a directory name follows the numeric-prefix convention."""
    return bool(NUMERIC_PREFIX_RE.match(name))


def natural_key(name: str) -> tuple[tuple[int, int | str], ...]:
    """Sort key that orders embedded numbers numerically (``2_a`` before ``10_b``)."""
    parts: list[tuple[int, int | str]] = []
    for chunk in _NATURAL_SPLIT_RE.split(name):
        if not chunk:
            continue
        if chunk.isdigit():
            parts.append((0, int(chunk)))
        else:
            parts.append((1, chunk.lower()))
    return tuple(parts)


def label_for(name: str) -> str:
    """Human-readable label: numeric prefix stripped and remainder title-cased."""
    stripped = _LEADING_SEGMENTS_RE.sub("", name)
    words = re.sub(r"[_-]+", " ", stripped).split()
    if not words:
        return name
    return " ".join(word[:1].upper() + word[1:] for word in words)


def build_tree(course_root: Path, is_completed: CompletionLookup | None = None) -> list[TreeNode]:
    """Return qualifying directories under a course root as a nested tree."""
    lookup = is_completed or (lambda _path: False)
    return _build_level(course_root, "", lookup)


def _build_level(directory: Path, prefix: str, lookup: CompletionLookup) -> list[TreeNode]:
    if not directory.is_dir():
        return []
    names = [entry.name for entry in directory.iterdir() if entry.is_dir() and is_exercise_dir_name(entry.name)]
    names.sort(key=natural_key)

    nodes: list[TreeNode] = []
    for name in names:
        path = f"{prefix}/{name}" if prefix else name
        children = _build_level(directory / name, path, lookup)
        if children:
            nodes.append(TreeNode(key=path, label=label_for(name), path=path, children=tuple(children)))
        else:
            nodes.append(TreeNode(key=path, label=label_for(name), path=path, completed=lookup(path)))
    return nodes


def leaf_paths(nodes: list[TreeNode] | tuple[TreeNode, ...]) -> list[str]:
    """Flatten a tree into its exercise paths in display order."""
    paths: list[str] = []
    for node in nodes:
        if node.children is None:
            paths.append(node.path)
        else:
            paths.extend(leaf_paths(node.children))
    return paths
