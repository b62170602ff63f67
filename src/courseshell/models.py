"""Core domain models for course repositories, workspaces and runs."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class CourseConfig:
    """One registered course repository."""

    slug: str
    repo_url: str
    name: str
    branch: str
    root: str = "."


@dataclass(frozen=True)
class TreeNode:
    """One chapter or exercise in a course tree."""

    key: str
    label: str
    path: str
    completed: bool | None = None
    children: tuple[TreeNode, ...] | None = None

    @property
    def is_leaf(self) -> bool:
        """Return whether this node is an exercise rather than a chapter."""
        return self.children is None


@dataclass(frozen=True)
class ProcessResult:
    """Exit status and captured output of a finished process."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        """Return whether the process exited with status zero."""
        return self.exit_code == 0


@dataclass(frozen=True)
class UpdateStatus:
    """Ahead/behind comparison of a clone against its remote branch."""

    update_available: bool
    ahead_by: int
    behind_by: int


@dataclass(frozen=True)
class PullResult:
    """Outcome of pulling a course repository."""

    updated: bool
    output: str
    forced: bool
    synced_meta_for: int


@dataclass(frozen=True)
class CompletionRecord:
    """Persisted completion state for one exercise."""

    course_slug: str
    exercise_path: str
    completed: bool
    completed_at: str | None


@dataclass(frozen=True)
class ExerciseMeta:
    """Declarative metadata read from an exercise's ``_meta/meta.json``."""

    test_cmd: str | None = None
    init_cmd: str | None = None
    extra: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class RunOutcome:
    """Terminal state of an exercise run or test."""

    success: bool
    code: int | None
    error: str | None = None
