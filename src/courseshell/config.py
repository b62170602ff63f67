"""Settings and course registry loaded from a YAML configuration file."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError, InvalidPathError, NotFoundError
from .models import CourseConfig

HOME_ENV_VAR = "COURSESHELL_HOME"
DEFAULT_DATA_DIR = Path(".courseshell")
CONFIG_FILE_NAME = "config.yaml"
DEFAULT_BRANCH = "main"
DEFAULT_GRACE_PERIOD = 1.5

_SLUG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass(frozen=True)
class Settings:
    """Storage locations, defaults and registered courses."""

    data_dir: Path
    default_branch: str = DEFAULT_BRANCH
    grace_period: float = DEFAULT_GRACE_PERIOD
    courses: dict[str, CourseConfig] = field(default_factory=dict)

    @property
    def courses_root(self) -> Path:
        """Parent directory of every Repository Clone."""
        return self.data_dir / "courses"

    @property
    def workspaces_root(self) -> Path:
        """Parent directory of every course workspace tree."""
        return self.data_dir / "workspaces"

    @property
    def db_path(self) -> Path:
        """SQLite completion database."""
        return self.data_dir / "progress.db"

    def course(self, slug: str) -> CourseConfig:
        """Return the registered course for a slug."""
        validate_slug(slug)
        course = self.courses.get(slug)
        if course is None:
            raise NotFoundError(f"Course '{slug}' is not registered in the configuration.")
        return course

    def branch_for(self, slug: str, branch: str | None = None) -> str:
        """Resolve the branch to use for a course operation."""
        if branch:
            return branch
        course = self.courses.get(slug)
        if course is not None:
            return course.branch
        return self.default_branch

    def clone_dir(self, slug: str) -> Path:
        """Return the Repository Clone directory for a course."""
        validate_slug(slug)
        return self.courses_root / slug

    def course_root(self, slug: str) -> Path:
        """Return the directory holding the exercise tree inside a clone."""
        clone = self.clone_dir(slug)
        course = self.courses.get(slug)
        if course is None or course.root in ("", "."):
            return clone
        return clone / course.root

    def workspace_course_dir(self, slug: str) -> Path:
        """Return the directory holding all workspaces of a course."""
        validate_slug(slug)
        return self.workspaces_root / slug


def validate_slug(slug: str) -> str:
    """Reject course slugs that are not a single safe path segment."""
    if not _SLUG_RE.match(slug or ""):
        raise InvalidPathError(f"Invalid course slug: {slug!r}")
    return slug


def default_data_dir() -> Path:
    """Return the data directory, honoring the environment override."""
    override = os.environ.get(HOME_ENV_VAR, "").strip()
    if override:
        return Path(override).expanduser()
    return DEFAULT_DATA_DIR


def load_settings(config_path: Path | str | None = None, data_dir: Path | str | None = None) -> Settings:
    """Load settings from YAML, falling back to defaults when the file is absent."""
    base = Path(data_dir) if data_dir is not None else default_data_dir()
    path = Path(config_path) if config_path is not None else base / CONFIG_FILE_NAME
    if not path.exists():
        return Settings(data_dir=base)

    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw is None:
        return Settings(data_dir=base)
    return settings_from_dict(raw, base)


def settings_from_dict(raw: object, data_dir: Path) -> Settings:
    """Build settings from parsed YAML content."""
    if not isinstance(raw, dict):
        raise ConfigError("Configuration root must be a mapping.")

    if raw.get("data_dir"):
        data_dir = Path(str(raw["data_dir"])).expanduser()

    default_branch = str(raw.get("default_branch") or DEFAULT_BRANCH).strip()
    grace_raw = raw.get("grace_period_seconds", DEFAULT_GRACE_PERIOD)
    try:
        grace_period = float(grace_raw)
    except (TypeError, ValueError):
        raise ConfigError(f"grace_period_seconds must be a number, got {grace_raw!r}.") from None
    if grace_period < 0:
        raise ConfigError("grace_period_seconds must not be negative.")

    courses_raw = raw.get("courses") or {}
    if not isinstance(courses_raw, dict):
        raise ConfigError("'courses' must be a mapping of slug to course settings.")

    courses: dict[str, CourseConfig] = {}
    for slug, item in courses_raw.items():
        courses[str(slug)] = _course_from_dict(str(slug), item, default_branch)

    return Settings(
        data_dir=data_dir,
        default_branch=default_branch,
        grace_period=grace_period,
        courses=courses,
    )


def _course_from_dict(slug: str, raw: Any, default_branch: str) -> CourseConfig:
    """Build one course entry from raw YAML content."""
    try:
        validate_slug(slug)
    except InvalidPathError as exc:
        raise ConfigError(str(exc)) from None
    if isinstance(raw, str):
        raw = {"repo_url": raw}
    if not isinstance(raw, dict):
        raise ConfigError(f"Course '{slug}' must be a mapping or a repository URL.")

    repo_url = str(raw.get("repo_url", "")).strip()
    if not repo_url:
        raise ConfigError(f"Course '{slug}' has no repo_url.")

    root = str(raw.get("root", ".")).strip() or "."
    root_path = Path(root)
    if root_path.is_absolute() or ".." in root_path.parts:
        raise ConfigError(f"Course '{slug}' root must be a relative path inside the repository.")

    return CourseConfig(
        slug=slug,
        repo_url=repo_url,
        name=str(raw.get("name") or slug),
        branch=str(raw.get("branch") or default_branch).strip(),
        root=root_path.as_posix(),
    )
