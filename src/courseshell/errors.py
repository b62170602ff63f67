"""Error taxonomy for course workspace operations."""

from __future__ import annotations


class CourseShellError(Exception):
    """Base class for all errors raised by courseshell."""


class ConfigError(CourseShellError):
    """Configuration file is malformed."""


class NotFoundError(CourseShellError):
    """Referenced course, exercise, solution or file does not exist."""


class InvalidPathError(CourseShellError, ValueError):
    """A requested path resolves outside of its allowed root."""


class GitFailure(CourseShellError):
    """A git invocation exited with a non-zero status."""

    def __init__(self, message: str, *, args: list[str] | None = None, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.git_args = list(args or [])
        self.exit_code = exit_code


class ProcessFailure(CourseShellError):
    """Exercise process could not be run or exited unsuccessfully."""


class ProcessSpawnError(ProcessFailure):
    """Child process could not be started."""


class PersistenceFailure(CourseShellError):
    """Completion store could not be read or written."""
