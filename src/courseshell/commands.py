"""Tokenize exercise commands and map exercise files to interpreters."""

from __future__ import annotations

import shlex
import sys
from dataclasses import dataclass
from pathlib import PurePosixPath

TESTS_DIR = "tests"

INTERPRETERS: dict[str, tuple[str, ...]] = {
    ".py": (sys.executable,),
    ".js": ("node",),
    ".mjs": ("node",),
    ".cjs": ("node",),
    ".ts": ("npx", "tsx"),
    ".sh": ("sh",),
    ".rb": ("ruby",),
}


@dataclass(frozen=True)
class CommandSpec:
    """Executable plus argument vector."""

    executable: str
    args: tuple[str, ...] = ()

    def with_args(self, args: list[str]) -> CommandSpec:
        """Return a copy with the same executable and new arguments."""
        return CommandSpec(executable=self.executable, args=tuple(args))

    def display(self) -> str:
        """Shell-quoted command line for log messages."""
        return shlex.join([self.executable, *self.args])


def parse_command(text: str | None) -> CommandSpec | None:
    """Split a shell-style command string into executable and arguments."""
    if text is None:
        return None
    try:
        tokens = shlex.split(text.strip(), posix=True)
    except ValueError:
        return None
    if not tokens:
        return None
    return CommandSpec(executable=tokens[0], args=tuple(tokens[1:]))


def default_test_command(tests_dir: str = TESTS_DIR) -> CommandSpec:
    """Host-runtime test command used when an exercise declares none."""
    return CommandSpec(executable=sys.executable, args=("-m", "unittest", "discover", "-s", tests_dir))


def rewrite_tests_args(args: list[str] | tuple[str, ...], tests_dir: str = TESTS_DIR) -> list[str]:
    """Rewrite arguments that point into the tests directory relative to it.

    The test process runs with the tests directory as its working directory,
    so ``tests/test_sum.py`` becomes ``test_sum.py`` and ``tests`` becomes ``.``.
    """
    rewritten: list[str] = []
    for arg in args:
        if arg.startswith("-") and "=" in arg:
            option, value = arg.split("=", 1)
            rewritten.append(f"{option}={_rewrite_one(value, tests_dir)}")
        else:
            rewritten.append(_rewrite_one(arg, tests_dir))
    return rewritten


def _rewrite_one(arg: str, tests_dir: str) -> str:
    if not arg or arg.startswith("-"):
        return arg
    # PurePosixPath drops "." segments, so "./tests/x" and "tests/x" compare equal.
    parts = PurePosixPath(arg).parts
    if not parts or parts[0] != tests_dir:
        return arg
    remainder = parts[1:]
    if not remainder:
        return "."
    return str(PurePosixPath(*remainder))


def interpreter_for(filename: str) -> list[str] | None:
    """Return the interpreter command for a file, if its extension is known."""
    suffix = PurePosixPath(filename).suffix.lower()
    interpreter = INTERPRETERS.get(suffix)
    return list(interpreter) if interpreter is not None else None
