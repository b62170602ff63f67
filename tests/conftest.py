from __future__ import annotations

import shutil
import subprocess
import sys
from collections.abc import Callable, Iterator
from pathlib import Path
from uuid import uuid4

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from courseshell.config import Settings  # noqa: E402
from courseshell.models import CourseConfig  # noqa: E402

SLUG = "py101"
GIT_IDENTITY = ["-c", "user.name=Course Author", "-c", "user.email=author@example.com"]

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _tmp_path_fixture() -> Iterator[Path]:
    """Provide per-test temporary directory path inside the workspace.

    This intentionally overrides pytest's builtin ``tmp_path`` fixture for this
    repository. In this environment, system temp locations and builtin tmp-path
    setup are not reliable, so tests keep temporary files under the project
    working directory at ``.tmp_pytest/``.
    """
    base = ROOT / ".tmp_pytest"
    base.mkdir(parents=True, exist_ok=True)
    path = base / str(uuid4())
    path.mkdir(parents=True, exist_ok=False)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        try:
            next(base.iterdir())
        except StopIteration:
            base.rmdir()
        except FileNotFoundError:
            pass


tmp_path = pytest.fixture(name="tmp_path")(_tmp_path_fixture)


def git(cwd: Path, *args: str) -> str:
    """Run git synchronously for fixture setup."""
    completed = subprocess.run(
        ["git", *GIT_IDENTITY, *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


def write_files(root: Path, files: dict[str, str]) -> None:
    for relative, content in files.items():
        target = root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")


COURSE_FILES = {
    "course.json": '{"ignoreExerciseFiles": ["*.pyc"]}',
    "overview.md": "# Python 101\n",
    "1_basics/1_hello/main.py": "print('hello')\n",
    "1_basics/1_hello/_meta/task.md": "# Say hello\n",
    "1_basics/1_hello/_meta/meta.json": '{"difficulty": "easy"}',
    "1_basics/1_hello/_meta/solution/main.py": "print('solved')\n",
    "1_basics/2_sum/sum.py": "def add(a, b):\n    return 0\n",
    "1_basics/2_sum/tests/test_sum.py": (
        "import sys\n"
        "import unittest\n"
        "sys.path.insert(0, '..')\n"
        "from sum import add\n\n\n"
        "class SumTest(unittest.TestCase):\n"
        "    def test_add(self):\n"
        "        self.assertEqual(add(2, 3), 5)\n"
    ),
    "1_basics/2_sum/_meta/solution/sum.py": "def add(a, b):\n    return a + b\n",
    "2_loops/README.md": "chapter notes\n",
    "2_loops/1_for/loop.py": "for i in range(3):\n    print(i)\n",
    "notes/readme.txt": "not an exercise\n",
}


class OriginRepo:
    """Non-bare local repository acting as a course remote."""

    def __init__(self, path: Path) -> None:
        self.path = path

    @property
    def url(self) -> str:
        return self.path.as_uri()

    def commit(self, files: dict[str, str], message: str) -> None:
        write_files(self.path, files)
        git(self.path, "add", "-A")
        git(self.path, "commit", "-q", "-m", message)


@pytest.fixture
def origin(tmp_path: Path) -> OriginRepo:
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    path = tmp_path / "origin"
    path.mkdir()
    git(path, "init", "-q")
    git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    repo = OriginRepo(path)
    repo.commit(COURSE_FILES, "initial course")
    return repo


@pytest.fixture
def settings_for(tmp_path: Path) -> Callable[[str], Settings]:
    def build(repo_url: str) -> Settings:
        course = CourseConfig(slug=SLUG, repo_url=repo_url, name="Python 101", branch="main")
        return Settings(data_dir=tmp_path / "data", grace_period=0.5, courses={SLUG: course})

    return build


@pytest.fixture
def course_settings(tmp_path: Path) -> Settings:
    """Settings whose clone is a plain directory written by the test (no git)."""
    course = CourseConfig(slug=SLUG, repo_url="file:///unused", name="Python 101", branch="main")
    settings = Settings(data_dir=tmp_path / "data", grace_period=0.5, courses={SLUG: course})
    write_files(settings.clone_dir(SLUG), COURSE_FILES)
    return settings


def amend_origin(repo: OriginRepo, files: dict[str, str]) -> None:
    """Rewrite the origin's only commit so clones can no longer fast-forward."""
    write_files(repo.path, files)
    git(repo.path, "add", "-A")
    git(repo.path, "commit", "-q", "--amend", "-m", "rewritten course")
