"""Clone, compare and pull course repositories with git."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from collections.abc import Callable
from pathlib import Path

from .config import Settings
from .errors import GitFailure, NotFoundError, ProcessSpawnError
from .files import iter_meta_exercises, replace_meta
from .models import ProcessResult, PullResult, UpdateStatus
from .process_runner import ProcessRunner

logger = logging.getLogger(__name__)

GIT = "git"
_AHEAD_BEHIND_RE = re.compile(r"^(\d+)\s+(\d+)$")

ProgressFn = Callable[[str, int | None, str | None], None]
LogFn = Callable[[str, str], None]


def parse_ahead_behind(text: str) -> tuple[int, int]:
    """Parse ``git rev-list --left-right --count`` output into (ahead, behind)."""
    stripped = text.strip()
    match = _AHEAD_BEHIND_RE.match(stripped)
    if match:
        return int(match.group(1)), int(match.group(2))
    parts = stripped.split()
    if len(parts) >= 2:
        return _int_or_zero(parts[0]), _int_or_zero(parts[1])
    return 0, 0


def _int_or_zero(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0


def _noop_progress(step: str, percent: int | None = None, message: str | None = None) -> None:
    return None


def _noop_log(stream: str, chunk: str) -> None:
    return None


class _Progress:
    """Progress reporter that never lets percentages go backwards."""

    def __init__(self, callback: ProgressFn) -> None:
        self._callback = callback
        self._percent = 0

    def __call__(self, step: str, percent: int, message: str | None = None) -> None:
        self._percent = max(self._percent, min(100, percent))
        self._callback(step, self._percent, message)


class GitSyncEngine:
    """Owns the Repository Clone of every course."""

    def __init__(self, settings: Settings, runner: ProcessRunner) -> None:
        self.settings = settings
        self.runner = runner

    def clone_path(self, slug: str) -> Path:
        """Return where the Repository Clone of a course lives."""
        return self.settings.clone_dir(slug)

    async def clone(
        self,
        slug: str,
        branch: str | None = None,
        progress: ProgressFn = _noop_progress,
        log: LogFn = _noop_log,
    ) -> Path:
        """Fresh single-branch shallow clone of a registered course."""
        course = self.settings.course(slug)
        branch = self.settings.branch_for(slug, branch)
        report = _Progress(progress)
        root = self.settings.courses_root
        dest = self.clone_path(slug)

        report("prepare", 0, f"Preparing {dest}")
        root.mkdir(parents=True, exist_ok=True)
        if dest.exists():
            logger.info("removing existing clone of %s before re-cloning", slug)
            await asyncio.to_thread(shutil.rmtree, dest)

        report("cloning", 10, f"Cloning {course.repo_url} ({branch})")
        await self._git_streaming(
            ["clone", "--progress", "--depth", "1", "--branch", branch, "--single-branch", course.repo_url, str(dest)],
            cwd=root,
            log=log,
            what="git clone",
        )
        report("finalize", 100, "Clone complete")
        logger.info("cloned %s (%s) into %s", slug, branch, dest)
        return dest

    async def check_update_available(
        self,
        slug: str,
        branch: str | None = None,
        progress: ProgressFn = _noop_progress,
        log: LogFn = _noop_log,
    ) -> UpdateStatus:
        """Fetch origin and count commits ahead of and behind ``origin/<branch>``."""
        dest = self._require_clone(slug)
        branch = self.settings.branch_for(slug, branch)
        report = _Progress(progress)

        report("prepare", 0, None)
        report("fetch", 20, "Fetching origin")
        await self._git_streaming(["fetch", "--progress", "origin"], cwd=dest, log=log, what="git fetch")

        report("compare", 70, f"Comparing {branch} with origin/{branch}")
        result = await self._git(["rev-list", "--left-right", "--count", f"{branch}...origin/{branch}"], dest)
        self._check(result, "git rev-list", ["rev-list"])
        ahead_by, behind_by = parse_ahead_behind(result.stdout)

        report("finalize", 100, None)
        return UpdateStatus(update_available=behind_by > 0, ahead_by=ahead_by, behind_by=behind_by)

    async def pull(
        self,
        slug: str,
        branch: str | None = None,
        progress: ProgressFn = _noop_progress,
        log: LogFn = _noop_log,
    ) -> PullResult:
        """Bring the clone to ``origin/<branch>`` and refresh workspace metadata."""
        dest = self._require_clone(slug)
        branch = self.settings.branch_for(slug, branch)
        report = _Progress(progress)

        report("prepare", 0, f"Checking out {branch}")
        await self._checkout(dest, branch, log)

        report("pull", 40, f"Pulling origin/{branch}")
        forced = False
        pulled = await self._git(["pull", "--ff-only", "origin", branch], dest)
        _forward(pulled, log)
        output = pulled.stdout
        if not pulled.success:
            logger.warning(
                "fast-forward pull of %s failed, resetting to origin/%s: %s",
                slug,
                branch,
                (pulled.stderr or pulled.stdout).strip(),
            )
            report("force-sync", 60, f"History diverged; resetting to origin/{branch}")
            output = await self._force_sync(dest, branch, log)
            forced = True

        report("sync-meta", 85, "Refreshing exercise metadata")
        synced = await asyncio.to_thread(self.sync_workspace_meta, slug)

        report("finalize", 100, "Pull complete")
        logger.info("pulled %s (%s), forced=%s, synced metadata for %d workspace(s)", slug, branch, forced, synced)
        return PullResult(updated=True, output=output, forced=forced, synced_meta_for=synced)

    def sync_workspace_meta(self, slug: str) -> int:
        """Mirror ``_meta`` subtrees of the clone into existing workspaces; user files are untouched.

        Workspaces whose exercise lost its ``_meta`` upstream drop their copy.
        """
        course_root = self.settings.course_root(slug)
        workspaces = self.settings.workspace_course_dir(slug)
        if not workspaces.is_dir() or not course_root.is_dir():
            return 0
        relatives = {relative for relative, _source in iter_meta_exercises(course_root)}
        relatives.update(relative for relative, _workspace in iter_meta_exercises(workspaces))
        synced = 0
        for relative in sorted(relatives):
            source = course_root / relative
            workspace = workspaces / relative
            if source.is_dir() and workspace.is_dir() and replace_meta(source, workspace):
                synced += 1
        return synced

    async def _checkout(self, dest: Path, branch: str, log: LogFn) -> None:
        local = await self._git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], dest)
        if local.success:
            result = await self._git(["checkout", branch], dest)
            _forward(result, log)
            self._check(result, "git checkout", ["checkout", branch])
            return

        # Single-branch clones only track the cloned branch, so fetch the target explicitly.
        logger.info("creating local branch %s from origin/%s in %s", branch, branch, dest)
        fetched = await self._git(["fetch", "origin", f"+refs/heads/{branch}:refs/remotes/origin/{branch}"], dest)
        _forward(fetched, log)
        self._check(fetched, "git fetch", ["fetch", "origin", branch])
        result = await self._git(["checkout", "-b", branch, "--track", f"origin/{branch}"], dest)
        _forward(result, log)
        self._check(result, "git checkout", ["checkout", "-b", branch])

    async def _force_sync(self, dest: Path, branch: str, log: LogFn) -> str:
        outputs: list[str] = []
        for args, what in (
            (["fetch", "origin", f"+refs/heads/{branch}:refs/remotes/origin/{branch}"], "git fetch"),
            (["reset", "--hard", f"origin/{branch}"], "git reset"),
            (["clean", "-fd"], "git clean"),
        ):
            result = await self._git(args, dest)
            _forward(result, log)
            self._check(result, what, args)
            outputs.append(result.stdout)
        return "".join(outputs)

    def _require_clone(self, slug: str) -> Path:
        dest = self.clone_path(slug)
        if not dest.is_dir():
            raise NotFoundError(f"Course '{slug}' not found. Clone it first.")
        return dest

    async def _git(self, args: list[str], cwd: Path) -> ProcessResult:
        logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
        try:
            return await self.runner.run(GIT, args, cwd)
        except ProcessSpawnError as exc:
            raise GitFailure(str(exc), args=args) from exc

    async def _git_streaming(self, args: list[str], cwd: Path, log: LogFn, what: str) -> ProcessResult:
        logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
        try:
            result = await self.runner.run_streaming(
                GIT,
                args,
                cwd,
                on_stdout=lambda chunk: log("stdout", chunk),
                on_stderr=lambda chunk: log("stderr", chunk),
            )
        except ProcessSpawnError as exc:
            raise GitFailure(str(exc), args=args) from exc
        self._check(result, what, args)
        return result

    @staticmethod
    def _check(result: ProcessResult, what: str, args: list[str]) -> None:
        if not result.success:
            detail = (result.stderr or result.stdout).strip()
            raise GitFailure(f"{what} failed: {detail}", args=args, exit_code=result.exit_code)


def _forward(result: ProcessResult, log: LogFn) -> None:
    """Relay buffered output of a git step to the log callback."""
    if result.stdout:
        log("stdout", result.stdout)
    if result.stderr:
        log("stderr", result.stderr)
