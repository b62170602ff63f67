"""Per-exercise working copies derived from the read-only course clone."""

from __future__ import annotations

import asyncio
import fnmatch
import inspect
import json
import logging
import shutil
from collections.abc import Awaitable, Callable
from pathlib import Path

from .commands import (
    TESTS_DIR,
    CommandSpec,
    default_test_command,
    interpreter_for,
    parse_command,
    rewrite_tests_args,
)
from .config import Settings
from .errors import CourseShellError, NotFoundError, ProcessFailure
from .events import EventSink
from .files import (
    META_MARKER,
    copy_visible,
    list_relative_files,
    normalize_exercise_path,
    replace_meta,
    resolve_inside,
)
from .models import CompletionRecord, ExerciseMeta, RunOutcome
from .process_runner import ProcessHandle, ProcessRunner
from .progress import CompletionStore
from .schemas import RunDoneEvent, RunLogEvent, TestDoneEvent, TestLogEvent

logger = logging.getLogger(__name__)

COURSE_CONFIG_FILE = "course.json"
META_FILE = "meta.json"
SOLUTION_DIR = "solution"
COURSE_OVERVIEW = "overview.md"
DOC_CANDIDATES = (
    f"{META_MARKER}/task.md",
    f"{META_MARKER}/README.md",
    f"{META_MARKER}/overview.md",
    f"{META_MARKER}/description.md",
    "README.md",
)

ExerciseKey = tuple[str, str]
DirectoryPrompt = Callable[[str], Awaitable[Path | str | None] | Path | str | None]
LogFn = Callable[[str, str], None]


class ProcessRegistry:
    """Live child processes grouped by (course slug, exercise path)."""

    def __init__(self) -> None:
        self._handles: dict[ExerciseKey, set[ProcessHandle]] = {}

    def add(self, key: ExerciseKey, handle: ProcessHandle) -> None:
        """Track a live handle under its exercise."""
        self._handles.setdefault(key, set()).add(handle)

    def discard(self, key: ExerciseKey, handle: ProcessHandle) -> None:
        """Forget a handle; the key disappears once its set is empty."""
        handles = self._handles.get(key)
        if handles is None:
            return
        handles.discard(handle)
        if not handles:
            del self._handles[key]

    def handles(self, key: ExerciseKey) -> list[ProcessHandle]:
        """Return a snapshot of the handles tracked for an exercise."""
        return list(self._handles.get(key, ()))

    def keys(self) -> list[ExerciseKey]:
        """Return the exercises that currently have live processes."""
        return list(self._handles)

    def __contains__(self, key: object) -> bool:
        return key in self._handles

    def __len__(self) -> int:
        return sum(len(handles) for handles in self._handles.values())


class WorkspaceManager:
    """Materializes, edits, runs and tests exercise workspaces."""

    def __init__(
        self,
        settings: Settings,
        store: CompletionStore,
        runner: ProcessRunner,
        events: EventSink,
        registry: ProcessRegistry | None = None,
        prompt_directory: DirectoryPrompt | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.runner = runner
        self.events = events
        self.registry = registry if registry is not None else ProcessRegistry()
        self.prompt_directory = prompt_directory

    # --- locations ---

    def exercise_source(self, slug: str, exercise_path: str) -> Path:
        """Return the exercise directory inside the Repository Clone."""
        return resolve_inside(self.settings.course_root(slug), normalize_exercise_path(exercise_path))

    def workspace_dir(self, slug: str, exercise_path: str) -> Path:
        """Return the mutable workspace directory of an exercise."""
        return resolve_inside(self.settings.workspace_course_dir(slug), normalize_exercise_path(exercise_path))

    # --- lifecycle ---

    async def ensure_workspace(self, slug: str, exercise_path: str) -> Path:
        """Create the workspace from the clone unless it already exists."""
        source = self.exercise_source(slug, exercise_path)
        workspace = self.workspace_dir(slug, exercise_path)
        if workspace.is_dir():
            return workspace
        if not source.is_dir():
            raise NotFoundError(f"Exercise '{exercise_path}' not found in course '{slug}'.")

        await asyncio.to_thread(_materialize, source, workspace)
        logger.info("materialized workspace %s/%s", slug, exercise_path)
        return workspace

    async def reset(self, slug: str, exercise_path: str) -> Path:
        """Discard all user changes by recreating the workspace."""
        source = self.exercise_source(slug, exercise_path)
        if not source.is_dir():
            raise NotFoundError(f"Exercise '{exercise_path}' not found in course '{slug}'.")
        workspace = self.workspace_dir(slug, exercise_path)
        if workspace.exists():
            await asyncio.to_thread(shutil.rmtree, workspace)
        logger.info("reset workspace %s/%s", slug, exercise_path)
        return await self.ensure_workspace(slug, exercise_path)

    async def apply_solution(self, slug: str, exercise_path: str) -> list[str]:
        """Overwrite visible workspace files with the official solution."""
        workspace = await self.ensure_workspace(slug, exercise_path)
        solution = self.exercise_source(slug, exercise_path) / META_MARKER / SOLUTION_DIR
        if not solution.is_dir():
            raise NotFoundError(f"No solution available for '{exercise_path}' in course '{slug}'.")
        copied = await asyncio.to_thread(copy_visible, solution, workspace)
        logger.info("applied solution to %s/%s (%d entries)", slug, exercise_path, len(copied))
        return copied

    async def export_workspace(self, slug: str, exercise_path: str) -> Path | None:
        """Copy visible workspace files to a user-chosen directory; None when canceled."""
        workspace = await self.ensure_workspace(slug, exercise_path)
        if self.prompt_directory is None:
            raise CourseShellError("No directory prompt is available for export.")
        chosen = self.prompt_directory(f"Export {slug}/{exercise_path} to directory")
        if inspect.isawaitable(chosen):
            chosen = await chosen
        if chosen is None or str(chosen).strip() == "":
            return None
        destination = Path(chosen).expanduser()
        await asyncio.to_thread(copy_visible, workspace, destination)
        logger.info("exported %s/%s to %s", slug, exercise_path, destination)
        return destination

    # --- files ---

    async def list_files(self, slug: str, exercise_path: str) -> list[str]:
        """Return visible workspace files minus course-level ignore patterns."""
        workspace = await self.ensure_workspace(slug, exercise_path)
        patterns = await asyncio.to_thread(self._ignore_patterns, slug)
        names = await asyncio.to_thread(list_relative_files, workspace)
        return [
            name
            for name in names
            if not any(
                fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(Path(name).name, pattern) for pattern in patterns
            )
        ]

    async def read_file(self, slug: str, exercise_path: str, file: str) -> str:
        """Return a workspace file as UTF-8 text."""
        target = resolve_inside(self.workspace_dir(slug, exercise_path), file)
        await self.ensure_workspace(slug, exercise_path)
        if not target.is_file():
            raise NotFoundError(f"File '{file}' not found in '{exercise_path}'.")
        try:
            return await asyncio.to_thread(target.read_text, encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise CourseShellError(f"File '{file}' in '{exercise_path}' is not UTF-8 text.") from exc

    async def write_file(self, slug: str, exercise_path: str, file: str, content: str) -> None:
        """Write a workspace file, creating parent directories as needed."""
        target = resolve_inside(self.workspace_dir(slug, exercise_path), file)
        await self.ensure_workspace(slug, exercise_path)
        await asyncio.to_thread(_write_text, target, content)

    async def read_documentation(self, slug: str, exercise_path: str) -> tuple[str, Path]:
        """Return exercise instructions and the directory they were read from.

        The live clone wins over the workspace copy so that pulled edits show
        up immediately. Missing documentation yields an empty string.
        """
        source = self.exercise_source(slug, exercise_path)
        workspace = self.workspace_dir(slug, exercise_path)
        return await asyncio.to_thread(self._find_documentation, slug, source, workspace)

    def _find_documentation(self, slug: str, source: Path, workspace: Path) -> tuple[str, Path]:
        for name in DOC_CANDIDATES:
            for base in (source, workspace):
                text = _read_optional(base / name)
                if text is not None:
                    return text, (base / name).parent
        course_root = self.settings.course_root(slug)
        text = _read_optional(course_root / COURSE_OVERVIEW)
        if text is not None:
            return text, course_root
        return "", source

    # --- completion ---

    def is_completed(self, slug: str, exercise_path: str) -> bool:
        """Return whether the exercise has a completion record."""
        return self.store.is_completed(slug, normalize_exercise_path(exercise_path))

    def exercise_status(self, slug: str, exercise_path: str) -> CompletionRecord:
        """Return the stored completion record, or an incomplete placeholder."""
        path = normalize_exercise_path(exercise_path)
        record = self.store.get_record(slug, path)
        if record is None:
            return CompletionRecord(course_slug=slug, exercise_path=path, completed=False, completed_at=None)
        return record

    def clear_completed(self, slug: str, exercise_path: str) -> None:
        """Remove the completion record of an exercise."""
        self.store.clear_completed(slug, normalize_exercise_path(exercise_path))

    # --- execution ---

    async def run(self, slug: str, exercise_path: str, run_id: str) -> RunOutcome:
        """Run the default runnable file and emit ``course.runDone``."""
        return await (await self.start_run(slug, exercise_path, run_id))

    async def start_run(self, slug: str, exercise_path: str, run_id: str) -> Awaitable[RunOutcome]:
        """Spawn the default runnable file and register it for termination.

        Returns an awaitable that relays the output and emits ``course.runDone``.
        """
        workspace = await self.ensure_workspace(slug, exercise_path)
        key = (slug, normalize_exercise_path(exercise_path))

        def log(stream: str, chunk: str) -> None:
            self.events.emit(RunLogEvent(id=run_id, slug=slug, stream=stream, chunk=chunk))

        target = select_runnable(await self.list_files(slug, exercise_path))
        if target is None:
            started: ProcessHandle | RunOutcome = RunOutcome(
                success=False, code=None, error="No runnable file found in exercise."
            )
        else:
            interpreter = interpreter_for(target)
            if interpreter is None:
                spec = CommandSpec(executable=str(workspace / target))
            else:
                spec = CommandSpec(executable=interpreter[0], args=(*interpreter[1:], target))
            started = await self._start_process(key, spec, workspace)
        return self._finish_run(key, started, log, run_id)

    async def _finish_run(
        self, key: ExerciseKey, started: ProcessHandle | RunOutcome, log: LogFn, run_id: str
    ) -> RunOutcome:
        outcome = await self._outcome_of(key, started, log)
        self.events.emit(
            RunDoneEvent(id=run_id, slug=key[0], success=outcome.success, code=outcome.code, error=outcome.error)
        )
        return outcome

    async def test(self, slug: str, exercise_path: str, test_id: str) -> RunOutcome:
        """Run the exercise tests, recording completion before ``course.testDone``."""
        return await (await self.start_test(slug, exercise_path, test_id))

    async def start_test(self, slug: str, exercise_path: str, test_id: str) -> Awaitable[RunOutcome]:
        """Run any setup command, then spawn and register the test command.

        Returns an awaitable that relays the test output, records completion on
        success and emits ``course.testDone``.
        """
        workspace = await self.ensure_workspace(slug, exercise_path)
        key = (slug, normalize_exercise_path(exercise_path))

        def log(stream: str, chunk: str) -> None:
            self.events.emit(TestLogEvent(id=test_id, slug=slug, stream=stream, chunk=chunk))

        started = await self._start_tests(key, workspace, log)
        return self._finish_test(key, started, log, test_id)

    async def _finish_test(
        self, key: ExerciseKey, started: ProcessHandle | RunOutcome, log: LogFn, test_id: str
    ) -> RunOutcome:
        slug, path = key
        outcome = await self._outcome_of(key, started, log)
        if outcome.success:
            try:
                self.store.mark_completed(slug, path)
                logger.info("marked %s/%s completed", slug, path)
            except Exception:
                logger.exception("could not record completion of %s/%s", slug, path)

        self.events.emit(
            TestDoneEvent(id=test_id, slug=slug, success=outcome.success, code=outcome.code, error=outcome.error)
        )
        return outcome

    async def terminate(self, slug: str, exercise_path: str) -> int:
        """Stop every tracked process of an exercise; returns how many were alive."""
        key = (slug, normalize_exercise_path(exercise_path))
        handles = self.registry.handles(key)
        if not handles:
            return 0
        results = await asyncio.gather(*(self.runner.terminate(handle) for handle in handles))
        terminated = sum(1 for stopped in results if stopped)
        logger.info("terminated %d process(es) for %s/%s", terminated, *key)
        return terminated

    async def _start_tests(self, key: ExerciseKey, workspace: Path, log: LogFn) -> ProcessHandle | RunOutcome:
        meta = await asyncio.to_thread(read_exercise_meta, workspace)

        if meta.init_cmd:
            init = parse_command(meta.init_cmd)
            if init is None:
                return RunOutcome(success=False, code=None, error=f"Invalid initCmd: {meta.init_cmd!r}")
            log("stdout", f"Running setup: {init.display()}\n")
            setup = await self._outcome_of(key, await self._start_process(key, init, workspace), log)
            if not setup.success:
                return RunOutcome(success=False, code=setup.code, error=f"Setup failed: {setup.error}")

        if meta.test_cmd:
            spec = parse_command(meta.test_cmd)
            if spec is None:
                return RunOutcome(success=False, code=None, error=f"Invalid testCmd: {meta.test_cmd!r}")
        else:
            spec = default_test_command()

        cwd = workspace
        tests_dir = workspace / TESTS_DIR
        if tests_dir.is_dir():
            cwd = tests_dir
            spec = spec.with_args(rewrite_tests_args(spec.args))
        return await self._start_process(key, spec, cwd)

    async def _start_process(self, key: ExerciseKey, spec: CommandSpec, cwd: Path) -> ProcessHandle | RunOutcome:
        """Spawn and register a process; a spawn failure becomes a failed outcome."""
        try:
            handle = await self.runner.spawn(spec.executable, spec.args, cwd)
        except ProcessFailure as exc:
            logger.warning("could not run %s for %s/%s: %s", spec.display(), *key, exc)
            return RunOutcome(success=False, code=None, error=str(exc))
        self.registry.add(key, handle)
        return handle

    async def _outcome_of(self, key: ExerciseKey, started: ProcessHandle | RunOutcome, log: LogFn) -> RunOutcome:
        if isinstance(started, RunOutcome):
            return started
        try:
            result = await self.runner.stream(
                started,
                on_stdout=lambda chunk: log("stdout", chunk),
                on_stderr=lambda chunk: log("stderr", chunk),
            )
        finally:
            self.registry.discard(key, started)

        if result.success:
            return RunOutcome(success=True, code=result.exit_code)
        return RunOutcome(success=False, code=result.exit_code, error=f"Process exited with code {result.exit_code}")

    def _ignore_patterns(self, slug: str) -> list[str]:
        config_path = self.settings.course_root(slug) / COURSE_CONFIG_FILE
        raw = _load_json_object(config_path)
        patterns = raw.get("ignoreExerciseFiles", [])
        if not isinstance(patterns, list):
            return []
        return [str(pattern) for pattern in patterns if str(pattern).strip()]


def select_runnable(files: list[str]) -> str | None:
    """Pick the file to run: shallowest file with a known interpreter, else the first file."""
    if not files:
        return None
    ordered = sorted(files, key=lambda name: (name.count("/"), name))
    for name in ordered:
        if interpreter_for(name) is not None:
            return name
    return ordered[0]


def read_exercise_meta(exercise_dir: Path) -> ExerciseMeta:
    """Read ``_meta/meta.json``; missing or malformed files yield empty metadata."""
    raw = _load_json_object(exercise_dir / META_MARKER / META_FILE)
    test_cmd = raw.get("testCmd")
    init_cmd = raw.get("initCmd")
    return ExerciseMeta(
        test_cmd=str(test_cmd) if isinstance(test_cmd, str) and test_cmd.strip() else None,
        init_cmd=str(init_cmd) if isinstance(init_cmd, str) and init_cmd.strip() else None,
        extra={key: value for key, value in raw.items() if key not in ("testCmd", "initCmd")},
    )


def _load_json_object(path: Path) -> dict[str, object]:
    if not path.is_file():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, ValueError) as exc:
        logger.warning("ignoring unreadable %s: %s", path, exc)
        return {}
    if not isinstance(raw, dict):
        logger.warning("ignoring %s: root is not a JSON object", path)
        return {}
    return raw


def _read_optional(path: Path) -> str | None:
    if not path.is_file():
        return None
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.warning("could not read %s: %s", path, exc)
        return None


def _materialize(source: Path, workspace: Path) -> None:
    try:
        copy_visible(source, workspace)
        replace_meta(source, workspace)
    except OSError:
        shutil.rmtree(workspace, ignore_errors=True)
        raise


def _write_text(target: Path, content: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
