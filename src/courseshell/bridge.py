"""Request/response boundary between the UI and the course core."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from .config import Settings
from .course_tree import build_tree, leaf_paths
from .errors import CourseShellError
from .events import EventSink
from .git_sync import GitSyncEngine
from .models import TreeNode
from .process_runner import ProcessRunner
from .progress import CompletionStore
from .schemas import (
    AckResponse,
    CloneResponse,
    CompletedResponse,
    ContentResponse,
    CourseProgressResponse,
    ExerciseRequest,
    ExportResponse,
    FileRequest,
    FilesResponse,
    GitDoneEvent,
    GitLogEvent,
    GitProgressEvent,
    GitRequest,
    MarkdownResponse,
    OkResponse,
    PullResponse,
    SlugRequest,
    StartRequest,
    TerminateResponse,
    TreeNodeModel,
    TreeResponse,
    UpdateCheckResponse,
    WriteFileRequest,
)
from .workspace import DirectoryPrompt, ProcessRegistry, WorkspaceManager

logger = logging.getLogger(__name__)

Result = dict[str, object] | list[object]


class Operation(str, Enum):
    """Operations the UI may request."""

    GIT_CLONE = "git.clone"
    GIT_CHECK_UPDATE = "git.checkUpdateAvailable"
    GIT_PULL = "git.pull"
    GIT_LIST_TREE = "git.listTree"
    LIST_FILES = "course.listFiles"
    READ_FILE = "course.readFile"
    WRITE_FILE = "course.writeFile"
    READ_MARKDOWN = "course.readMarkdown"
    RUN = "course.run"
    TEST = "course.test"
    IS_COMPLETED = "course.isCompleted"
    RESET = "course.reset"
    APPLY_SOLUTION = "course.applySolution"
    EXPORT_WORKSPACE = "course.exportWorkspace"
    TERMINATE = "course.terminate"
    CLEAR_COMPLETED = "course.clearCompleted"
    PROGRESS = "course.progress"


def new_id() -> str:
    """Return a fresh operation id."""
    return uuid4().hex


def tree_to_models(nodes: list[TreeNode] | tuple[TreeNode, ...]) -> list[TreeNodeModel]:
    """Convert core tree nodes into their wire models."""
    return [
        TreeNodeModel(
            key=node.key,
            label=node.label,
            path=node.path,
            completed=node.completed,
            children=tree_to_models(node.children) if node.children is not None else None,
        )
        for node in nodes
    ]


class Bridge:
    """Dispatches UI requests to the core and pushes events to a sink."""

    def __init__(
        self,
        settings: Settings,
        events: EventSink,
        store: CompletionStore | None = None,
        runner: ProcessRunner | None = None,
        prompt_directory: DirectoryPrompt | None = None,
        registry: ProcessRegistry | None = None,
    ) -> None:
        self.settings = settings
        self.events = events
        self.store = store if store is not None else CompletionStore(settings.db_path)
        self.runner = runner if runner is not None else ProcessRunner(grace_period=settings.grace_period)
        self.git = GitSyncEngine(settings, self.runner)
        self.workspaces = WorkspaceManager(
            settings,
            self.store,
            self.runner,
            events,
            registry=registry,
            prompt_directory=prompt_directory,
        )
        self._tasks: set[asyncio.Task[Any]] = set()
        self._handlers: dict[Operation, Callable[[dict[str, Any]], Awaitable[Result]]] = {
            Operation.GIT_CLONE: self._clone,
            Operation.GIT_CHECK_UPDATE: self._check_update,
            Operation.GIT_PULL: self._pull,
            Operation.GIT_LIST_TREE: self._list_tree,
            Operation.LIST_FILES: self._list_files,
            Operation.READ_FILE: self._read_file,
            Operation.WRITE_FILE: self._write_file,
            Operation.READ_MARKDOWN: self._read_markdown,
            Operation.RUN: self._run,
            Operation.TEST: self._test,
            Operation.IS_COMPLETED: self._is_completed,
            Operation.RESET: self._reset,
            Operation.APPLY_SOLUTION: self._apply_solution,
            Operation.EXPORT_WORKSPACE: self._export,
            Operation.TERMINATE: self._terminate,
            Operation.CLEAR_COMPLETED: self._clear_completed,
            Operation.PROGRESS: self._progress,
        }

    async def request(self, operation: Operation | str, payload: dict[str, Any] | None = None) -> Result:
        """Validate a payload, run the operation and return its wire response.

        Raises ``ValueError`` for unknown operations and pydantic's
        ``ValidationError`` for malformed payloads.
        """
        op = Operation(operation)
        logger.debug("request %s %s", op.value, payload)
        return await self._handlers[op](payload or {})

    async def drain(self) -> None:
        """Wait for every background run/test task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Wait for background work, then close the completion store."""
        await self.drain()
        self.store.close()

    @property
    def pending(self) -> int:
        """Number of run/test tasks still in flight."""
        return len(self._tasks)

    # --- git ---

    async def _clone(self, payload: dict[str, Any]) -> Result:
        req = GitRequest.model_validate(payload)
        op_id = req.id or new_id()
        path = await self._git_operation(req.slug, op_id, self.git.clone, req.branch)
        return CloneResponse(path=str(path), id=op_id).to_wire()

    async def _check_update(self, payload: dict[str, Any]) -> Result:
        req = GitRequest.model_validate(payload)
        op_id = req.id or new_id()
        status = await self._git_operation(req.slug, op_id, self.git.check_update_available, req.branch)
        return UpdateCheckResponse(
            id=op_id,
            update_available=status.update_available,
            ahead_by=status.ahead_by,
            behind_by=status.behind_by,
        ).to_wire()

    async def _pull(self, payload: dict[str, Any]) -> Result:
        req = GitRequest.model_validate(payload)
        op_id = req.id or new_id()
        result = await self._git_operation(req.slug, op_id, self.git.pull, req.branch)
        return PullResponse(
            id=op_id,
            updated=result.updated,
            output=result.output,
            forced=result.forced,
            synced_meta_for=result.synced_meta_for,
        ).to_wire()

    async def _git_operation(self, slug: str, op_id: str, method: Callable[..., Awaitable[Any]], branch: str | None):
        def progress(step: str, percent: int | None = None, message: str | None = None) -> None:
            self.events.emit(GitProgressEvent(id=op_id, slug=slug, step=step, percent=percent, message=message))

        def log(stream: str, chunk: str) -> None:
            self.events.emit(GitLogEvent(id=op_id, slug=slug, stream=stream, chunk=chunk))

        try:
            result = await method(slug, branch, progress=progress, log=log)
        except (CourseShellError, OSError) as exc:
            logger.warning("git %s on %s failed: %s", method.__name__, slug, exc)
            self.events.emit(GitDoneEvent(id=op_id, slug=slug, success=False, error=str(exc)))
            raise
        self.events.emit(GitDoneEvent(id=op_id, slug=slug, success=True))
        return result

    async def _list_tree(self, payload: dict[str, Any]) -> Result:
        req = SlugRequest.model_validate(payload)
        completed = self.store.completed_paths(req.slug)
        root = self.settings.course_root(req.slug)
        nodes = await asyncio.to_thread(build_tree, root, lambda path: path in completed)
        return TreeResponse(tree_to_models(nodes)).to_wire()

    # --- files ---

    async def _list_files(self, payload: dict[str, Any]) -> Result:
        req = ExerciseRequest.model_validate(payload)
        files = await self.workspaces.list_files(req.slug, req.exercise_path)
        return FilesResponse(files=files).to_wire()

    async def _read_file(self, payload: dict[str, Any]) -> Result:
        req = FileRequest.model_validate(payload)
        content = await self.workspaces.read_file(req.slug, req.exercise_path, req.file)
        return ContentResponse(content=content).to_wire()

    async def _write_file(self, payload: dict[str, Any]) -> Result:
        req = WriteFileRequest.model_validate(payload)
        await self.workspaces.write_file(req.slug, req.exercise_path, req.file, req.content)
        return OkResponse().to_wire()

    async def _read_markdown(self, payload: dict[str, Any]) -> Result:
        req = ExerciseRequest.model_validate(payload)
        markdown, base_dir = await self.workspaces.read_documentation(req.slug, req.exercise_path)
        return MarkdownResponse(markdown=markdown, base_dir=str(base_dir)).to_wire()

    # --- execution ---

    async def _run(self, payload: dict[str, Any]) -> Result:
        req = StartRequest.model_validate(payload)
        run_id = req.id or new_id()
        finish = await self.workspaces.start_run(req.slug, req.exercise_path, run_id)
        self._spawn(finish)
        return AckResponse(id=run_id).to_wire()

    async def _test(self, payload: dict[str, Any]) -> Result:
        req = StartRequest.model_validate(payload)
        test_id = req.id or new_id()
        finish = await self.workspaces.start_test(req.slug, req.exercise_path, test_id)
        self._spawn(finish)
        return AckResponse(id=test_id).to_wire()

    async def _terminate(self, payload: dict[str, Any]) -> Result:
        req = ExerciseRequest.model_validate(payload)
        terminated = await self.workspaces.terminate(req.slug, req.exercise_path)
        return TerminateResponse(terminated=terminated).to_wire()

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("background task failed", exc_info=task.exception())

    # --- lifecycle & completion ---

    async def _is_completed(self, payload: dict[str, Any]) -> Result:
        req = ExerciseRequest.model_validate(payload)
        return CompletedResponse(completed=self.workspaces.is_completed(req.slug, req.exercise_path)).to_wire()

    async def _clear_completed(self, payload: dict[str, Any]) -> Result:
        req = ExerciseRequest.model_validate(payload)
        self.workspaces.clear_completed(req.slug, req.exercise_path)
        return OkResponse().to_wire()

    async def _reset(self, payload: dict[str, Any]) -> Result:
        req = ExerciseRequest.model_validate(payload)
        await self.workspaces.reset(req.slug, req.exercise_path)
        return OkResponse().to_wire()

    async def _apply_solution(self, payload: dict[str, Any]) -> Result:
        req = ExerciseRequest.model_validate(payload)
        await self.workspaces.apply_solution(req.slug, req.exercise_path)
        return OkResponse().to_wire()

    async def _export(self, payload: dict[str, Any]) -> Result:
        req = ExerciseRequest.model_validate(payload)
        destination = await self.workspaces.export_workspace(req.slug, req.exercise_path)
        if destination is None:
            return ExportResponse(canceled=True).to_wire()
        return ExportResponse(exported_to=str(destination)).to_wire()

    async def _progress(self, payload: dict[str, Any]) -> Result:
        req = SlugRequest.model_validate(payload)
        paths = leaf_paths(await asyncio.to_thread(build_tree, self.settings.course_root(req.slug)))
        completed = self.store.completed_paths(req.slug)
        done = sum(1 for path in paths if path in completed)
        percentage = round(100.0 * done / len(paths), 1) if paths else 0.0
        return CourseProgressResponse(total=len(paths), completed=done, percentage=percentage).to_wire()


def create_bridge(
    settings: Settings,
    events: EventSink,
    db_path: Path | str | None = None,
    prompt_directory: DirectoryPrompt | None = None,
) -> Bridge:
    """Build a bridge with a store at ``db_path`` (defaults to the settings path)."""
    store = CompletionStore(db_path if db_path is not None else settings.db_path)
    return Bridge(settings, events, store=store, prompt_directory=prompt_directory)
