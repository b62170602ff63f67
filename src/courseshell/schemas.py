"""Typed request, response and event payloads exchanged with the UI."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, RootModel
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base model using camelCase names on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    def to_wire(self) -> dict[str, object]:
        """Dump with camelCase keys, leaving out unset optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True)


# --- requests ---


class GitRequest(WireModel):
    slug: str
    branch: str | None = None
    id: str | None = None


class SlugRequest(WireModel):
    slug: str


class ExerciseRequest(WireModel):
    slug: str
    exercise_path: str


class FileRequest(ExerciseRequest):
    file: str


class WriteFileRequest(FileRequest):
    content: str


class StartRequest(ExerciseRequest):
    id: str | None = None


# --- responses ---


class CloneResponse(WireModel):
    path: str
    id: str


class UpdateCheckResponse(WireModel):
    id: str
    update_available: bool
    ahead_by: int
    behind_by: int


class PullResponse(WireModel):
    id: str
    updated: bool
    output: str
    forced: bool
    synced_meta_for: int


class TreeNodeModel(WireModel):
    key: str
    label: str
    path: str
    completed: bool | None = None
    children: list[TreeNodeModel] | None = None


TreeNodeModel.model_rebuild()


class TreeResponse(RootModel[list[TreeNodeModel]]):
    def to_wire(self) -> list[object]:
        """Dump the tree as a JSON-ready list."""
        return self.model_dump(by_alias=True, exclude_none=True)


class FilesResponse(WireModel):
    files: list[str]


class ContentResponse(WireModel):
    content: str


class OkResponse(WireModel):
    ok: bool = True


class MarkdownResponse(WireModel):
    markdown: str
    base_dir: str


class AckResponse(WireModel):
    id: str


class CompletedResponse(WireModel):
    completed: bool


class ExportResponse(WireModel):
    exported_to: str | None = None
    canceled: bool | None = None


class TerminateResponse(WireModel):
    terminated: int


class CourseProgressResponse(WireModel):
    total: int
    completed: int
    percentage: float


# --- events ---


class Event(WireModel):
    """Push event tagged with the correlation id and course slug."""

    channel: str
    id: str
    slug: str


class GitProgressEvent(Event):
    channel: Literal["git.progress"] = "git.progress"
    step: str
    percent: int | None = Field(default=None, ge=0, le=100)
    message: str | None = None


class GitLogEvent(Event):
    channel: Literal["git.log"] = "git.log"
    stream: Literal["stdout", "stderr"]
    chunk: str


class GitDoneEvent(Event):
    channel: Literal["git.done"] = "git.done"
    success: bool
    error: str | None = None


class RunLogEvent(Event):
    channel: Literal["course.runLog"] = "course.runLog"
    stream: Literal["stdout", "stderr"]
    chunk: str


class RunDoneEvent(Event):
    channel: Literal["course.runDone"] = "course.runDone"
    success: bool
    code: int | None = None
    error: str | None = None


class TestLogEvent(Event):
    __test__ = False

    channel: Literal["course.testLog"] = "course.testLog"
    stream: Literal["stdout", "stderr"]
    chunk: str


class TestDoneEvent(Event):
    __test__ = False

    channel: Literal["course.testDone"] = "course.testDone"
    success: bool
    code: int | None = None
    error: str | None = None
