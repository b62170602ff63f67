"""CLI entrypoint for the course workspace shell."""

from __future__ import annotations

import argparse
import asyncio
import logging
from collections.abc import Callable
from typing import Any

from .bridge import Bridge, Operation
from .config import Settings, load_settings
from .errors import CourseShellError
from .schemas import Event, GitDoneEvent, GitLogEvent, GitProgressEvent, RunDoneEvent, TestDoneEvent

InputFn = Callable[[str], str]
PrintFn = Callable[[str], None]
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

GIT_COMMANDS = {
    "clone": Operation.GIT_CLONE,
    "check": Operation.GIT_CHECK_UPDATE,
    "pull": Operation.GIT_PULL,
}
EXERCISE_COMMANDS = ("files", "doc", "run", "test", "status", "clear", "reset", "solution", "export", "terminate")


class ConsoleSink:
    """Prints events as they arrive and remembers terminal run/test results."""

    def __init__(self, print_fn: PrintFn) -> None:
        self.print_fn = print_fn
        self.finished: dict[str, RunDoneEvent | TestDoneEvent] = {}

    def emit(self, event: Event) -> None:
        if isinstance(event, GitProgressEvent):
            percent = f" {event.percent}%" if event.percent is not None else ""
            message = f" {event.message}" if event.message else ""
            self.print_fn(f"[{event.step}{percent}]{message}")
        elif isinstance(event, GitLogEvent):
            self.print_fn(event.chunk.rstrip("\n"))
        elif isinstance(event, GitDoneEvent):
            if not event.success:
                self.print_fn(f"git failed: {event.error}")
        elif isinstance(event, (RunDoneEvent, TestDoneEvent)):
            self.finished[event.id] = event
            status = "passed" if event.success else "failed"
            label = "Tests" if isinstance(event, TestDoneEvent) else "Run"
            detail = f" ({event.error})" if event.error else ""
            self.print_fn(f"{label} {status}, exit code {event.code}{detail}")
        else:
            chunk = getattr(event, "chunk", "")
            if chunk:
                self.print_fn(chunk.rstrip("\n"))


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser with one subcommand per operation."""
    parser = argparse.ArgumentParser(prog="courseshell", description="Course workspace shell")
    parser.add_argument("--data-dir", default=None, help="storage directory (default: $COURSESHELL_HOME or .courseshell)")
    parser.add_argument("--config", default=None, help="path to config.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    for name in GIT_COMMANDS:
        git_parser = sub.add_parser(name, help=f"git {name} a course")
        git_parser.add_argument("slug")
        git_parser.add_argument("--branch", default=None)

    for name in ("tree", "progress"):
        sub.add_parser(name).add_argument("slug")

    for name in EXERCISE_COMMANDS:
        ex_parser = sub.add_parser(name)
        ex_parser.add_argument("slug")
        ex_parser.add_argument("exercise")

    cat_parser = sub.add_parser("cat", help="print a workspace file")
    cat_parser.add_argument("slug")
    cat_parser.add_argument("exercise")
    cat_parser.add_argument("file")

    write_parser = sub.add_parser("write", help="write a workspace file")
    write_parser.add_argument("slug")
    write_parser.add_argument("exercise")
    write_parser.add_argument("file")
    write_parser.add_argument("content")
    return parser


def run(argv: list[str] | None = None, input_fn: InputFn = input, print_fn: PrintFn = print) -> int:
    """Run the CLI application."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, format=LOG_FORMAT)
    try:
        settings = load_settings(args.config, args.data_dir)
        return asyncio.run(_dispatch(args, settings, input_fn, print_fn))
    except CourseShellError as exc:
        print_fn(f"Error: {exc}")
        return 1


async def _dispatch(args: argparse.Namespace, settings: Settings, input_fn: InputFn, print_fn: PrintFn) -> int:
    sink = ConsoleSink(print_fn)

    def prompt(message: str) -> str | None:
        answer = input_fn(f"{message} (empty to cancel): ").strip()
        return answer or None

    bridge = Bridge(settings, sink, prompt_directory=prompt)
    try:
        return await _execute(bridge, sink, args, print_fn)
    finally:
        await bridge.close()


async def _execute(bridge: Bridge, sink: ConsoleSink, args: argparse.Namespace, print_fn: PrintFn) -> int:
    command = args.command

    if command in GIT_COMMANDS:
        result = await bridge.request(GIT_COMMANDS[command], {"slug": args.slug, "branch": args.branch})
        assert isinstance(result, dict)
        if command == "clone":
            print_fn(f"Cloned into {result['path']}")
        elif command == "check":
            state = "Update available" if result["updateAvailable"] else "Up to date"
            print_fn(f"{state} (ahead {result['aheadBy']}, behind {result['behindBy']})")
        else:
            forced = " (forced)" if result["forced"] else ""
            print_fn(f"Pulled{forced}; refreshed metadata for {result['syncedMetaFor']} workspace(s)")
        return 0

    if command == "tree":
        tree = await bridge.request(Operation.GIT_LIST_TREE, {"slug": args.slug})
        assert isinstance(tree, list)
        if not tree:
            print_fn("No exercises found.")
        _print_tree(tree, print_fn, depth=0)
        return 0

    if command == "progress":
        summary = await bridge.request(Operation.PROGRESS, {"slug": args.slug})
        assert isinstance(summary, dict)
        print_fn(f"{summary['completed']}/{summary['total']} exercises completed ({summary['percentage']:.1f}%)")
        return 0

    exercise = {"slug": args.slug, "exercisePath": args.exercise}

    if command == "files":
        listing = await bridge.request(Operation.LIST_FILES, exercise)
        assert isinstance(listing, dict)
        for name in listing["files"]:
            print_fn(str(name))
    elif command == "cat":
        content = await bridge.request(Operation.READ_FILE, {**exercise, "file": args.file})
        assert isinstance(content, dict)
        print_fn(str(content["content"]))
    elif command == "write":
        await bridge.request(Operation.WRITE_FILE, {**exercise, "file": args.file, "content": args.content})
        print_fn(f"Wrote {args.file}")
    elif command == "doc":
        doc = await bridge.request(Operation.READ_MARKDOWN, exercise)
        assert isinstance(doc, dict)
        print_fn(str(doc["markdown"]) or "No documentation available.")
    elif command in ("run", "test"):
        operation = Operation.RUN if command == "run" else Operation.TEST
        ack = await bridge.request(operation, exercise)
        assert isinstance(ack, dict)
        await bridge.drain()
        done = sink.finished.get(str(ack["id"]))
        return 0 if done is not None and done.success else 1
    elif command == "status":
        record = bridge.workspaces.exercise_status(args.slug, args.exercise)
        if record.completed:
            print_fn(f"Completed at {record.completed_at}")
        else:
            print_fn("Not completed")
    elif command == "clear":
        await bridge.request(Operation.CLEAR_COMPLETED, exercise)
        print_fn("Completion cleared.")
    elif command == "reset":
        await bridge.request(Operation.RESET, exercise)
        print_fn("Workspace reset.")
    elif command == "solution":
        await bridge.request(Operation.APPLY_SOLUTION, exercise)
        print_fn("Solution applied.")
    elif command == "export":
        exported = await bridge.request(Operation.EXPORT_WORKSPACE, exercise)
        assert isinstance(exported, dict)
        if exported.get("canceled"):
            print_fn("Export canceled.")
        else:
            print_fn(f"Exported to {exported['exportedTo']}")
    elif command == "terminate":
        stopped = await bridge.request(Operation.TERMINATE, exercise)
        assert isinstance(stopped, dict)
        print_fn(f"Terminated {stopped['terminated']} process(es).")
    return 0


def _print_tree(nodes: list[Any], print_fn: PrintFn, depth: int) -> None:
    indent = "  " * depth
    for node in nodes:
        children = node.get("children")
        if children is None:
            mark = "[x]" if node.get("completed") else "[ ]"
            print_fn(f"{indent}{mark} {node['label']}  ({node['path']})")
        else:
            print_fn(f"{indent}{node['label']}")
            _print_tree(children, print_fn, depth + 1)


def main_entry() -> None:
    """Console script entrypoint."""
    raise SystemExit(run())


if __name__ == "__main__":  # pragma: no cover
    main_entry()
