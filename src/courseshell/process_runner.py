"""Asynchronous child-process execution with streaming output and termination."""

from __future__ import annotations

import asyncio
import codecs
import logging
from collections.abc import Callable, Sequence
from pathlib import Path

from .errors import ProcessSpawnError
from .models import ProcessResult

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = 1.5
READ_CHUNK_SIZE = 4096

ChunkCallback = Callable[[str], None]
SpawnCallback = Callable[["ProcessHandle"], None]


class ProcessHandle:
    """Live child process started by the runner."""

    def __init__(self, process: asyncio.subprocess.Process, command: str, args: Sequence[str]) -> None:
        self.process = process
        self.command = command
        self.args = list(args)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def running(self) -> bool:
        """True until the process exit has been observed."""
        return self.process.returncode is None

    async def wait(self) -> int:
        """Wait for exit and return the exit code."""
        return await self.process.wait()

    def __repr__(self) -> str:
        return f"ProcessHandle(pid={self.pid}, command={self.command!r}, returncode={self.returncode})"


class ProcessRunner:
    """Spawns external processes and tracks their output."""

    def __init__(self, grace_period: float = DEFAULT_GRACE_PERIOD) -> None:
        self.grace_period = grace_period

    async def spawn(self, command: str, args: Sequence[str], cwd: Path | str | None) -> ProcessHandle:
        """Start a process with piped stdout/stderr."""
        logger.debug("spawn %s %s (cwd=%s)", command, " ".join(args), cwd)
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=str(cwd) if cwd is not None else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProcessSpawnError(f"Failed to start '{command}': {exc}") from exc
        return ProcessHandle(process, command, args)

    async def run(self, command: str, args: Sequence[str], cwd: Path | str | None = None) -> ProcessResult:
        """Run a process to completion and return buffered output."""
        handle = await self.spawn(command, args, cwd)
        stdout, stderr = await handle.process.communicate()
        return ProcessResult(
            exit_code=_exit_code(handle.process.returncode),
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def run_streaming(
        self,
        command: str,
        args: Sequence[str],
        cwd: Path | str | None,
        on_stdout: ChunkCallback,
        on_stderr: ChunkCallback,
        on_spawn: SpawnCallback | None = None,
    ) -> ProcessResult:
        """Run a process, invoking callbacks for each output chunk before resolving."""
        handle = await self.spawn(command, args, cwd)
        if on_spawn is not None:
            on_spawn(handle)
        return await self.stream(handle, on_stdout, on_stderr)

    async def stream(self, handle: ProcessHandle, on_stdout: ChunkCallback, on_stderr: ChunkCallback) -> ProcessResult:
        """Relay the output of a spawned process until it exits."""
        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        assert handle.process.stdout is not None
        assert handle.process.stderr is not None
        await asyncio.gather(
            _pump(handle.process.stdout, on_stdout, stdout_parts),
            _pump(handle.process.stderr, on_stderr, stderr_parts),
        )
        code = await handle.wait()
        return ProcessResult(exit_code=_exit_code(code), stdout="".join(stdout_parts), stderr="".join(stderr_parts))

    async def terminate(self, handle: ProcessHandle) -> bool:
        """Stop a process gracefully, killing it after the grace period.

        Returns False when the process had already exited.
        """
        if not handle.running:
            return False
        try:
            handle.process.terminate()
        except ProcessLookupError:
            await handle.wait()
            return False

        try:
            await asyncio.wait_for(handle.wait(), timeout=self.grace_period)
        except asyncio.TimeoutError:
            logger.debug("pid %s ignored SIGTERM for %.1fs; killing", handle.pid, self.grace_period)
            try:
                handle.process.kill()
            except ProcessLookupError:
                pass
            await handle.wait()
        return True


async def _pump(stream: asyncio.StreamReader, callback: ChunkCallback, sink: list[str]) -> None:
    """Forward decoded chunks from one pipe in order."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await stream.read(READ_CHUNK_SIZE)
        if not data:
            break
        text = decoder.decode(data)
        if text:
            sink.append(text)
            callback(text)
    tail = decoder.decode(b"", final=True)
    if tail:
        sink.append(tail)
        callback(tail)


def _exit_code(code: int | None) -> int:
    return -1 if code is None else int(code)
