"""ProcessController: lifecycle of a single ios-deploy invocation.

The child's stdout and stderr share one pipe so tool diagnostics show up
inline with normal output. Output is read on the event loop as it becomes
available; nothing here blocks the loop.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from collections.abc import AsyncIterator, Sequence
from pathlib import Path

from appdeploy.config import DEFAULT_TOOL_CANDIDATES
from appdeploy.device.locator import locate_tool
from appdeploy.models import SpawnError

logger = logging.getLogger("appdeploy.process")

CHUNK_SIZE = 4096


async def iter_lines(chunks: AsyncIterator[str]) -> AsyncIterator[str]:
    """Regroup arbitrary output chunks into complete lines.

    Lines are yielded without their terminator (``\\n`` or ``\\r\\n``). A final
    line with no terminator is yielded once the chunks run out.
    """
    partial = ""
    async for chunk in chunks:
        partial += chunk
        *lines, partial = partial.split("\n")
        for line in lines:
            yield line.rstrip("\r")
    if partial:
        yield partial.rstrip("\r")


class ProcessHandle:
    """A running (or finished) tool invocation."""

    def __init__(self, process: asyncio.subprocess.Process, argv: list[str]) -> None:
        self.process = process
        self.argv = argv
        self.cancelling = False
        self._exit_task: asyncio.Task[int] | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    def __repr__(self) -> str:
        return f"<ProcessHandle pid={self.pid} argv={self.argv!r} returncode={self.returncode}>"


class ProcessController:
    """Spawns, streams, waits on and terminates ios-deploy.

    One controller runs one invocation at a time. Discovery and install each
    get their own controller so they never interfere.
    """

    def __init__(self, candidates: Sequence[Path] = DEFAULT_TOOL_CANDIDATES) -> None:
        self.candidates = tuple(candidates)
        self.current: ProcessHandle | None = None

    async def spawn(self, args: Sequence[str], path: Path | None = None) -> ProcessHandle:
        """Start the tool with ``args``.

        Raises ToolNotFound when no path is given and the tool isn't
        installed, SpawnError when the OS refuses to start it.
        """
        if path is None:
            path = locate_tool(self.candidates)

        argv = [str(path), *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise SpawnError(f"Failed to execute {path}: {e}") from e

        handle = ProcessHandle(process, argv)
        self.current = handle
        logger.info("Started %s (pid %d)", " ".join(argv), process.pid)
        return handle

    async def stream_output(self, handle: ProcessHandle) -> AsyncIterator[str]:
        """Yield decoded output chunks until the pipe closes.

        Chunks are whatever the pipe delivered, not lines. Multi-byte
        characters split across reads are held back until complete.
        """
        stdout = handle.process.stdout
        if stdout is None:
            return

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stdout.read(CHUNK_SIZE)
            if not data:
                break
            text = decoder.decode(data)
            if text:
                yield text

        tail = decoder.decode(b"", final=True)
        if tail:
            yield tail

    async def wait_for_exit(self, handle: ProcessHandle) -> int:
        """Wait for the process to end and return its exit code.

        Every caller gets the same code; negative values mean the process
        was killed by that signal.
        """
        if handle._exit_task is None:
            handle._exit_task = asyncio.ensure_future(self._reap(handle))
        return await asyncio.shield(handle._exit_task)

    def cancel(self, handle: ProcessHandle | None = None) -> bool:
        """Ask the process to terminate (SIGTERM).

        Returns False without doing anything when there is no handle, the
        process already exited, or a cancel was already sent. Returns before
        the process stops; observe that through wait_for_exit().
        """
        if handle is None:
            handle = self.current
        if handle is None or not handle.running or handle.cancelling:
            return False

        handle.cancelling = True
        try:
            handle.process.terminate()
        except ProcessLookupError:
            # Exited between the returncode check and the signal
            return False
        logger.info("Sent SIGTERM to pid %d", handle.pid)
        return True

    async def _reap(self, handle: ProcessHandle) -> int:
        code = await handle.process.wait()
        if self.current is handle:
            self.current = None
        logger.info("pid %d exited with code %d", handle.pid, code)
        return code
