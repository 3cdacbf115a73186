"""
Async wrapper around external processes (yt-dlp, ffmpeg, ffprobe, whisper).

Every component that talks to an external tool goes through ``ProcessRunner``
so spawn errors, stderr capture and kill semantics behave the same everywhere.
"""

import asyncio
import collections
import logging
import os
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Mapping, Optional, Sequence

from .errors import SpawnFailure

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
STDERR_BUFFER_LINES = 200


def binary_search_paths(name: str) -> List[str]:
    """Locations checked for ``name`` before falling back to ``PATH``."""
    home = os.path.expanduser("~")
    return [
        os.path.join(home, ".local", "bin", name),
        os.path.join("/usr/local/bin", name),
        os.path.join("/opt/homebrew/bin", name),
        os.path.join("/usr/bin", name),
    ]


def find_binary(name: str) -> str:
    """Resolve an executable path, or return the bare name as a last resort."""
    for path in binary_search_paths(name):
        if os.path.isfile(path) and os.access(path, os.X_OK):
            return path
    return name


@dataclass
class ProcessResult:
    """Buffered outcome of a finished process."""
    stdout: str
    stderr: str
    exit_code: int


class ManagedProcess:
    """Handle on a running child process."""

    def __init__(self, command: str, args: Sequence[str], process: asyncio.subprocess.Process, streaming: bool = False):
        self.command = command
        self.args = list(args)
        self.name = os.path.basename(command)
        self.streaming = streaming
        self._process = process
        self._stderr_lines: collections.deque = collections.deque(maxlen=STDERR_BUFFER_LINES)
        self._stderr_task: Optional[asyncio.Task] = None
        if streaming:
            # stderr must be drained while stdout is consumed or the pipe fills up
            self._stderr_task = asyncio.get_running_loop().create_task(self._drain_stderr())

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_lines)

    def _record_stderr(self, text: str):
        for line in text.replace("\r", "\n").splitlines():
            line = line.strip()
            if line:
                self._stderr_lines.append(line)
                logger.debug(f"{self.name} [{self.pid}]: {line}")

    async def _drain_stderr(self):
        stream = self._process.stderr
        if stream is None:
            return
        pending = ""
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            # progress output uses bare carriage returns
            pending += chunk.decode("utf-8", errors="replace").replace("\r", "\n")
            head, sep, rest = pending.rpartition("\n")
            if sep:
                self._record_stderr(head)
                pending = rest
        self._record_stderr(pending)

    async def communicate(self) -> ProcessResult:
        """Wait for exit and return buffered stdout/stderr.

        Cancelling the awaiting task kills the child before re-raising.
        """
        if self.streaming:
            raise RuntimeError("communicate() is not available on a streaming process")
        try:
            stdout, stderr = await self._process.communicate()
        except asyncio.CancelledError:
            self.kill()
            raise
        stderr_text = stderr.decode("utf-8", errors="replace")
        self._record_stderr(stderr_text)
        return ProcessResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr_text,
            exit_code=self._process.returncode if self._process.returncode is not None else 1,
        )

    async def iter_stdout(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Yield stdout chunks as they arrive."""
        stream = self._process.stdout
        if stream is None:
            return
        while True:
            chunk = await stream.read(chunk_size)
            if not chunk:
                break
            yield chunk

    async def wait(self) -> int:
        """Wait for the process to exit and stderr to be fully drained."""
        code = await self._process.wait()
        if self._stderr_task is not None:
            await asyncio.wait({self._stderr_task})
        return code

    def kill(self) -> None:
        """Kill the process. No-op if it already exited or was killed."""
        if self._process.returncode is not None:
            return
        try:
            self._process.kill()
        except ProcessLookupError:
            return
        logger.debug(f"Killed {self.name} [{self.pid}]")


class ProcessRunner:
    """Spawns external commands with a merged environment."""

    def __init__(self, env: Optional[Mapping[str, str]] = None):
        self.base_env: Optional[Dict[str, str]] = dict(env) if env is not None else None

    def _build_env(self, env: Optional[Mapping[str, str]]) -> Dict[str, str]:
        merged = dict(os.environ) if self.base_env is None else dict(self.base_env)
        if env:
            merged.update(env)
        return merged

    async def spawn(
        self,
        command: str,
        args: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        streaming: bool = False,
    ) -> ManagedProcess:
        """Start ``command`` and return a handle without waiting for it."""
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(env),
            )
        except OSError as e:
            logger.error(f"Failed to spawn {command}: {e}")
            raise SpawnFailure(command, str(e)) from e

        logger.debug(f"Spawned {command} [{process.pid}] args={list(args)}")
        return ManagedProcess(command, args, process, streaming=streaming)

    async def spawn_streaming(
        self,
        command: str,
        args: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
    ) -> ManagedProcess:
        """Start ``command`` for incremental stdout consumption."""
        return await self.spawn(command, args, env=env, streaming=True)

    async def run(
        self,
        command: str,
        args: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
    ) -> ProcessResult:
        """Run ``command`` to completion and return its buffered output."""
        process = await self.spawn(command, args, env=env)
        return await process.communicate()
