"""Process handle abstraction over asyncio subprocesses.

Everything that starts an engine process goes through a ``Spawner`` so the
orchestration code can be exercised against fake handles in tests.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Awaitable, Callable, Protocol, Sequence

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


class ProcessHandle(Protocol):
    """Capabilities the manager needs from a child process."""

    argv: list[str]

    @property
    def pid(self) -> int | None: ...

    @property
    def returncode(self) -> int | None: ...

    async def write(self, data: bytes) -> None: ...

    async def read_chunk(self, size: int = READ_CHUNK_SIZE) -> bytes: ...

    async def readline(self) -> bytes: ...

    async def communicate(self, data: bytes | None = None) -> tuple[bytes, bytes]: ...

    def send_signal(self, sig: int) -> None: ...

    async def wait(self) -> int: ...

    def on_exit(self, callback: Callable[[int], None]) -> None: ...


class Spawner(Protocol):
    def __call__(
        self,
        argv: Sequence[str],
        *,
        stdin: bool = False,
        merge_stderr: bool = False,
        drain_stderr: bool = False,
    ) -> Awaitable[ProcessHandle]: ...


class SubprocessHandle:
    """ProcessHandle backed by asyncio.subprocess.Process."""

    def __init__(self, process: asyncio.subprocess.Process, argv: Sequence[str], drain_stderr: bool = False):
        self._process = process
        self.argv = list(argv)
        self._exit_callbacks: list[Callable[[int], None]] = []
        self._watcher = asyncio.ensure_future(self._watch())
        self._stderr_drain: asyncio.Task | None = None
        if drain_stderr and process.stderr is not None:
            self._stderr_drain = asyncio.ensure_future(self._drain_stderr())

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def write(self, data: bytes) -> None:
        if self._process.stdin is None:
            raise BrokenPipeError("process was started without stdin")
        self._process.stdin.write(data)
        await self._process.stdin.drain()

    async def read_chunk(self, size: int = READ_CHUNK_SIZE) -> bytes:
        if self._process.stdout is None:
            return b""
        return await self._process.stdout.read(size)

    async def readline(self) -> bytes:
        if self._process.stdout is None:
            return b""
        return await self._process.stdout.readline()

    async def communicate(self, data: bytes | None = None) -> tuple[bytes, bytes]:
        stdout, stderr = await self._process.communicate(data)
        return stdout or b"", stderr or b""

    def send_signal(self, sig: int) -> None:
        if self._process.returncode is not None:
            return
        try:
            self._process.send_signal(sig)
        except ProcessLookupError:
            pass

    async def wait(self) -> int:
        return await self._process.wait()

    def on_exit(self, callback: Callable[[int], None]) -> None:
        if self._watcher.done() and self._process.returncode is not None:
            callback(self._process.returncode)
        else:
            self._exit_callbacks.append(callback)

    async def _watch(self) -> None:
        code = await self._process.wait()
        logger.debug(f"Process {self._process.pid} exited with {code}: {self.argv[:3]}")
        for callback in self._exit_callbacks:
            try:
                callback(code)
            except Exception as e:
                logger.error(f"Exit callback failed for pid {self._process.pid}: {e}", exc_info=True)

    async def _drain_stderr(self) -> None:
        # An unread stderr pipe fills up and blocks the child on its next write
        while True:
            chunk = await self._process.stderr.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            logger.debug(f"[pid {self._process.pid} stderr] {decode_output(chunk[-200:]).strip()}")


async def spawn_process(
    argv: Sequence[str],
    *,
    stdin: bool = False,
    merge_stderr: bool = False,
    drain_stderr: bool = False,
) -> SubprocessHandle:
    """Start a child process with piped output.

    Args:
        argv: Program and arguments
        stdin: Whether to keep a writable stdin pipe
        merge_stderr: Send stderr into the stdout stream
        drain_stderr: Read stderr in the background and log it at debug
            level (for long-lived processes nobody calls communicate() on)

    Returns:
        SubprocessHandle for the running process

    Raises:
        OSError: If the program cannot be started
    """
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT if merge_stderr else asyncio.subprocess.PIPE,
    )
    logger.debug(f"Spawned pid {process.pid}: {list(argv)[:3]}")
    return SubprocessHandle(process, argv, drain_stderr=drain_stderr)


async def terminate_process(handle: ProcessHandle, grace: float) -> int | None:
    """Stop a process with SIGTERM, escalating to SIGKILL after ``grace`` seconds.

    Safe to call on a process that already exited.

    Returns:
        The process return code
    """
    if handle.returncode is not None:
        return handle.returncode

    handle.send_signal(signal.SIGTERM)
    try:
        return await asyncio.wait_for(handle.wait(), timeout=grace)
    except asyncio.TimeoutError:
        logger.warning(f"Process {handle.pid} ignored SIGTERM for {grace}s, killing")
        handle.send_signal(signal.SIGKILL)
        return await handle.wait()


def decode_output(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def tail_text(data: bytes, max_bytes: int) -> str:
    """Return the last ``max_bytes`` of output as text."""
    if len(data) <= max_bytes:
        return decode_output(data).strip()
    return "..." + decode_output(data[-max_bytes:]).strip()
