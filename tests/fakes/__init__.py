"""Shared test doubles: fake engine processes, spawner, clock and HTTP transport."""

from __future__ import annotations

import asyncio
import itertools
import json
import signal
from typing import Any, Callable, Sequence

import httpx

_pids = itertools.count(1000)

Responder = Callable[[str], "bytes | str | None"]


class FakeProcess:
    """In-memory ProcessHandle.

    The process stays alive until it is signalled, unless it is a one-shot
    process (``hang=False`` and no ``responder``), which exits with
    ``returncode`` once its output has been consumed.

    Args:
        argv: Command line it was spawned with
        output: Chunks available on stdout from the start
        returncode: Exit code for a one-shot process
        stderr: Bytes returned as stderr by communicate()
        hang: Never finish on its own
        responder: Called with each line written to stdin; its return value
            (if not None) is queued on stdout
        delay: Seconds communicate() takes before returning
        reply_delay: Seconds before a responder reply appears on stdout
        ignore_sigterm: Survive SIGTERM (only SIGKILL stops it)
        broken_pipe: Raise BrokenPipeError on write
    """

    def __init__(
        self,
        argv: Sequence[str],
        *,
        output: Sequence[bytes] = (),
        returncode: int = 0,
        stderr: bytes = b"",
        hang: bool = False,
        responder: Responder | None = None,
        delay: float = 0.0,
        reply_delay: float = 0.0,
        ignore_sigterm: bool = False,
        broken_pipe: bool = False,
        events: list | None = None,
    ):
        self.argv = list(argv)
        self.pid = next(_pids)
        self.stdin = False
        self.merge_stderr = False
        self.drain_stderr = False
        self.final_code = returncode
        self.stderr = stderr
        self.hang = hang
        self.responder = responder
        self.delay = delay
        self.reply_delay = reply_delay
        self.ignore_sigterm = ignore_sigterm
        self.broken_pipe = broken_pipe
        self.written: list[str] = []
        self.signals: list[int] = []
        self._events = events if events is not None else []
        self._returncode: int | None = None
        self._stdout: asyncio.Queue[bytes] = asyncio.Queue()
        self._exited = asyncio.Event()
        self._callbacks: list[Callable[[int], None]] = []
        for chunk in output:
            self._stdout.put_nowait(chunk)

    @property
    def returncode(self) -> int | None:
        return self._returncode

    @property
    def one_shot(self) -> bool:
        return not self.hang and self.responder is None

    def emit(self, data: bytes | str) -> None:
        self._stdout.put_nowait(data.encode() if isinstance(data, str) else data)

    def exit(self, code: int) -> None:
        if self._returncode is not None:
            return
        self._returncode = code
        self._events.append(("exit", self.argv, code))
        self._exited.set()
        for callback in self._callbacks:
            callback(code)

    async def write(self, data: bytes) -> None:
        if self.broken_pipe or self._returncode is not None:
            raise BrokenPipeError("stdin closed")
        line = data.decode().rstrip("\n")
        self.written.append(line)
        self._events.append(("write", self.argv, line))
        if self.responder is not None:
            reply = self.responder(line)
            if reply is None:
                return
            if self.reply_delay:
                asyncio.get_running_loop().call_later(self.reply_delay, self._reply, reply)
            else:
                self._reply(reply)

    def _reply(self, data: bytes | str) -> None:
        if self._returncode is None:
            self._events.append(("reply", self.argv, data))
            self.emit(data)

    async def read_chunk(self, size: int = 4096) -> bytes:
        if not self._stdout.empty():
            return self._stdout.get_nowait()
        if self._returncode is not None:
            return b""
        if self.one_shot:
            self.exit(self.final_code)
            return b""

        get = asyncio.ensure_future(self._stdout.get())
        exited = asyncio.ensure_future(self._exited.wait())
        try:
            done, _ = await asyncio.wait({get, exited}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for future in (get, exited):
                if not future.done():
                    future.cancel()
        if get in done:
            return get.result()
        return b""

    async def readline(self) -> bytes:
        return await self.read_chunk()

    async def communicate(self, data: bytes | None = None) -> tuple[bytes, bytes]:
        if self.hang:
            await self._exited.wait()
        elif self.delay:
            await asyncio.sleep(self.delay)

        chunks = []
        while not self._stdout.empty():
            chunks.append(self._stdout.get_nowait())
        self.exit(self.final_code)
        return b"".join(chunks), self.stderr

    def send_signal(self, sig: int) -> None:
        if self._returncode is not None:
            return
        self.signals.append(sig)
        self._events.append(("signal", self.argv, sig))
        if sig == signal.SIGTERM and self.ignore_sigterm:
            return
        self.exit(-sig)

    async def wait(self) -> int:
        await self._exited.wait()
        return self._returncode

    def on_exit(self, callback: Callable[[int], None]) -> None:
        if self._returncode is not None:
            callback(self._returncode)
        else:
            self._callbacks.append(callback)


class FakeSpawner:
    """Spawner returning FakeProcess instances chosen by argv rules.

    Rules added later take precedence. A rule given several option dicts
    uses them in turn for successive spawns and repeats the last one.
    """

    def __init__(self, binary: str = "ollama"):
        self.binary = binary
        self.spawned: list[FakeProcess] = []
        self.events: list[tuple] = []
        self._rules: list[tuple[Callable[[list[str]], bool], list[dict[str, Any] | BaseException]]] = []

    async def __call__(
        self,
        argv: Sequence[str],
        *,
        stdin: bool = False,
        merge_stderr: bool = False,
        drain_stderr: bool = False,
    ) -> FakeProcess:
        argv = list(argv)
        for match, variants in reversed(self._rules):
            if not match(argv):
                continue
            variant = variants.pop(0) if len(variants) > 1 else variants[0]
            if isinstance(variant, BaseException):
                self.events.append(("spawn_failed", argv))
                raise variant
            process = FakeProcess(argv, events=self.events, **variant)
            break
        else:
            raise FileNotFoundError(2, "No such file or directory", argv[0])

        process.stdin = stdin
        process.merge_stderr = merge_stderr
        process.drain_stderr = drain_stderr
        self.spawned.append(process)
        self.events.append(("spawn", argv))
        return process

    def rule(self, match: Callable[[list[str]], bool], *variants: dict[str, Any] | BaseException) -> None:
        self._rules.append((match, list(variants) or [{}]))

    def on_version(self, *variants: dict[str, Any] | BaseException) -> None:
        self.rule(lambda argv: argv[1:] == ["--version"], *variants)

    def on_serve(self, *variants: dict[str, Any] | BaseException) -> None:
        self.rule(lambda argv: argv[1:] == ["serve"], *variants)

    def on_session(self, model: str, *variants: dict[str, Any] | BaseException) -> None:
        self.rule(lambda argv: argv[1:3] == ["run", model] and len(argv) == 3, *variants)

    def on_run_once(self, model: str, *variants: dict[str, Any] | BaseException) -> None:
        self.rule(lambda argv: argv[1:3] == ["run", model] and len(argv) == 4, *variants)

    def on_pull(self, model: str, *variants: dict[str, Any] | BaseException) -> None:
        self.rule(lambda argv: argv[1:] == ["pull", model], *variants)

    def processes(self, *prefix: str) -> list[FakeProcess]:
        """Spawned processes whose argv (after the binary) starts with ``prefix``."""
        return [p for p in self.spawned if p.argv[1:1 + len(prefix)] == list(prefix)]

    @property
    def live(self) -> list[FakeProcess]:
        return [p for p in self.spawned if p.returncode is None]


def echo_responder(replies: dict[str, str], default: str | None = None) -> Responder:
    """Responder answering known prompts, or ``default`` (None hangs)."""

    def respond(line: str) -> str | None:
        return replies.get(line, default)

    return respond


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def tags_transport(*model_names: str, status_code: int = 200, calls: list | None = None) -> httpx.MockTransport:
    """MockTransport serving an engine listing with the given models."""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request.url.path)
        body = {"models": [{"name": name, "size": 2_200_000_000} for name in model_names]}
        return httpx.Response(status_code, content=json.dumps(body).encode())

    return httpx.MockTransport(handler)


def unreachable_transport(calls: list | None = None) -> httpx.MockTransport:
    """MockTransport that fails every request with a connection error."""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request.url.path)
        raise httpx.ConnectError("connection refused", request=request)

    return httpx.MockTransport(handler)


__all__ = [
    "FakeClock",
    "FakeProcess",
    "FakeSpawner",
    "echo_responder",
    "tags_transport",
    "unreachable_transport",
]
