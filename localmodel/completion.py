"""Heuristics that decide when a persistent-session response is complete.

The engine's interactive mode has no end-of-response marker, so completion
is guessed from the output stream. Each heuristic consumes chunks from a
reader and returns the response text, or None if the stream ended before
any text arrived.
"""

from __future__ import annotations

import asyncio
import codecs
import re
from typing import Awaitable, Callable

ChunkReader = Callable[[], Awaitable[bytes]]

# CSI/OSC escape sequences and the spinner glyphs interactive engines print
_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x07]*\x07")
_SPINNER_RE = re.compile("[\u2800-\u28ff]")


def clean_output(text: str) -> str:
    """Strip terminal escape sequences and spinner glyphs."""
    return _SPINNER_RE.sub("", _ANSI_RE.sub("", text))


class _Decoder:
    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: bytes) -> str:
        return clean_output(self._decoder.decode(chunk))


class FirstChunk:
    """Treat the first non-empty output chunk as the whole response."""

    name = "first_chunk"

    async def collect(self, read_chunk: ChunkReader) -> str | None:
        decoder = _Decoder()
        while True:
            chunk = await read_chunk()
            if not chunk:
                return None
            text = decoder.feed(chunk).strip()
            if text:
                return text


class IdleTimeout:
    """Accumulate output until the stream stays quiet for ``window`` seconds."""

    name = "idle"

    def __init__(self, window: float = 0.75):
        self.window = window

    async def collect(self, read_chunk: ChunkReader) -> str | None:
        decoder = _Decoder()
        parts: list[str] = []

        # Wait as long as needed for the first output; the caller bounds this
        while not "".join(parts).strip():
            chunk = await read_chunk()
            if not chunk:
                return None
            parts.append(decoder.feed(chunk))

        while True:
            try:
                chunk = await asyncio.wait_for(read_chunk(), timeout=self.window)
            except asyncio.TimeoutError:
                break
            if not chunk:
                break
            parts.append(decoder.feed(chunk))

        return "".join(parts).strip()


class SentinelToken:
    """Accumulate output until an explicit end marker appears."""

    name = "sentinel"

    def __init__(self, token: str):
        if not token:
            raise ValueError("sentinel token must be non-empty")
        self.token = token

    async def collect(self, read_chunk: ChunkReader) -> str | None:
        decoder = _Decoder()
        buffer = ""
        while True:
            chunk = await read_chunk()
            if not chunk:
                text = buffer.strip()
                return text or None
            buffer += decoder.feed(chunk)
            index = buffer.find(self.token)
            if index != -1:
                return buffer[:index].strip()


CompletionHeuristic = FirstChunk | IdleTimeout | SentinelToken


def build_heuristic(kind: str, idle_window: float = 0.75, sentinel: str | None = None) -> CompletionHeuristic:
    """Create a completion heuristic from its configured name."""
    if kind == "first_chunk":
        return FirstChunk()
    if kind == "idle":
        return IdleTimeout(idle_window)
    if kind == "sentinel":
        return SentinelToken(sentinel or "")
    raise ValueError(f"Unknown completion heuristic: {kind}")
