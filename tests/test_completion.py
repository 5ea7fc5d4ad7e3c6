"""Tests for response completion heuristics."""

import asyncio

import pytest

from localmodel.completion import (
    FirstChunk,
    IdleTimeout,
    SentinelToken,
    build_heuristic,
    clean_output,
)


def reader(*chunks, then_block=False):
    """Chunk reader over fixed chunks; EOF (or blocking) afterwards."""
    queue = list(chunks)

    async def read_chunk():
        if queue:
            return queue.pop(0)
        if then_block:
            await asyncio.sleep(3600)
        return b""

    return read_chunk


class TestCleanOutput:
    """Test terminal noise removal."""

    def test_strips_ansi_sequences(self):
        assert clean_output("\x1b[?25lhello\x1b[0m") == "hello"

    def test_strips_spinner_glyphs(self):
        assert clean_output("⠋⠙ hi") == " hi"


class TestFirstChunk:
    """Test first-chunk completion."""

    @pytest.mark.asyncio
    async def test_returns_first_text(self):
        """The first chunk with text is the response."""
        result = await FirstChunk().collect(reader(b"hi\n", b"more"))
        assert result == "hi"

    @pytest.mark.asyncio
    async def test_skips_noise_only_chunks(self):
        """Spinner-only chunks are not treated as a response."""
        result = await FirstChunk().collect(reader("⠋".encode(), b"\x1b[K", b"answer"))
        assert result == "answer"

    @pytest.mark.asyncio
    async def test_eof_before_text(self):
        """EOF before any text returns None."""
        assert await FirstChunk().collect(reader(b"  \n")) is None

    @pytest.mark.asyncio
    async def test_multibyte_split_across_chunks(self):
        """A UTF-8 character split across chunks decodes once complete."""
        data = "á".encode()
        result = await FirstChunk().collect(reader(data[:1], data[1:]))
        assert result == "á"


class TestIdleTimeout:
    """Test idle-window completion."""

    @pytest.mark.asyncio
    async def test_accumulates_until_quiet(self):
        """Chunks arriving before the stream goes quiet are joined."""
        result = await IdleTimeout(window=0.05).collect(reader(b"Hello, ", b"world", then_block=True))
        assert result == "Hello, world"

    @pytest.mark.asyncio
    async def test_eof_ends_response(self):
        """EOF after text ends the response."""
        assert await IdleTimeout(window=1.0).collect(reader(b"done")) == "done"

    @pytest.mark.asyncio
    async def test_eof_before_text(self):
        assert await IdleTimeout(window=0.05).collect(reader()) is None


class TestSentinelToken:
    """Test sentinel completion."""

    @pytest.mark.asyncio
    async def test_stops_at_sentinel(self):
        """Text before the sentinel is the response."""
        result = await SentinelToken("<END>").collect(reader(b"part one ", b"part two<E", b"ND> trailing"))
        assert result == "part one part two"

    @pytest.mark.asyncio
    async def test_eof_returns_partial(self):
        """EOF without the sentinel returns what arrived."""
        assert await SentinelToken("<END>").collect(reader(b"partial")) == "partial"

    def test_empty_token_rejected(self):
        with pytest.raises(ValueError):
            SentinelToken("")


class TestBuildHeuristic:
    """Test heuristic selection by name."""

    def test_builds_each_kind(self):
        assert isinstance(build_heuristic("first_chunk"), FirstChunk)
        assert build_heuristic("idle", idle_window=0.3).window == 0.3
        assert build_heuristic("sentinel", sentinel="###").token == "###"

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            build_heuristic("magic")
