"""Tests for real subprocess handles and termination."""

import asyncio
import signal
import sys

import pytest

from localmodel.process import spawn_process, tail_text, terminate_process

PY = sys.executable


class TestSpawnProcess:
    """Test spawning real short-lived processes."""

    @pytest.mark.asyncio
    async def test_communicate_collects_output(self):
        """stdout and stderr are collected separately."""
        handle = await spawn_process(
            [PY, "-c", "import sys; print('out'); print('err', file=sys.stderr)"]
        )
        stdout, stderr = await handle.communicate()

        assert stdout.strip() == b"out"
        assert stderr.strip() == b"err"
        assert handle.returncode == 0

    @pytest.mark.asyncio
    async def test_merge_stderr(self):
        """merge_stderr sends stderr into stdout."""
        handle = await spawn_process(
            [PY, "-c", "import sys; print('err', file=sys.stderr)"], merge_stderr=True
        )
        stdout, _ = await handle.communicate()
        assert b"err" in stdout

    @pytest.mark.asyncio
    async def test_stdin_roundtrip(self):
        """A process spawned with stdin reads what is written."""
        handle = await spawn_process(
            [PY, "-c", "import sys; print(sys.stdin.readline().upper(), flush=True)"], stdin=True
        )
        await handle.write(b"hello\n")
        line = await asyncio.wait_for(handle.readline(), timeout=10)

        assert line.strip() == b"HELLO"
        assert await handle.wait() == 0

    @pytest.mark.asyncio
    async def test_write_without_stdin_raises(self):
        """Writing to a process without stdin is a broken pipe."""
        handle = await spawn_process([PY, "-c", "pass"])
        with pytest.raises(BrokenPipeError):
            await handle.write(b"x")
        await handle.wait()

    @pytest.mark.asyncio
    async def test_missing_binary_raises_oserror(self):
        """Spawning a missing program raises OSError."""
        with pytest.raises(OSError):
            await spawn_process(["definitely-not-an-engine-binary"])

    @pytest.mark.asyncio
    async def test_on_exit_callback(self):
        """Exit callbacks receive the return code."""
        handle = await spawn_process([PY, "-c", "raise SystemExit(3)"])
        codes = []
        handle.on_exit(codes.append)

        await handle.wait()
        await asyncio.sleep(0.05)

        assert codes == [3]


class TestTerminateProcess:
    """Test SIGTERM/SIGKILL escalation."""

    @pytest.mark.asyncio
    async def test_terminates_running_process(self):
        """SIGTERM stops a cooperative process."""
        handle = await spawn_process([PY, "-c", "import time; time.sleep(30)"])

        code = await terminate_process(handle, grace=5.0)

        assert code == -signal.SIGTERM

    @pytest.mark.asyncio
    async def test_escalates_to_sigkill(self):
        """A process ignoring SIGTERM is killed after the grace period."""
        script = (
            "import signal, sys, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(30)\n"
        )
        handle = await spawn_process([PY, "-c", script])
        await asyncio.wait_for(handle.readline(), timeout=10)

        code = await terminate_process(handle, grace=0.2)

        assert code == -signal.SIGKILL

    @pytest.mark.asyncio
    async def test_noop_on_exited_process(self):
        """Terminating an exited process just returns its code."""
        handle = await spawn_process([PY, "-c", "pass"])
        await handle.wait()

        assert await terminate_process(handle, grace=0.1) == 0
        handle.send_signal(signal.SIGTERM)


class TestTailText:
    """Test output tail extraction."""

    def test_short_output_unchanged(self):
        assert tail_text(b"  error  \n", 100) == "error"

    def test_long_output_truncated(self):
        """Only the last bytes are kept."""
        result = tail_text(b"a" * 50 + b"END", 10)
        assert result.startswith("...")
        assert result.endswith("END")
