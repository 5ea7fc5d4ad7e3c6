"""One-shot engine invocations used when the persistent session is unavailable."""

from __future__ import annotations

import asyncio
import logging

from localmodel.completion import clean_output
from localmodel.engine import EngineCommands, compose_prompt
from localmodel.errors import InvokeTimeoutError, NonZeroExitError, SpawnFailedError
from localmodel.process import (
    ProcessHandle,
    Spawner,
    decode_output,
    spawn_process,
    tail_text,
    terminate_process,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 25.0  # seconds
DEFAULT_KILL_GRACE = 2.0  # seconds
MAX_STDERR_BYTES = 2 * 1024


class FallbackInvoker:
    """Runs one independent engine process per prompt.

    Each process is reaped before invoke() returns, whether it finished,
    timed out, or the caller was cancelled.
    """

    def __init__(
        self,
        commands: EngineCommands,
        spawner: Spawner = spawn_process,
        kill_grace: float = DEFAULT_KILL_GRACE,
        max_stderr_bytes: int = MAX_STDERR_BYTES,
    ):
        self.commands = commands
        self.kill_grace = kill_grace
        self.max_stderr_bytes = max_stderr_bytes
        self._spawner = spawner
        self._in_flight: set[ProcessHandle] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def invoke(
        self,
        model_name: str,
        prompt: str,
        context: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> str:
        """Run a single prompt through a fresh engine process.

        Args:
            model_name: Model to run
            prompt: Prompt text
            context: Optional free-text context prepended to the prompt
            timeout: Hard timeout in seconds

        Returns:
            Response text

        Raises:
            SpawnFailedError: The process could not be started
            InvokeTimeoutError: The process was killed after ``timeout``
            NonZeroExitError: The process exited with a non-zero code
        """
        argv = self.commands.run_once(model_name, compose_prompt(prompt, context))
        logger.info(f"Fallback invocation for model {model_name}")

        try:
            handle = await self._spawner(argv)
        except OSError as e:
            logger.error(f"Failed to spawn fallback process: {e}")
            raise SpawnFailedError(f"Could not start {argv[0]}: {e}") from e

        self._in_flight.add(handle)
        try:
            stdout, stderr = await asyncio.wait_for(handle.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Fallback invocation for {model_name} timed out after {timeout}s")
            raise InvokeTimeoutError(model_name, timeout) from None
        finally:
            # Covers timeout and cancellation; a no-op once the process exited
            await terminate_process(handle, self.kill_grace)
            self._in_flight.discard(handle)

        code = handle.returncode
        if code != 0:
            stderr_tail = tail_text(stderr, self.max_stderr_bytes)
            logger.warning(f"Fallback process for {model_name} exited with {code}: {stderr_tail}")
            raise NonZeroExitError(code if code is not None else -1, stderr_tail)

        return clean_output(decode_output(stdout)).strip()

    async def kill_all(self) -> None:
        """Terminate every in-flight invocation."""
        handles = list(self._in_flight)
        if handles:
            logger.info(f"Killing {len(handles)} in-flight fallback processes")
        await asyncio.gather(
            *(terminate_process(handle, self.kill_grace) for handle in handles),
            return_exceptions=True,
        )
