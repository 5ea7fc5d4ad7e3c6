"""Persistent engine session: one long-lived process reused across prompts."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from localmodel.completion import CompletionHeuristic, FirstChunk
from localmodel.engine import EngineCommands, compose_prompt
from localmodel.errors import (
    SessionProcessDiedError,
    SessionTimeoutError,
    SessionWriteError,
)
from localmodel.process import ProcessHandle, Spawner, spawn_process, terminate_process

logger = logging.getLogger(__name__)

DEFAULT_SEND_TIMEOUT = 8.0  # seconds
DEFAULT_STOP_GRACE = 5.0  # seconds


@dataclass
class Session:
    """State of the active session process."""

    model_name: str
    handle: ProcessHandle
    started_at: float
    is_ready: bool = False


def _single_line(text: str) -> str:
    return " ".join(text.splitlines())


class PersistentSession:
    """Owns at most one interactive engine process bound to a model.

    Starting a new model stops the previous process first, so two live
    handles never coexist. Sends are serialized because a second prompt
    written before the first reply is read would corrupt the channel.
    """

    def __init__(
        self,
        commands: EngineCommands,
        spawner: Spawner = spawn_process,
        heuristic: CompletionHeuristic | None = None,
        stop_grace: float = DEFAULT_STOP_GRACE,
    ):
        self.commands = commands
        self.heuristic = heuristic or FirstChunk()
        self.stop_grace = stop_grace
        self._spawner = spawner
        self._session: Session | None = None
        self._send_lock = asyncio.Lock()
        self._lifecycle_lock = asyncio.Lock()

    @property
    def model_name(self) -> str | None:
        return self._session.model_name if self._session else None

    @property
    def started_at(self) -> float | None:
        return self._session.started_at if self._session else None

    @property
    def is_alive(self) -> bool:
        session = self._session
        return session is not None and session.handle.returncode is None

    @property
    def is_ready(self) -> bool:
        session = self._session
        return self.is_alive and session is not None and session.is_ready

    async def start(self, model_name: str) -> None:
        """Spawn a session process for ``model_name``, replacing any active one.

        Raises:
            OSError: If the process cannot be spawned
        """
        async with self._lifecycle_lock:
            if self._session is not None:
                logger.info(f"Replacing session for {self._session.model_name} with {model_name}")
                await self._stop_locked()

            argv = self.commands.session(model_name)
            logger.info(f"Starting session for model {model_name}")
            handle = await self._spawner(argv, stdin=True, drain_stderr=True)
            session = Session(model_name=model_name, handle=handle, started_at=time.time())
            self._session = session
            handle.on_exit(lambda code: self._on_exit(session, code))
            session.is_ready = handle.returncode is None

    async def send(
        self,
        prompt: str,
        context: str | None = None,
        timeout: float = DEFAULT_SEND_TIMEOUT,
    ) -> str:
        """Send a prompt and wait for the completion heuristic to resolve.

        Args:
            prompt: Prompt text
            context: Optional free-text context prepended to the prompt
            timeout: Soft timeout in seconds

        Returns:
            Response text

        Raises:
            SessionProcessDiedError: No live process, or it exited mid-send
            SessionWriteError: Writing to stdin failed
            SessionTimeoutError: No response within ``timeout``
        """
        async with self._send_lock:
            session = self._session
            if session is None or session.handle.returncode is not None:
                raise SessionProcessDiedError(
                    session.model_name if session else None,
                    session.handle.returncode if session else None,
                )

            handle = session.handle
            line = _single_line(compose_prompt(prompt, context)) + "\n"
            try:
                await handle.write(line.encode("utf-8"))
            except (BrokenPipeError, ConnectionResetError) as e:
                await self._discard(session)
                raise SessionWriteError(f"Failed to write prompt to session for {session.model_name}: {e}") from e

            collect = asyncio.ensure_future(self.heuristic.collect(handle.read_chunk))
            exited = asyncio.ensure_future(handle.wait())
            try:
                done, _ = await asyncio.wait(
                    {collect, exited},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            except asyncio.CancelledError:
                await self._discard(session)
                raise
            finally:
                for future in (collect, exited):
                    if not future.done():
                        future.cancel()

            if collect in done:
                text = collect.result()
                if text is None:
                    await self._discard(session)
                    raise SessionProcessDiedError(session.model_name, handle.returncode)
                return text

            if exited in done:
                await self._discard(session)
                raise SessionProcessDiedError(session.model_name, handle.returncode)

            # The pending reply would be read as the answer to the next prompt
            logger.warning(f"Session for {session.model_name} timed out after {timeout}s, stopping it")
            await self._discard(session)
            raise SessionTimeoutError(session.model_name, timeout)

    async def stop(self) -> None:
        """Stop the session process. Safe to call repeatedly."""
        async with self._lifecycle_lock:
            await self._stop_locked()

    async def _stop_locked(self) -> None:
        session = self._session
        self._session = None
        if session is None:
            return
        session.is_ready = False
        if session.handle.returncode is None:
            logger.info(f"Stopping session for model {session.model_name}")
            await terminate_process(session.handle, self.stop_grace)

    async def _discard(self, session: Session) -> None:
        async with self._lifecycle_lock:
            if self._session is session:
                await self._stop_locked()

    def _on_exit(self, session: Session, code: int) -> None:
        session.is_ready = False
        if self._session is session:
            logger.warning(f"Session process for {session.model_name} exited unexpectedly ({code})")
            self._session = None
