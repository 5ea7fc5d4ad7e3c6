"""Provisioning checks: engine installed, server reachable, usable model present."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Union

from localmodel.catalog import ModelCatalog
from localmodel.download import DownloadTracker
from localmodel.engine import EngineClient, EngineCommands
from localmodel.errors import (
    DownloadError,
    EngineMissingError,
    NoUsableModelError,
    ServerUnreachableError,
)
from localmodel.process import (
    ProcessHandle,
    Spawner,
    decode_output,
    spawn_process,
    tail_text,
    terminate_process,
)
from localmodel.schemas import ModelDescriptor

logger = logging.getLogger(__name__)

ADDRESS_IN_USE = "address already in use"

ModelSelector = Callable[[list[ModelDescriptor]], Union[str, None, Awaitable[Union[str, None]]]]


class ProvisionChecker:
    """Makes sure the engine and a usable model are ready before serving prompts."""

    def __init__(
        self,
        commands: EngineCommands,
        client: EngineClient,
        catalog: ModelCatalog,
        downloads: DownloadTracker,
        default_model: str,
        spawner: Spawner = spawn_process,
        model_selector: ModelSelector | None = None,
        auto_download: bool = True,
        version_probe_timeout: float = 10.0,
        server_start_attempts: int = 30,
        server_poll_interval: float = 1.0,
        stop_grace: float = 5.0,
    ):
        self.commands = commands
        self.client = client
        self.catalog = catalog
        self.downloads = downloads
        self.default_model = default_model
        self.model_selector = model_selector
        self.auto_download = auto_download
        self.version_probe_timeout = version_probe_timeout
        self.server_start_attempts = server_start_attempts
        self.server_poll_interval = server_poll_interval
        self.stop_grace = stop_grace
        self._spawner = spawner
        self.engine_version: str | None = None
        self._server: ProcessHandle | None = None
        self._server_pump: asyncio.Task | None = None
        self._address_in_use = False

    async def ensure_provisioned(self) -> str:
        """Run all provisioning checks.

        Returns:
            Name of a usable model (the default one unless substituted)

        Raises:
            EngineMissingError: Engine binary absent or not invocable (fatal)
            ServerUnreachableError: Server did not come up
            NoUsableModelError: No model could be made available
        """
        await self.check_engine()
        await self.ensure_server()
        return await self.ensure_model()

    async def check_engine(self) -> str:
        """Probe the engine's version.

        Raises:
            EngineMissingError: If the probe cannot run or fails
        """
        argv = self.commands.version()
        try:
            handle = await self._spawner(argv)
        except OSError as e:
            logger.error(f"Engine not found: {e}")
            raise EngineMissingError(self.commands.binary, str(e)) from e

        try:
            stdout, stderr = await asyncio.wait_for(handle.communicate(), timeout=self.version_probe_timeout)
        except asyncio.TimeoutError:
            raise EngineMissingError(
                self.commands.binary, f"version probe timed out after {self.version_probe_timeout}s"
            ) from None
        finally:
            await terminate_process(handle, self.stop_grace)

        if handle.returncode != 0:
            raise EngineMissingError(
                self.commands.binary,
                f"version probe exited with {handle.returncode}: {tail_text(stderr, 512)}",
            )

        self.engine_version = decode_output(stdout).strip() or decode_output(stderr).strip()
        logger.info(f"Engine installed: {self.engine_version}")
        return self.engine_version

    async def ensure_server(self) -> None:
        """Make sure the engine server answers, starting it if needed.

        Raises:
            ServerUnreachableError: If the server never answered
        """
        if await self.client.ping():
            logger.info("Engine server is running")
            return

        logger.warning("Engine server is not running, starting it...")
        await self._start_server()

        for attempt in range(1, self.server_start_attempts + 1):
            if await self.client.ping():
                logger.info(f"Engine server ready after {attempt} checks")
                return
            if self._address_in_use:
                logger.debug("Another engine instance holds the port; waiting for it to answer")
            elif self._server_died():
                logger.error(f"Engine server exited with {self._server.returncode} before answering")
                raise ServerUnreachableError(self.client.base_url, attempt)
            await asyncio.sleep(self.server_poll_interval)

        raise ServerUnreachableError(self.client.base_url, self.server_start_attempts)

    async def ensure_model(self) -> str:
        """Make sure the default model, or a selected substitute, is installed.

        Raises:
            NoUsableModelError: If no model could be made available
        """
        models = await self.catalog.list_models(force_refresh=True)
        if any(m.name == self.default_model for m in models):
            logger.info(f"Default model {self.default_model} is available")
            return self.default_model

        reason = "auto download disabled"
        if self.auto_download:
            logger.info(f"Default model {self.default_model} missing, downloading it...")
            try:
                await self.downloads.download(self.default_model)
                return self.default_model
            except DownloadError as e:
                logger.warning(f"Could not download default model {self.default_model}: {e}")
                reason = str(e)
                models = await self.catalog.list_models(force_refresh=True)

        if models and self.model_selector is not None:
            choice = self.model_selector(models)
            if inspect.isawaitable(choice):
                choice = await choice
            if choice and any(m.name == choice for m in models):
                logger.info(f"Using selected model {choice} instead of {self.default_model}")
                return choice
            logger.warning(f"Model selector returned unusable choice: {choice!r}")

        raise NoUsableModelError(self.default_model, reason)

    async def close(self) -> None:
        """Stop the server process if this checker started it."""
        if self._server_pump is not None:
            self._server_pump.cancel()
            self._server_pump = None
        server = self._server
        self._server = None
        if server is not None and server.returncode is None:
            logger.info("Stopping engine server started by this manager")
            await terminate_process(server, self.stop_grace)

    @property
    def started_server(self) -> bool:
        return self._server is not None

    def _server_died(self) -> bool:
        # The pump finishes only after the process exited and its output was read
        return self._server_pump is not None and self._server_pump.done() and not self._address_in_use

    async def _start_server(self) -> None:
        if self._server is not None and self._server.returncode is None:
            logger.info("Engine server started earlier is still running; waiting for it")
            return
        await self.close()

        argv = self.commands.serve()
        try:
            self._server = await self._spawner(argv, merge_stderr=True)
        except OSError as e:
            logger.error(f"Failed to start engine server: {e}")
            raise EngineMissingError(self.commands.binary, str(e)) from e
        self._address_in_use = False
        self._server_pump = asyncio.ensure_future(self._pump_server_output(self._server))

    async def _pump_server_output(self, handle: ProcessHandle) -> None:
        # Keeps the pipe drained so the server never blocks on a full buffer
        try:
            while True:
                line = await handle.readline()
                if not line:
                    break
                text = decode_output(line).strip()
                if ADDRESS_IN_USE in text.lower():
                    self._address_in_use = True
                    logger.info("Engine server port already in use; another instance is serving")
                logger.debug(f"[engine serve] {text}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Error reading engine server output: {e}")

        code = await handle.wait()
        if code != 0 and not self._address_in_use:
            logger.warning(f"Engine server exited with {code}")
