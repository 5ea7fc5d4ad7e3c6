"""SessionManager: the single entry point for generating text with local models."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

import httpx

from localmodel.cache import ResponseCache
from localmodel.catalog import ModelCatalog
from localmodel.completion import build_heuristic
from localmodel.config import ManagerSettings
from localmodel.download import DownloadTracker, ProgressCallback
from localmodel.engine import EngineClient, EngineCommands, compose_prompt
from localmodel.errors import (
    AllChannelsFailedError,
    EngineMissingError,
    GenerateError,
    InvokeError,
    SessionError,
)
from localmodel.fallback import FallbackInvoker
from localmodel.process import Spawner, spawn_process
from localmodel.provision import ModelSelector, ProvisionChecker
from localmodel.schemas import (
    Channel,
    DownloadJob,
    GenerateResult,
    ManagerState,
    ModelDescriptor,
    ModelStatus,
)
from localmodel.session import PersistentSession

logger = logging.getLogger(__name__)


class SessionManager:
    """Serves prompts from cache, a persistent session, or one-shot fallback.

    Lifecycle::

        uninitialized -> provisioning -> ready -> sending -> ready
                                                \\-> degraded -> ready

    A missing engine halts the manager for good; any other provisioning
    failure leaves it uninitialized so initialize() can be retried.
    """

    def __init__(
        self,
        settings: ManagerSettings | None = None,
        *,
        spawner: Spawner | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] | None = None,
        model_selector: ModelSelector | None = None,
    ):
        """Build the manager and its collaborators.

        Args:
            settings: Configuration (defaults to ManagerSettings())
            spawner: Process spawner, replaced by fakes in tests
            http_transport: httpx transport for the engine API
            clock: Monotonic clock used by the caches
            model_selector: Picks a substitute when the default model is unavailable
        """
        self.settings = settings or ManagerSettings()
        spawner = spawner or spawn_process
        clock = clock or time.monotonic
        s = self.settings

        self.commands = EngineCommands(binary=s.engine_binary, session_args=list(s.session_args))
        self.client = EngineClient(s.base_url, timeout=s.list_timeout, transport=http_transport)
        self.catalog = ModelCatalog(self.client, ttl=s.catalog_ttl, clock=clock)
        self.cache = ResponseCache(
            default_ttl=s.response_cache_ttl,
            max_entries=s.response_cache_max_entries,
            clock=clock,
        )
        self.session = PersistentSession(
            self.commands,
            spawner=spawner,
            heuristic=build_heuristic(s.completion, s.idle_window, s.sentinel),
            stop_grace=s.stop_grace,
        )
        self.fallback = FallbackInvoker(
            self.commands,
            spawner=spawner,
            kill_grace=s.kill_grace,
            max_stderr_bytes=s.max_stderr_bytes,
        )
        self.downloads = DownloadTracker(
            self.commands,
            self.catalog,
            spawner=spawner,
            timeout=s.download_timeout,
            kill_grace=s.kill_grace,
        )
        self.provisioner = ProvisionChecker(
            self.commands,
            self.client,
            self.catalog,
            self.downloads,
            default_model=s.default_model,
            spawner=spawner,
            model_selector=model_selector,
            auto_download=s.auto_download,
            version_probe_timeout=s.version_probe_timeout,
            server_start_attempts=s.server_start_attempts,
            server_poll_interval=s.server_poll_interval,
            stop_grace=s.stop_grace,
        )

        self._state = ManagerState.UNINITIALIZED
        self._halted: EngineMissingError | None = None
        self._default_model = s.default_model
        self._init_lock = asyncio.Lock()
        self._session_lock = asyncio.Lock()
        self._session_task: asyncio.Task | None = None
        self._session_task_model: str | None = None
        self._warm_models: set[str] = set()
        self._in_flight = 0
        self._degraded = False
        self._closing = False

    @property
    def state(self) -> ManagerState:
        return self._state

    @property
    def default_model(self) -> str:
        return self._default_model

    @property
    def session_model(self) -> str | None:
        return self.session.model_name

    @property
    def current_download(self) -> DownloadJob | None:
        return self.downloads.current_job

    async def __aenter__(self) -> "SessionManager":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    async def initialize(self) -> str:
        """Provision the engine and start the default model's session.

        Safe to call repeatedly; only the first successful call does work.

        Returns:
            The model used as default (may be a selected substitute)

        Raises:
            EngineMissingError: The engine is not installed (manager halts)
            ProvisionError: Server or model could not be made ready
        """
        async with self._init_lock:
            self._raise_if_unusable()
            if self._state is not ManagerState.UNINITIALIZED:
                return self._default_model

            self._state = ManagerState.PROVISIONING
            try:
                model = await self.provisioner.ensure_provisioned()
            except EngineMissingError as e:
                logger.error(f"Engine missing, halting: {e}")
                self._halted = e
                self._state = ManagerState.HALTED
                raise
            except BaseException:
                self._state = ManagerState.UNINITIALIZED
                raise

            self._default_model = model
            self._session_task_model = model
            self._session_task = asyncio.ensure_future(self._start_session_background(model))
            self._state = ManagerState.READY
            logger.info(f"Session manager ready with default model {model}")
            return model

    async def generate(
        self,
        model: str | None,
        prompt: str,
        context: str | None = None,
    ) -> GenerateResult:
        """Generate a response for a prompt.

        Args:
            model: Model name (None for the default model)
            prompt: Prompt text
            context: Optional free-text context prepended to the prompt

        Returns:
            GenerateResult with text, duration and the channel that answered

        Raises:
            EngineMissingError: The engine is not installed
            AllChannelsFailedError: Session and every fallback attempt failed
        """
        if self._state in (ManagerState.UNINITIALIZED, ManagerState.PROVISIONING):
            await self.initialize()
        self._raise_if_unusable()

        model = model or self._default_model
        started = time.perf_counter()

        cached = self.cache.get(model, compose_prompt(prompt, context))
        if cached is not None:
            logger.debug(f"Cache hit for model {model}")
            return self._result(cached, model, Channel.CACHE, started)

        self._in_flight += 1
        self._state = ManagerState.SENDING
        try:
            text, channel = await self._generate_uncached(model, prompt, context)
        finally:
            self._in_flight -= 1
            if self._in_flight == 0 and self._state in (ManagerState.SENDING, ManagerState.DEGRADED):
                self._state = ManagerState.READY

        self.cache.put(model, compose_prompt(prompt, context), text)
        self._warm_models.add(model)
        return self._result(text, model, channel, started)

    async def list_models(self, force_refresh: bool = False) -> list[ModelDescriptor]:
        """List installed models, including one currently downloading."""
        models = await self.catalog.list_models(force_refresh=force_refresh)
        job = self.downloads.current_job
        if job is None:
            return models

        models = [m for m in models if m.name != job.model_name]
        models.append(ModelDescriptor(name=job.model_name, status=ModelStatus.DOWNLOADING))
        return models

    async def download_model(
        self,
        model_name: str,
        on_progress: ProgressCallback | None = None,
    ) -> DownloadJob:
        """Download a model.

        Raises:
            DownloadTimeoutError: The download took too long
            DownloadFailedError: The engine reported a failure
        """
        self._raise_if_unusable()
        return await self.downloads.download(model_name, on_progress)

    async def engine_healthy(self) -> bool:
        return await self.client.ping()

    async def shutdown(self) -> None:
        """Stop every child process this manager owns. Idempotent."""
        if self._closing:
            return
        logger.info("Shutting down session manager")
        self._closing = True

        task = self._session_task
        self._session_task = None
        if task is not None:
            # Let a spawn in progress finish so its process can be stopped below
            await asyncio.gather(task, return_exceptions=True)

        await self.session.stop()
        await self.fallback.kill_all()
        await self.downloads.cancel()
        await self.provisioner.close()
        self._state = ManagerState.SHUT_DOWN

    def _raise_if_unusable(self) -> None:
        if self._halted is not None:
            raise self._halted
        if self._closing:
            raise GenerateError("Session manager has been shut down")

    def _result(self, text: str, model: str, channel: Channel, started: float) -> GenerateResult:
        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(f"Generated response with {model} via {channel.value} in {duration_ms}ms")
        return GenerateResult(text=text, duration_ms=duration_ms, model=model, channel=channel)

    async def _generate_uncached(
        self,
        model: str,
        prompt: str,
        context: str | None,
    ) -> tuple[str, Channel]:
        warm = model in self._warm_models
        causes: list[Exception] = []

        session_timeout = self.settings.session_timeout if warm else self.settings.warmup_timeout
        text = await self._try_session(model, prompt, context, session_timeout, causes)
        if text is not None:
            if self._degraded:
                logger.info("Persistent session recovered")
            self._degraded = False
            return text, Channel.SESSION

        request_timeout = self.settings.request_timeout if warm else self.settings.warmup_timeout
        attempts = self.settings.retry_attempts
        for attempt in range(1, attempts + 1):
            if self._closing:
                break
            try:
                text = await self.fallback.invoke(model, prompt, context, timeout=request_timeout)
                return text, Channel.FALLBACK
            except InvokeError as e:
                causes.append(e)
                logger.warning(f"Fallback attempt {attempt}/{attempts} for {model} failed: {e}")
                if attempt < attempts:
                    await asyncio.sleep(self.settings.retry_backoff * attempt)

        raise AllChannelsFailedError(model, causes)

    async def _try_session(
        self,
        model: str,
        prompt: str,
        context: str | None,
        timeout: float,
        causes: list[Exception],
    ) -> str | None:
        if self._closing:
            return None
        pending = self._session_task
        if pending is not None and not pending.done():
            if self._session_task_model == model:
                logger.info(f"Session for {model} is still starting, using fallback")
                return None
            await asyncio.gather(pending, return_exceptions=True)

        try:
            if not self._session_bound_to(model):
                async with self._session_lock:
                    if not self._session_bound_to(model):
                        await self.session.start(model)
            return await self.session.send(prompt, context, timeout=timeout)
        except (SessionError, OSError) as e:
            causes.append(e)
            self._degraded = True
            self._state = ManagerState.DEGRADED
            logger.warning(f"Session channel degraded for {model}: {e}; using fallback")
            return None

    def _session_bound_to(self, model: str) -> bool:
        return self.session.is_alive and self.session.model_name == model

    async def _start_session_background(self, model: str) -> None:
        try:
            async with self._session_lock:
                await self.session.start(model)
        except OSError as e:
            self._degraded = True
            logger.warning(f"Could not start session for {model}: {e}; fallback will be used")
