"""Model downloads with progress parsed from the engine's pull output."""

from __future__ import annotations

import asyncio
import codecs
import logging
import re
from typing import Callable

from localmodel.catalog import ModelCatalog
from localmodel.engine import EngineCommands
from localmodel.errors import DownloadFailedError, DownloadTimeoutError
from localmodel.process import (
    ProcessHandle,
    Spawner,
    spawn_process,
    terminate_process,
)
from localmodel.schemas import DownloadJob, DownloadState

logger = logging.getLogger(__name__)

DEFAULT_DOWNLOAD_TIMEOUT = 600.0  # 10 minutes
DEFAULT_KILL_GRACE = 2.0  # seconds

# "pulling 8eeb52dfb3bb...  42% ▕████   ▏ 1.2 GB/2.2 GB"
_PERCENT_RE = re.compile(r"(\d{1,3}(?:\.\d+)?)\s*%")
_LINE_SPLIT_RE = re.compile(r"[\r\n]+")

ProgressCallback = Callable[[float], None]


def parse_percent(text: str) -> float | None:
    """Extract the last percentage in a line of progress output.

    Returns:
        Percentage in [0, 100], or None if the text has none
    """
    matches = _PERCENT_RE.findall(text)
    if not matches:
        return None
    value = float(matches[-1])
    if value > 100.0:
        return None
    return value


class DownloadTracker:
    """Runs model downloads one at a time and reports their progress."""

    def __init__(
        self,
        commands: EngineCommands,
        catalog: ModelCatalog,
        spawner: Spawner = spawn_process,
        timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
        kill_grace: float = DEFAULT_KILL_GRACE,
    ):
        self.commands = commands
        self.catalog = catalog
        self.timeout = timeout
        self.kill_grace = kill_grace
        self._spawner = spawner
        self._lock = asyncio.Lock()
        self._handle: ProcessHandle | None = None
        self.current_job: DownloadJob | None = None

    async def download(
        self,
        model_name: str,
        on_progress: ProgressCallback | None = None,
    ) -> DownloadJob:
        """Download a model, calling ``on_progress`` as the percentage changes.

        Args:
            model_name: Model to pull
            on_progress: Called with the new percentage on each change

        Returns:
            The finished DownloadJob (state DONE)

        Raises:
            DownloadTimeoutError: The download exceeded the overall timeout
            DownloadFailedError: The process could not start or exited non-zero
        """
        async with self._lock:
            job = DownloadJob(model_name=model_name)
            self.current_job = job
            try:
                await self._run(job, on_progress)
            except BaseException:
                job.state = DownloadState.FAILED
                raise
            finally:
                self.current_job = None

            job.state = DownloadState.DONE
            self.catalog.invalidate()
            logger.info(f"Download of model {model_name} finished")
            return job

    async def cancel(self) -> None:
        """Kill the running download process, if any."""
        handle = self._handle
        if handle is not None:
            logger.info("Cancelling model download")
            await terminate_process(handle, self.kill_grace)

    async def _run(self, job: DownloadJob, on_progress: ProgressCallback | None) -> None:
        argv = self.commands.pull(job.model_name)
        logger.info(f"Downloading model {job.model_name}...")

        try:
            handle = await self._spawner(argv, merge_stderr=True)
        except OSError as e:
            raise DownloadFailedError(f"Could not start {argv[0]}: {e}") from e

        self._handle = handle
        job.state = DownloadState.IN_PROGRESS
        tail: list[str] = []
        try:
            await asyncio.wait_for(self._pump(handle, job, on_progress, tail), timeout=self.timeout)
            code = await handle.wait()
        except asyncio.TimeoutError:
            logger.warning(f"Download of {job.model_name} timed out after {self.timeout}s")
            raise DownloadTimeoutError(job.model_name, self.timeout) from None
        finally:
            await terminate_process(handle, self.kill_grace)
            self._handle = None

        if code != 0:
            detail = tail[-1] if tail else "no output"
            raise DownloadFailedError(f"Download of '{job.model_name}' failed with exit code {code}: {detail}")

    async def _pump(
        self,
        handle: ProcessHandle,
        job: DownloadJob,
        on_progress: ProgressCallback | None,
        tail: list[str],
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = await handle.read_chunk()
            if not chunk:
                break
            pending += decoder.decode(chunk)
            *lines, pending = _LINE_SPLIT_RE.split(pending)
            for line in lines:
                self._handle_line(line, job, on_progress, tail)
        if pending:
            self._handle_line(pending, job, on_progress, tail)

    def _handle_line(
        self,
        line: str,
        job: DownloadJob,
        on_progress: ProgressCallback | None,
        tail: list[str],
    ) -> None:
        line = line.strip()
        if not line:
            return
        tail[:] = (tail + [line])[-5:]

        percent = parse_percent(line)
        if percent is None or percent == job.percent:
            return
        job.percent = percent
        logger.debug(f"Download {job.model_name}: {percent:.1f}%")
        if on_progress is not None:
            on_progress(percent)
