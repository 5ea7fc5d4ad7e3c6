"""Adapters for the external inference engine: command lines and HTTP API."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

logger = logging.getLogger(__name__)

TAGS_ENDPOINT = "/api/tags"
PING_TIMEOUT = 5.0  # seconds


def compose_prompt(prompt: str, context: str | None = None) -> str:
    """Prepend optional free-text context to a prompt."""
    if context:
        return f"{context}\n\nQuestion: {prompt}"
    return prompt


def format_size(num_bytes: int | float) -> str:
    """Format a byte count for display, e.g. 2345678 -> '2.24 MB'."""
    sizes = ["B", "KB", "MB", "GB", "TB"]
    if num_bytes <= 0:
        return "0 B"
    value = float(num_bytes)
    i = 0
    while value >= 1024 and i < len(sizes) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {sizes[i]}"


@dataclass
class EngineCommands:
    """Builds argv lists for the engine's command line."""

    binary: str = "ollama"
    session_args: list[str] = field(default_factory=list)

    def version(self) -> list[str]:
        return [self.binary, "--version"]

    def serve(self) -> list[str]:
        return [self.binary, "serve"]

    def session(self, model: str) -> list[str]:
        """Interactive run that reads prompts from stdin."""
        return [self.binary, "run", model, *self.session_args]

    def run_once(self, model: str, prompt: str) -> list[str]:
        """One-shot run with the prompt passed as an argument."""
        return [self.binary, "run", model, prompt]

    def pull(self, model: str) -> list[str]:
        return [self.binary, "pull", model]


class EngineClient:
    """Minimal client for the engine's HTTP listing/health endpoint."""

    def __init__(
        self,
        base_url: str,
        timeout: float = PING_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Engine server URL, e.g. http://127.0.0.1:11434
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def list_tags(self) -> Any:
        """Fetch the raw model listing.

        Raises:
            httpx.HTTPError: On connection failure, timeout or error status
            ValueError: If the body is not JSON
        """
        async with self._client() as client:
            response = await client.get(TAGS_ENDPOINT)
            response.raise_for_status()
            return response.json()

    async def ping(self) -> bool:
        """Check if the engine server answers."""
        try:
            async with self._client() as client:
                response = await client.get(TAGS_ENDPOINT)
                return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"Engine ping failed: {e}")
            return False
