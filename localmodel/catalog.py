"""Cached listing of the models installed in the engine."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

import httpx

from localmodel.engine import EngineClient, format_size
from localmodel.schemas import ModelDescriptor, ModelStatus

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_TTL = 10.0  # seconds


def parse_model_listing(payload: Any) -> list[ModelDescriptor]:
    """Parse the engine's listing into descriptors.

    Unknown shapes and malformed entries are skipped with a warning; this
    never raises.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("models"), list):
        logger.warning(f"Unexpected model listing format: {type(payload).__name__}")
        return []

    models = []
    for raw in payload["models"]:
        if not isinstance(raw, dict):
            logger.warning(f"Skipping malformed model entry: {raw!r}")
            continue
        name = raw.get("name") or raw.get("model")
        if not isinstance(name, str) or not name:
            logger.warning(f"Skipping model entry without a name: {raw!r}")
            continue
        size = raw.get("size")
        size_label = format_size(size) if isinstance(size, (int, float)) else ""
        models.append(ModelDescriptor(name=name, size_label=size_label, status=ModelStatus.READY))

    return models


class ModelCatalog:
    """Snapshot of installed models, refreshed when its TTL expires."""

    def __init__(
        self,
        client: EngineClient,
        ttl: float = DEFAULT_CATALOG_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.ttl = ttl
        self._clock = clock
        # (fetched_at, models); replaced as a whole, never mutated
        self._snapshot: tuple[float, tuple[ModelDescriptor, ...]] | None = None
        self._refresh_lock = asyncio.Lock()

    def _fresh_snapshot(self) -> tuple[ModelDescriptor, ...] | None:
        snapshot = self._snapshot
        if snapshot is None:
            return None
        fetched_at, models = snapshot
        if self._clock() - fetched_at >= self.ttl:
            return None
        return models

    async def list_models(self, force_refresh: bool = False) -> list[ModelDescriptor]:
        """List installed models.

        Args:
            force_refresh: Bypass the cached snapshot

        Returns:
            Models known to the engine (empty if the listing is unavailable)
        """
        if not force_refresh:
            cached = self._fresh_snapshot()
            if cached is not None:
                return list(cached)

        async with self._refresh_lock:
            # Another caller may have refreshed while we waited
            if not force_refresh:
                cached = self._fresh_snapshot()
                if cached is not None:
                    return list(cached)

            models = await self._fetch()
            if models is None:
                return []
            self._snapshot = (self._clock(), tuple(models))
            return list(models)

    async def get_model(self, name: str) -> ModelDescriptor | None:
        """Look up a model by name in the (possibly refreshed) snapshot."""
        for model in await self.list_models():
            if model.name == name:
                return model
        return None

    def invalidate(self) -> None:
        """Drop the snapshot so the next listing hits the engine."""
        self._snapshot = None
        logger.debug("Model catalog invalidated")

    async def _fetch(self) -> list[ModelDescriptor] | None:
        logger.info("Listing available models...")
        try:
            payload = await self.client.list_tags()
        except httpx.HTTPError as e:
            logger.warning(f"Failed to list models: {e}")
            return None
        except ValueError as e:
            logger.warning(f"Model listing is not valid JSON: {e}")
            return None

        models = parse_model_listing(payload)
        logger.info(f"{len(models)} models found")
        return models
