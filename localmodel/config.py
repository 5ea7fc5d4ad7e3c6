"""Manager configuration using pydantic-settings with a JSON file overlay."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".localmodel" / "config.json"
CONFIG_PATH_ENV = "LOCALMODEL_CONFIG"


class ManagerSettings(BaseSettings):
    """Settings for SessionManager and its collaborators.

    Every field can be overridden with a ``LOCALMODEL_``-prefixed environment
    variable, e.g. ``LOCALMODEL_DEFAULT_MODEL=llama3.2:3b``.
    """

    model_config = {"env_prefix": "LOCALMODEL_", "extra": "ignore"}

    # Engine
    engine_binary: str = "ollama"
    host: str = "127.0.0.1"
    port: int = 11434
    default_model: str = "phi3:mini"
    session_args: list[str] = Field(default_factory=list)

    # Timeouts (seconds)
    session_timeout: float = 8.0
    request_timeout: float = 25.0
    warmup_timeout: float = 60.0
    version_probe_timeout: float = 10.0
    list_timeout: float = 5.0
    download_timeout: float = 600.0
    stop_grace: float = 5.0
    kill_grace: float = 2.0

    # Retries
    retry_attempts: int = Field(default=2, ge=1)
    retry_backoff: float = 1.0
    server_start_attempts: int = Field(default=30, ge=1)
    server_poll_interval: float = 1.0

    # Caches
    response_cache_ttl: float = 30.0
    response_cache_max_entries: int = 500
    catalog_ttl: float = 10.0

    # Completion detection for the persistent session
    completion: Literal["first_chunk", "idle", "sentinel"] = "first_chunk"
    idle_window: float = 0.75
    sentinel: str | None = None

    auto_download: bool = True
    max_stderr_bytes: int = 2048
    log_level: str = "INFO"

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


def load_settings(path: Path | str | None = None, **overrides: Any) -> ManagerSettings:
    """Load settings from defaults, environment and an optional JSON file.

    Values in the JSON file take precedence over environment variables;
    explicit ``overrides`` take precedence over both.

    Args:
        path: Config file path (defaults to $LOCALMODEL_CONFIG, then
            ~/.localmodel/config.json)
        **overrides: Field values to force

    Returns:
        ManagerSettings instance
    """
    config_path = Path(path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
    file_values: dict[str, Any] = {}

    if config_path.exists():
        try:
            loaded = json.loads(config_path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable config file {config_path}: {e}")
        else:
            if isinstance(loaded, dict):
                file_values = loaded
            else:
                logger.warning(f"Ignoring config file {config_path}: top level is not an object")

    return ManagerSettings(**{**file_values, **overrides})
