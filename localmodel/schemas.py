"""Pydantic schemas for LocalModel data and broker request/response contracts."""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ModelStatus(str, Enum):
    """Status of a model known to the engine."""

    AVAILABLE = "available"
    DOWNLOADING = "downloading"
    READY = "ready"
    ERROR = "error"


class DownloadState(str, Enum):
    """Lifecycle of a model download."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


class Channel(str, Enum):
    """Channel that produced a generation result."""

    CACHE = "cache"
    SESSION = "session"
    FALLBACK = "fallback"


class ManagerState(str, Enum):
    """SessionManager lifecycle states."""

    UNINITIALIZED = "uninitialized"
    PROVISIONING = "provisioning"
    READY = "ready"
    SENDING = "sending"
    DEGRADED = "degraded"
    HALTED = "halted"
    SHUT_DOWN = "shut_down"


# --- Core data ---


class ModelDescriptor(BaseModel):
    """A model as reported by the engine's listing."""

    model_config = ConfigDict(frozen=True)

    name: str
    size_label: str = ""
    status: ModelStatus = ModelStatus.READY


class DownloadJob(BaseModel):
    """Progress of a single model download."""

    model_name: str
    percent: float = Field(default=0.0, ge=0.0, le=100.0)
    state: DownloadState = DownloadState.PENDING


class GenerateResult(BaseModel):
    """Result of a generate() call."""

    text: str
    duration_ms: int
    model: str
    channel: Channel


# --- Broker request schemas ---


class GenerateRequest(BaseModel):
    """Request to generate a completion."""

    prompt: str = Field(..., min_length=1)
    model: str | None = Field(
        default=None,
        description="Model to use (defaults to the configured default model)",
    )
    context: str | None = Field(
        default=None,
        description="Optional free-text context prepended to the prompt",
    )


class PullRequest(BaseModel):
    """Request to download a model."""

    name: str = Field(..., min_length=1)


# --- Broker response schemas ---


class GenerateResponse(BaseModel):
    """Response with generated text."""

    text: str
    duration_ms: int
    model: str
    channel: Channel


class ModelListResponse(BaseModel):
    """Models known to the engine."""

    models: list[ModelDescriptor] = Field(default_factory=list)
    default_model: str | None = None


class PullResponse(BaseModel):
    """Outcome of a model download."""

    model_name: str
    state: DownloadState
    percent: float


class ErrorResponse(BaseModel):
    """Error response for failed requests."""

    detail: str
    error_code: str | None = None
    guidance: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    broker: Literal["healthy", "unhealthy"] = "healthy"
    engine: Literal["healthy", "unhealthy"] = "healthy"
    manager_state: ManagerState = ManagerState.UNINITIALIZED
    session_model: str | None = None
    last_engine_check: str | None = None
