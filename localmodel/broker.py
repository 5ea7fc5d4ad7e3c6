"""HTTP broker exposing the session manager to local clients."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from localmodel.config import load_settings
from localmodel.errors import (
    AllChannelsFailedError,
    DownloadError,
    EngineMissingError,
    LocalModelError,
    ProvisionError,
)
from localmodel.manager import SessionManager
from localmodel.schemas import (
    ErrorResponse,
    GenerateRequest,
    GenerateResponse,
    HealthResponse,
    ModelListResponse,
    PullRequest,
    PullResponse,
)

logger = logging.getLogger(__name__)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


def _error(status_code: int, exc: Exception, error_code: str, guidance: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(detail=str(exc), error_code=error_code, guidance=guidance).model_dump(),
    )


def create_app(manager: SessionManager | None = None) -> FastAPI:
    """Create the broker app.

    Args:
        manager: Manager to serve (built from load_settings() when omitted).
            The app shuts it down when the lifespan ends.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.manager = manager or SessionManager(load_settings())
        app.state.last_engine_check = None
        try:
            yield
        finally:
            await app.state.manager.shutdown()

    app = FastAPI(
        title="LocalModel Broker",
        description="HTTP broker for prompting locally installed models",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.post("/generate", response_model=GenerateResponse)
    async def generate(request: Request, body: GenerateRequest) -> GenerateResponse:
        """Generate a response with a local model."""
        mgr: SessionManager = request.app.state.manager
        logger.info(f"Received generate request: model={body.model or mgr.default_model}")
        result = await mgr.generate(body.model, body.prompt, body.context)
        return GenerateResponse(
            text=result.text,
            duration_ms=result.duration_ms,
            model=result.model,
            channel=result.channel,
        )

    @app.get("/models", response_model=ModelListResponse)
    async def models(request: Request, refresh: bool = False) -> ModelListResponse:
        """List installed models."""
        mgr: SessionManager = request.app.state.manager
        return ModelListResponse(
            models=await mgr.list_models(force_refresh=refresh),
            default_model=mgr.default_model,
        )

    @app.post("/models/pull", response_model=PullResponse)
    async def pull(request: Request, body: PullRequest) -> PullResponse:
        """Download a model and wait for it to finish."""
        mgr: SessionManager = request.app.state.manager
        job = await mgr.download_model(body.name)
        return PullResponse(model_name=job.model_name, state=job.state, percent=job.percent)

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request) -> HealthResponse:
        """Check broker and engine health."""
        mgr: SessionManager = request.app.state.manager
        engine_healthy = await mgr.engine_healthy()
        request.app.state.last_engine_check = datetime.now()

        return HealthResponse(
            broker="healthy",
            engine="healthy" if engine_healthy else "unhealthy",
            manager_state=mgr.state,
            session_model=mgr.session_model,
            last_engine_check=request.app.state.last_engine_check.isoformat(),
        )

    @app.exception_handler(EngineMissingError)
    async def engine_missing_handler(request: Request, exc: EngineMissingError) -> JSONResponse:
        logger.error(f"Engine missing: {exc}")
        return _error(503, exc, "ENGINE_MISSING", exc.guidance)

    @app.exception_handler(ProvisionError)
    async def provision_handler(request: Request, exc: ProvisionError) -> JSONResponse:
        logger.error(f"Provisioning failed: {exc}")
        return _error(503, exc, "PROVISION_FAILED")

    @app.exception_handler(AllChannelsFailedError)
    async def all_channels_handler(request: Request, exc: AllChannelsFailedError) -> JSONResponse:
        logger.error(f"Generation failed: {exc}")
        return _error(502, exc, "ALL_CHANNELS_FAILED")

    @app.exception_handler(DownloadError)
    async def download_handler(request: Request, exc: DownloadError) -> JSONResponse:
        logger.error(f"Download failed: {exc}")
        return _error(502, exc, "DOWNLOAD_FAILED")

    @app.exception_handler(LocalModelError)
    async def local_model_handler(request: Request, exc: LocalModelError) -> JSONResponse:
        logger.error(f"Request failed: {exc}")
        return _error(500, exc, "LOCALMODEL_ERROR")

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return _error(500, exc, "INTERNAL_ERROR")

    return app


app = create_app()
