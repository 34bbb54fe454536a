"""
SnapNote — FastAPI Application Factory
=======================================

What:  Creates and configures the FastAPI application instance.
How:   create_app() registers middleware, exception handlers and routers;
       the lifespan builds the capture pipeline and tears down the local
       model on shutdown.
Who:   uvicorn (`uvicorn snapnote.main:app`) and the test suite.

Application Architecture:
    ┌──────────────────────────────────────────────────────────┐
    │                      FastAPI App                         │
    │                                                          │
    │  Middleware:  [Request ID] → [Logging] → [GZip] → [CORS] │
    │                                                          │
    │  Routes:      /api/capture   /api/models   /health       │
    │                                                          │
    │  app.state.pipeline:                                     │
    │      OCRExtractionEngine, ModelLifecycleManager,         │
    │      NoteSynthesizer, CaptureService, GeminiNoteClient   │
    └──────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:  logging → configuration check → build pipeline →
              optional silent load of an already-cached model
    Shutdown: cancel any download, release the resident model
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from snapnote import __version__
from snapnote.config import settings
from snapnote.exceptions import (
    CircuitBreakerOpenError,
    DownloadTimeout,
    EngineInferenceError,
    InvalidInput,
    LLMServiceError,
    ModelDownloadError,
    ModelLifecycleError,
    PersistenceError,
    RecognitionFailure,
    SnapNoteError,
    UnknownModelError,
)
from snapnote.middleware.logging import RequestLoggingMiddleware
from snapnote.middleware.request_id import RequestIDMiddleware, request_id_var
from snapnote.pipeline import Pipeline, build_pipeline
from snapnote.routes import capture, health, models

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════


def setup_logging() -> None:
    """
    Configure the root logger once, before anything else logs.

    Format: 2024-01-15T12:00:00 [INFO] snapnote.services.ocr_service: message
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Chatty per-request / per-chunk loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("huggingface_hub").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan
# ══════════════════════════════════════════════════════════════════════════


def make_lifespan(pipeline: Optional[Pipeline] = None):
    """
    Build the lifespan handler. A prebuilt pipeline (tests) skips
    construction of the real collaborators.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        setup_logging()
        logger.info("=" * 60)
        logger.info("SnapNote %s starting up...", __version__)

        try:
            settings.validate_required_for_production()
        except ValueError as e:
            # Capture still works; notes fall back to heuristics
            logger.warning("Configuration warning: %s", str(e))

        if getattr(app.state, "pipeline", None) is None:
            app.state.pipeline = pipeline or build_pipeline(settings)
        manager = app.state.pipeline.model_manager

        if settings.auto_initialize_model:
            result = await manager.auto_initialize(settings.default_model_id)
            logger.info("Auto-initialize: %s", result.message)

        logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
        logger.info("=" * 60)

        yield

        logger.info("SnapNote shutting down...")
        await manager.unload_model()
        logger.info("Shutdown complete.")

    return lifespan


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════


def _error_response(
    status_code: int,
    error: str,
    message: str,
    details: Optional[dict] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    content = {"error": error, "message": message, "request_id": request_id_var.get("")}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map the exception hierarchy to HTTP responses.

    Handler hierarchy:
        InvalidInput            → 400
        RecognitionFailure      → 422
        UnknownModelError       → 404
        DownloadTimeout         → 504
        ModelDownloadError      → 502
        EngineInferenceError    → 503
        ModelLifecycleError     → 409 (not initialized, cancelled)
        PersistenceError        → 500
        LLMServiceError         → 503 + Retry-After
        CircuitBreakerOpenError → 503 + Retry-After
        SnapNoteError           → 500
        Exception               → 500 (stack trace logged, never returned)

    Starlette picks the most specific registered class along the MRO, so
    subclasses registered here win over their family handler.
    """

    @app.exception_handler(InvalidInput)
    async def handle_invalid_input(request: Request, exc: InvalidInput):
        logger.warning("[%s] Invalid input: %s", request_id_var.get(""), exc.message)
        return _error_response(400, "invalid_input", exc.message, exc.context)

    @app.exception_handler(RecognitionFailure)
    async def handle_recognition_failure(request: Request, exc: RecognitionFailure):
        logger.warning("[%s] Recognition failed: %s", request_id_var.get(""), exc.message)
        return _error_response(422, "no_text_detected", exc.message, exc.context)

    @app.exception_handler(UnknownModelError)
    async def handle_unknown_model(request: Request, exc: UnknownModelError):
        return _error_response(404, "unknown_model", exc.message, {"model_id": exc.model_id})

    @app.exception_handler(DownloadTimeout)
    async def handle_download_timeout(request: Request, exc: DownloadTimeout):
        logger.error("[%s] %s", request_id_var.get(""), exc.message)
        return _error_response(504, "download_timeout", exc.message, exc.context)

    @app.exception_handler(ModelDownloadError)
    async def handle_download_error(request: Request, exc: ModelDownloadError):
        logger.error("[%s] Model download failed: %s | %s", request_id_var.get(""), exc.message, exc.context)
        return _error_response(502, "model_download_failed", exc.message, {"model_id": exc.model_id})

    @app.exception_handler(EngineInferenceError)
    async def handle_inference_error(request: Request, exc: EngineInferenceError):
        logger.error("[%s] Local inference failed: %s", request_id_var.get(""), exc.context)
        return _error_response(503, "inference_failed", exc.message)

    @app.exception_handler(ModelLifecycleError)
    async def handle_lifecycle_error(request: Request, exc: ModelLifecycleError):
        logger.warning("[%s] Model lifecycle: %s", request_id_var.get(""), exc.message)
        return _error_response(409, "model_unavailable", exc.message, exc.context)

    @app.exception_handler(PersistenceError)
    async def handle_persistence_error(request: Request, exc: PersistenceError):
        logger.error("[%s] Storage error: %s | Context: %s", request_id_var.get(""), exc.message, exc.context)
        return _error_response(500, "storage_error", exc.message)

    @app.exception_handler(CircuitBreakerOpenError)
    async def handle_circuit_breaker(request: Request, exc: CircuitBreakerOpenError):
        logger.warning("[%s] Circuit breaker open: %s", request_id_var.get(""), exc.message)
        return _error_response(
            503,
            "service_unavailable",
            exc.message,
            {"recovery_time": exc.recovery_time},
            headers={"Retry-After": str(exc.recovery_time)},
        )

    @app.exception_handler(LLMServiceError)
    async def handle_llm_error(request: Request, exc: LLMServiceError):
        logger.error("[%s] LLM service error: %s", request_id_var.get(""), exc.message)
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
        return _error_response(503, "llm_service_error", exc.message, headers=headers)

    @app.exception_handler(SnapNoteError)
    async def handle_snapnote_error(request: Request, exc: SnapNoteError):
        logger.error("[%s] %s: %s | %s", request_id_var.get(""), type(exc).__name__, exc.message, exc.context)
        return _error_response(500, "server_error", exc.message)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("[%s] Unexpected error: %s", request_id_var.get(""), str(exc), exc_info=True)
        return _error_response(
            500,
            "internal_server_error",
            "An unexpected error occurred. Please try again or contact support.",
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════


def create_app(pipeline: Optional[Pipeline] = None) -> FastAPI:
    """
    Assemble the application.

    Args:
        pipeline: Prebuilt pipeline to serve instead of build_pipeline(settings).
    """
    app = FastAPI(
        title="SnapNote API",
        description=(
            "Capture notes from images: multi-strategy OCR plus AI enhancement with "
            "Google Gemini or a locally downloaded quantized model."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=make_lifespan(pipeline),
    )
    if pipeline is not None:
        app.state.pipeline = pipeline

    # Last added runs first: RequestID → Logging → GZip → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(capture.router)
    app.include_router(models.router)
    app.include_router(health.router)

    return app


app = create_app()
