"""threatmerge FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan     — @asynccontextmanager startup/shutdown sequence
  - /health      — backend health
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. load_config()              → app.state.config
  2. create_relational_store()  → app.state.relational_store
  3. create_blob_store()        → app.state.blob_store
  4. MergeEngine(...)           → app.state.engine
  5. app.state.ready = True

Shutdown sequence (reverse):
  app.state.ready = False → close blob store → close relational store
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from threatmerge import __version__
from threatmerge.api.merge import router as merge_router
from threatmerge.config import Config, load_config
from threatmerge.engine.orchestrator import MergeEngine
from threatmerge.engine.similarity import SimilarityMatcher
from threatmerge.store.blob import BlobDocumentRepository
from threatmerge.store.factory import create_blob_store, create_relational_store
from threatmerge.utils.logger import configure_logging, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


# ─── Dependencies ─────────────────────────────────────────────────────────────


async def require_ready(request: Request) -> None:
    """FastAPI dependency: raises HTTP 503 if app.state.ready is not True."""
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={"status": "starting", "message": "threatmerge is starting up."},
        )


def build_engine(config: Config, relational_store: Any, blob_store: Any) -> MergeEngine:
    """Wire a MergeEngine from config and already-created stores."""
    matcher = SimilarityMatcher(
        title_threshold=config.matcher.title_threshold,
        description_threshold=config.matcher.description_threshold,
        min_token_length=config.matcher.min_token_length,
    )
    return MergeEngine(
        relational_store=relational_store,
        blob_repository=BlobDocumentRepository(blob_store, key_prefix=config.blob.key_prefix),
        matcher=matcher,
        blob_prefix=config.blob.model_id_prefix,
    )


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup and shutdown sequence."""
    logger.info("threatmerge_starting")

    # load_config() raises SystemExit on an invalid config file, before ready=True.
    config: Config = load_config()
    app.state.config = config

    # Raises RuntimeError on a schema version mismatch; startup is refused.
    relational_store = await create_relational_store(config)
    app.state.relational_store = relational_store

    blob_store = create_blob_store(config)
    app.state.blob_store = blob_store

    app.state.engine = build_engine(config, relational_store, blob_store)

    app.state.ready = True
    logger.info("threatmerge_ready", host=config.server.host, port=config.server.port)

    yield

    logger.info("threatmerge_shutting_down")
    app.state.ready = False

    try:
        await blob_store.close()
    except Exception as exc:
        logger.warning("blob_store_close_error", error=str(exc))

    await relational_store.close()
    logger.info("threatmerge_shutdown_complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app() -> FastAPI:
    """Create and configure the threatmerge FastAPI application.

    Call this function directly in unit tests to get an isolated app instance.
    """
    application = FastAPI(
        title="threatmerge",
        description="Merges threat models across relational and blob backends",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if DEBUG else None,
        redoc_url="/redoc" if DEBUG else None,
        openapi_url="/openapi.json" if DEBUG else None,
    )

    # /health returns 503 for any request that arrives before startup completes.
    application.state.ready = False

    @application.get("/health", tags=["health"])
    async def health(request: Request) -> dict[str, Any]:
        """Backend health.

        Response body (200):
            {"status": "ok" | "degraded", "relational": bool, "blob": bool}
        """
        if not getattr(request.app.state, "ready", False):
            raise HTTPException(
                status_code=503,
                detail={"status": "starting", "message": "threatmerge is starting up."},
            )
        relational_ok = await request.app.state.relational_store.health_check()
        blob_ok = await request.app.state.blob_store.health_check()
        return {
            "status": "ok" if relational_ok and blob_ok else "degraded",
            "relational": relational_ok,
            "blob": blob_ok,
        }

    application.include_router(merge_router, dependencies=[Depends(require_ready)])

    # Global exception handlers
    @application.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        logger.warning(
            "http_exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return application


# ─── Module-Level App (for uvicorn) ───────────────────────────────────────────

app = create_app()
