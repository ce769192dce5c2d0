"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from rpsclassifier.config import Settings

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rpsclassifier.api.pages import router as pages_router
from rpsclassifier.api.routes import router
from rpsclassifier.config import get_settings
from rpsclassifier.ml.classifier import ImageClassifier
from rpsclassifier.ml.inference import InferencePool
from rpsclassifier.ml.model_manager import OnnxModelManager
from rpsclassifier.previews import PreviewStore
from rpsclassifier.state import SessionStore

logger = logging.getLogger(__name__)


async def _housekeeping(app: FastAPI, interval: float) -> None:
    """Periodically drop idle sessions and idle cached models."""
    while True:
        await asyncio.sleep(interval)
        try:
            evicted = app.state.session_store.evict_idle()
            if evicted:
                logger.info("Evicted %s idle sessions", evicted)
            app.state.model_manager.unload_idle_models()
        except Exception:
            logger.exception("Housekeeping pass failed")


def init_state(app: FastAPI, settings: Settings) -> None:
    """Attach settings and services to app.state."""
    app.state.settings = settings
    app.state.inference_pool = InferencePool(settings)
    app.state.model_manager = OnnxModelManager(settings)
    app.state.classifier = ImageClassifier(app.state.model_manager, settings)
    app.state.preview_store = PreviewStore()
    app.state.session_store = SessionStore(app.state.preview_store, ttl=settings.session_ttl)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting rpsclassifier (device=%s, max_concurrent=%s, model=%s, cache_model=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model_repo_id or settings.model_path,
        settings.cache_model,
    )

    init_state(app, settings)
    housekeeping = asyncio.create_task(_housekeeping(app, settings.housekeeping_interval))

    logger.info("rpsclassifier ready")
    yield

    logger.info("Shutting down rpsclassifier")
    housekeeping.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await housekeeping
    app.state.session_store.shutdown()
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("rpsclassifier shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="rpsclassifier",
        description="Upload an image and get the raw scores of a rock-paper-scissors classifier",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    application.include_router(pages_router)
    return application


app = create_app()


def run() -> None:
    """Serve the app with uvicorn on the configured host and port."""
    settings = get_settings()
    uvicorn.run("rpsclassifier.main:app", host=settings.host, port=settings.port)
