"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from teachlens.config import Settings

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from teachlens.api.routes import router
from teachlens.config import get_settings
from teachlens.history import HistoryStore, JsonFileStore
from teachlens.ml.inference import InferencePool
from teachlens.ml.model_manager import OnnxModelManager
from teachlens.ml.preprocessing import ImageNormalizer
from teachlens.session import ClassificationSession, SessionContext

logger = logging.getLogger(__name__)


def build_session(settings: Settings, pool: InferencePool) -> ClassificationSession:
    """Create the shared context (with history loaded) and its orchestrator."""
    history = HistoryStore(
        JsonFileStore(settings.history_path),
        key=settings.history_key,
        max_history=settings.max_history,
    )
    history.load()
    context = SessionContext(history=history)
    return ClassificationSession(context, ImageNormalizer.from_settings(settings), pool)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting TeachLens (device=%s, max_concurrent=%s, image_size=%s, model_dir=%s)",
        settings.device,
        settings.max_concurrent,
        settings.image_size,
        settings.model_dir,
    )

    inference_pool = InferencePool(settings.max_concurrent)
    app.state.inference_pool = inference_pool
    session = build_session(settings, inference_pool)
    app.state.session = session

    # Requests arriving before this finishes are answered with model_not_ready
    load_task = asyncio.create_task(session.load_model(OnnxModelManager(settings)))

    logger.info("TeachLens accepting requests")
    yield

    logger.info("Shutting down TeachLens")
    load_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await load_task
    inference_pool.shutdown()
    logger.info("TeachLens shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="TeachLens",
        description="Image classification with ranked probabilities and a local result history",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run("teachlens.main:app", host=settings.host, port=settings.port)
