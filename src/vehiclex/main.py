"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from vehiclex.api.routes import router
from vehiclex.config import get_settings
from vehiclex.ml.inference import InferencePool
from vehiclex.ml.model_manager import OnnxModelManager
from vehiclex.session import ClassificationSession

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: start the model load on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting VehicleX (device=%s, max_concurrent=%s, img_size=%s, model=%s)",
        settings.device,
        settings.max_concurrent,
        settings.img_size,
        settings.model_path or f"{settings.model_repo_id}/{settings.model_filename}",
    )

    inference_pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings)
    session = ClassificationSession(settings, model_manager, inference_pool)
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager
    app.state.session = session

    # Serve requests while the model loads; prediction stays disabled until ready.
    load_task = asyncio.create_task(session.load_model())

    logger.info("VehicleX accepting requests")
    yield

    logger.info("Shutting down VehicleX")
    if not load_task.done():
        load_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await load_task
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("VehicleX shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="VehicleX",
        description="Heavy/light vehicle image classification API",
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
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn using the configured host and port."""
    settings = get_settings()
    uvicorn.run("vehiclex.main:app", host=settings.host, port=settings.port)
