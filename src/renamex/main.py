"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from renamex.api.routes import router
from renamex.config import Settings, get_settings
from renamex.core.batch import BatchStore
from renamex.core.scheduler import ClassificationScheduler
from renamex.core.threshold import ThresholdGate
from renamex.ml.image_classifier import ClassifierAdapter, ClipZeroShotClassifier
from renamex.ml.inference import InferencePool
from renamex.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Build the services shared by every request and attach them to ``app.state``.

    Nothing is downloaded or loaded here; the classifier loads on first use.
    """
    app.state.settings = settings

    inference_pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings)
    classifier = ClassifierAdapter(
        loader=partial(ClipZeroShotClassifier.load, settings, model_manager),
        pool=inference_pool,
        text_template=settings.text_template,
    )
    store = BatchStore()
    gate = ThresholdGate(settings.threshold)

    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager
    app.state.classifier = classifier
    app.state.store = store
    app.state.threshold_gate = gate
    app.state.scheduler = ClassificationScheduler(
        store=store,
        classifier=classifier,
        gate=gate,
        timeout=settings.classify_timeout or None,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting RenameX (device=%s, model=%s, quantized=%s, threshold=%s, max_concurrent=%s)",
        settings.device,
        settings.clip_model,
        settings.quantized,
        settings.threshold,
        settings.max_concurrent,
    )

    init_state(app, settings)

    logger.info("RenameX ready")
    yield

    logger.info("Shutting down RenameX")
    await app.state.scheduler.stop()
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("RenameX shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="RenameX",
        description="Batch image renaming from zero-shot theme and style classification",
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
