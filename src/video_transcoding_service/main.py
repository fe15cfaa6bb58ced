"""FastAPI application entry point for the video transcoding service."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import router as api_router
from .config import Settings, settings
from .encoder import AbstractEncoder
from .job_store import AbstractJobStore
from .logging_setup import configure_logging
from .profiles import available_profiles
from .runtime import build_container
from .storage import AbstractArtifactStore
from .work_queue import AbstractWorkQueue

logger = structlog.get_logger(__name__)


def create_app(
    job_store: Optional[AbstractJobStore] = None,
    work_queue: Optional[AbstractWorkQueue] = None,
    artifact_store: Optional[AbstractArtifactStore] = None,
    encoder: Optional[AbstractEncoder] = None,
    *,
    app_settings: Optional[Settings] = None,
    start_workers: bool = True,
) -> FastAPI:
    configure_logging()
    config = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        container = build_container(
            config,
            job_store=job_store,
            artifact_store=artifact_store,
            encoder=encoder,
            work_queue=work_queue,
            start_workers=start_workers,
        )
        app.state.container = container
        await container.start()
        logger.info("Service started", queue_backend=type(container.work_queue).__name__)
        yield
        await container.close()

    app = FastAPI(
        title="Video Transcoding Service",
        description="Asynchronous FFmpeg transcoding and HLS/DASH packaging pipeline",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)

    @app.get("/", tags=["meta"])
    async def root() -> dict[str, str | list[str]]:
        return {
            "service": "video-transcoding-service",
            "version": "0.1.0",
            "profiles": available_profiles(config.enable_4k),
        }

    return app


app = create_app()
