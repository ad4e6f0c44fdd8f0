"""Entrypoint for the FastAPI application."""

import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load .env locally only; deployed environments inject variables directly.
env_path = os.path.join(os.path.dirname(__file__), "../.env")
if os.path.exists(env_path):
    load_dotenv(dotenv_path=os.path.abspath(env_path))

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import generate, health, jobs
from .core.artifact_store import ArtifactStore
from .core.config import get_settings
from .core.job_queue import JobQueue
from .core.logging import configure_logging
from .db import create_tables

LOGGER = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the queue handle and artifact store once; close the queue on exit."""

    # Registers the Celery tasks on the shared app.
    from tasks.worker import celery

    settings = get_settings()
    create_tables()
    app.state.artifact_store = ArtifactStore.from_settings(settings)
    app.state.job_queue = JobQueue(celery, settings)
    LOGGER.info(
        "codegen_service_started",
        uploads_dir=str(settings.uploads_dir),
        output_root=str(settings.output_root),
        archive_root=str(settings.archive_root),
        eager=settings.celery_task_always_eager,
    )
    try:
        yield
    finally:
        app.state.job_queue.close()
        app.state.job_queue = None
        LOGGER.info("codegen_service_stopped")


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Schema Codegen Service", version="0.1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, prefix="/api")
    app.include_router(generate.router, prefix="/api")
    app.include_router(jobs.router, prefix="/api")

    return app


app = create_app()
