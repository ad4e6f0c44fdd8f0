"""FastAPI dependencies for the process-wide pipeline handles."""

from __future__ import annotations

from fastapi import HTTPException, Request

from app.backend.src.core.artifact_store import ArtifactStore
from app.backend.src.core.job_queue import JobQueue


def get_job_queue(request: Request) -> JobQueue:
    """Return the queue created during application startup."""

    queue = getattr(request.app.state, "job_queue", None)
    if queue is None:
        raise HTTPException(status_code=503, detail="Job queue not initialized")
    return queue


def get_artifact_store(request: Request) -> ArtifactStore:
    store = getattr(request.app.state, "artifact_store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Artifact store not initialized")
    return store
