"""Health check endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.orm import Session

from ..core.errors import InfrastructureError
from ..core.job_queue import JobQueue
from ..db import get_session_dependency
from .deps import get_job_queue

router = APIRouter(tags=["health"])


@router.get("/health/live")
def liveness() -> dict[str, str]:
    """Return a liveness indicator."""

    return {"status": "live"}


@router.get("/health/ready")
def readiness(
    session: Session = Depends(get_session_dependency),
    queue: JobQueue = Depends(get_job_queue),
) -> dict[str, str]:
    """Return readiness, checking both the job table and the broker."""

    session.execute(text("SELECT 1"))
    try:
        queue.ping()
    except InfrastructureError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"status": "ready"}


@router.get("/metrics")
def metrics() -> Response:
    """Expose Prometheus metrics."""

    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
