"""Endpoints to track code-generation job status."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from app.backend.src.core.job_queue import JobQueue, JobSnapshot
from app.backend.src.models import JobStatus
from app.backend.src.schemas.job import JobRead

from .deps import get_job_queue

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _serialize_job(request: Request, job: JobSnapshot) -> JobRead:
    download_url = None
    if job.status is JobStatus.COMPLETED and not job.consumed:
        download_url = str(request.url_for("download_artifact", job_id=job.job_id))
    return JobRead(
        id=job.job_id,
        filename=job.filename,
        status=job.status.value,
        attempt=job.attempt,
        max_attempts=job.max_attempts,
        error=job.error_message,
        download_url=download_url,
        consumed=job.consumed,
        created_at=job.created_at,
        started_at=job.started_at,
        terminal_at=job.terminal_at,
    )


@router.get("/{job_id}", response_model=JobRead)
def job_status(
    job_id: str,
    request: Request,
    queue: JobQueue = Depends(get_job_queue),
) -> JobRead:
    """Return the current status of a job without waiting."""

    job = queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return _serialize_job(request, job)
