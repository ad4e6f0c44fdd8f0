"""Schema submission and single-use artifact download."""

from __future__ import annotations

from pathlib import Path
from uuid import uuid4

import structlog
from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import FileResponse, JSONResponse
from starlette.background import BackgroundTask

from app.backend.src.core.artifact_store import ArtifactStore
from app.backend.src.core.errors import (
    InfrastructureError,
    JobNotFoundError,
    ValidationError,
)
from app.backend.src.core.job_queue import JobQueue, JobSnapshot
from app.backend.src.models import JobStatus
from app.backend.src.schemas.job import JobFailure, JobPending, JobSubmitResponse

from .deps import get_artifact_store, get_job_queue

LOGGER = structlog.get_logger(__name__)

router = APIRouter(tags=["generate"])


# --------------------------------------------------------------------------
# POST /generate-code
# --------------------------------------------------------------------------
@router.post("/generate-code", status_code=202, response_model=JobSubmitResponse)
def submit_schema(
    schema: UploadFile | None = File(None),
    queue: JobQueue = Depends(get_job_queue),
    store: ArtifactStore = Depends(get_artifact_store),
) -> JobSubmitResponse:
    """Store one schema upload and queue it for generation."""

    settings = queue.settings
    if schema is None or not schema.filename:
        raise HTTPException(status_code=400, detail="No file uploaded.")

    accepted = settings.normalized_extensions()
    extension = Path(schema.filename).suffix.lower()
    if extension not in accepted:
        LOGGER.info("codegen_upload_rejected", filename=schema.filename, extension=extension)
        allowed = ", ".join(sorted(accepted))
        raise HTTPException(status_code=400, detail=f"Only {allowed} files are allowed!")

    try:
        input_path = store.save_upload(schema.filename, schema.file, settings.max_upload_bytes)
    except ValidationError as exc:
        LOGGER.info("codegen_upload_rejected", filename=schema.filename, reason=str(exc))
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    job_id = str(uuid4())
    try:
        queue.enqueue(
            job_id=job_id,
            filename=schema.filename,
            input_path=str(input_path),
            output_dir=str(store.output_dir_for(job_id)),
        )
    except InfrastructureError as exc:
        input_path.unlink(missing_ok=True)
        raise HTTPException(status_code=503, detail="Job queue unavailable") from exc

    return JobSubmitResponse(job_id=job_id, status=JobStatus.QUEUED.value)


# --------------------------------------------------------------------------
# GET /download/{job_id}
# --------------------------------------------------------------------------
def _finish_download(store: ArtifactStore, snapshot: JobSnapshot) -> None:
    store.discard_job_files(
        input_path=snapshot.input_path,
        output_dir=snapshot.output_dir,
        archive_path=snapshot.archive_path,
    )
    LOGGER.info("codegen_artifact_consumed", job_id=snapshot.job_id)


@router.get("/download/{job_id}", name="download_artifact")
def download_artifact(
    job_id: str,
    wait: float | None = Query(None, ge=0, description="Seconds to wait for completion"),
    queue: JobQueue = Depends(get_job_queue),
    store: ArtifactStore = Depends(get_artifact_store),
):
    """Stream a completed job's archive once, then delete it."""

    settings = queue.settings
    timeout = settings.download_wait_seconds if wait is None else wait
    timeout = min(timeout, settings.max_download_wait_seconds)

    try:
        snapshot = queue.await_completion(job_id, timeout)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc

    if snapshot.status is JobStatus.FAILED:
        body = JobFailure(
            job_id=job_id, status=snapshot.status.value, error=snapshot.error_message
        )
        return JSONResponse(status_code=422, content=body.model_dump())

    if not snapshot.is_terminal:
        body = JobPending(
            job_id=job_id, status=snapshot.status.value, detail="Job is still processing"
        )
        return JSONResponse(status_code=202, content=body.model_dump())

    try:
        claimed = None if snapshot.consumed else queue.claim_download(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    if claimed is None:
        raise HTTPException(status_code=410, detail="Artifact already consumed")

    archive_path = Path(claimed.archive_path or "")
    if not claimed.archive_path or not archive_path.is_file():
        LOGGER.error("codegen_artifact_missing", job_id=job_id, archive_path=claimed.archive_path)
        queue.release_download(job_id)
        raise HTTPException(status_code=404, detail="Artifact not found")

    LOGGER.info("codegen_download_started", job_id=job_id, archive_path=str(archive_path))
    return FileResponse(
        archive_path,
        media_type="application/zip",
        filename=f"{job_id}.zip",
        background=BackgroundTask(_finish_download, store, claimed),
    )
