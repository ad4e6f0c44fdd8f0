"""Drive one job from ``active`` to a terminal state."""

from __future__ import annotations

from pathlib import Path
from time import perf_counter
from typing import Any

import structlog

from app.backend.src.core.artifact_store import ArtifactStore
from app.backend.src.core.errors import ArchiveError, GenerationError
from app.backend.src.core.job_queue import JobQueue, JobSnapshot
from app.backend.src.models import JobStatus
from app.backend.src.services.archiver import build_archive
from app.backend.src.services.generator import Generator, load_generator, run_generator
from app.backend.src.services.metrics import job_duration_seconds

LOGGER = structlog.get_logger(__name__)


def _payload(job_id: str, snapshot: JobSnapshot | None) -> dict[str, Any]:
    if snapshot is None:
        return {"job_id": job_id, "status": "missing"}
    payload: dict[str, Any] = {
        "job_id": job_id,
        "status": snapshot.status.value,
        "attempt": snapshot.attempt,
    }
    if snapshot.archive_path:
        payload["archive_path"] = snapshot.archive_path
    if snapshot.error_message:
        payload["error"] = snapshot.error_message
    return payload


def _discard_superseded(
    job_id: str,
    queue: JobQueue,
    store: ArtifactStore,
    archive_path: Path | None,
) -> JobSnapshot | None:
    current = queue.get_job(job_id)
    LOGGER.warning(
        "codegen_attempt_superseded",
        job_id=job_id,
        current_status=current.status.value if current else None,
    )
    completed_elsewhere = current is not None and current.status is JobStatus.COMPLETED
    if archive_path is not None and not completed_elsewhere:
        store.remove_archive(archive_path)
    return current


def process_job(
    job_id: str,
    queue: JobQueue,
    store: ArtifactStore,
    generator: Generator | None = None,
    *,
    redelivered: bool = False,
) -> dict[str, Any]:
    """Claim, generate, archive and record the outcome of ``job_id``.

    Every failure is recorded on the job; nothing is raised to the caller
    except errors from the job table itself. The outcome is only recorded
    while this attempt still owns the job; if the sweep or another delivery
    took it over meanwhile, the archive built here is dropped.
    """

    snapshot = queue.claim(job_id, takeover=redelivered)
    if snapshot is None:
        return _payload(job_id, queue.get_job(job_id))
    if snapshot.is_terminal:
        return _payload(job_id, snapshot)

    attempt = snapshot.attempt
    archive_path: Path | None = None
    start = perf_counter()
    log = LOGGER.bind(job_id=job_id, attempt=attempt)
    try:
        output_dir = store.reset_output_dir(snapshot.output_dir)
        collaborator = generator or load_generator(queue.settings)
        log.info("codegen_generation_started", input_path=snapshot.input_path)
        run_generator(collaborator, Path(snapshot.input_path), output_dir)
        archive_path = build_archive(
            snapshot.input_path, output_dir, store.archive_path_for(job_id)
        )
    except GenerationError as exc:
        log.warning("codegen_generation_failed", error=str(exc))
        final = queue.mark_failed(job_id, str(exc), attempt=attempt)
    except ArchiveError as exc:
        log.warning("codegen_archive_failed", error=str(exc))
        final = queue.mark_failed(job_id, str(exc), attempt=attempt)
    except Exception as exc:
        log.exception("codegen_job_crashed")
        final = queue.mark_failed(job_id, f"{type(exc).__name__}: {exc}", attempt=attempt)
    else:
        final = queue.mark_completed(job_id, str(archive_path), attempt=attempt)
        if final is not None:
            log.info("codegen_job_success", archive_path=str(archive_path))
    finally:
        job_duration_seconds.observe(perf_counter() - start)

    if final is None:
        final = _discard_superseded(job_id, queue, store, archive_path)

    return _payload(job_id, final)


__all__ = ["process_job"]
