"""Celery tasks for schema code generation."""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

import structlog
from celery.exceptions import Ignore

from app.backend.src.core.artifact_store import ArtifactStore
from app.backend.src.core.job_queue import GENERATE_TASK_NAME, JobQueue
from app.backend.src.models import JobStatus
from app.backend.src.services.cleanup import sweep_expired_jobs as run_sweep
from app.backend.src.services.generation_worker import process_job
from .worker import celery

LOGGER = structlog.get_logger(__name__)

_job_queue: JobQueue | None = None
_store: ArtifactStore | None = None


def get_job_queue() -> JobQueue:
    """Return the worker process's queue handle, creating it on first use."""

    global _job_queue
    if _job_queue is None:
        _job_queue = JobQueue(celery)
    return _job_queue


def get_store() -> ArtifactStore:
    global _store
    if _store is None:
        _store = ArtifactStore.from_settings()
    return _store


def shutdown() -> None:
    global _job_queue
    if _job_queue is not None:
        _job_queue.close()
        _job_queue = None


def is_redelivery(request: Any) -> bool:
    """True when the broker handed this message back after an unacked delivery."""

    delivery_info = getattr(request, "delivery_info", None) or {}
    return bool(delivery_info.get("redelivered"))


@celery.task(bind=True, name=GENERATE_TASK_NAME)
def generate_code(self, job_id: str) -> dict[str, Any]:
    """Run generation and archiving for one queued job."""

    result = process_job(
        job_id, get_job_queue(), get_store(), redelivered=is_redelivery(self.request)
    )
    if result["status"] in (JobStatus.QUEUED.value, JobStatus.ACTIVE.value):
        # Leave the shared task id without a result while another delivery owns the job.
        LOGGER.info("celery_job_skipped", job_id=job_id, status=result["status"])
        raise Ignore()
    LOGGER.info("celery_job_finished", job_id=job_id, status=result.get("status"))
    return result


@celery.task(name="tasks.sweep_expired_jobs")
def sweep_expired_jobs() -> dict[str, int]:
    """Periodic TTL sweep scheduled by Celery beat."""

    return asdict(run_sweep(get_job_queue(), get_store()))


__all__ = [
    "generate_code",
    "get_job_queue",
    "get_store",
    "is_redelivery",
    "shutdown",
    "sweep_expired_jobs",
]
