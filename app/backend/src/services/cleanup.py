"""TTL sweep for abandoned artifacts and stuck jobs."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

import structlog

from app.backend.src.core.artifact_store import ArtifactStore
from app.backend.src.core.job_queue import JobQueue
from app.backend.src.models import JobStatus
from app.backend.src.models.job import utcnow

LOGGER = structlog.get_logger(__name__)


@dataclass
class SweepReport:
    expired: int = 0
    requeued: int = 0
    failed: int = 0
    orphans: int = 0


def sweep_expired_jobs(
    queue: JobQueue,
    store: ArtifactStore,
    now: datetime | None = None,
) -> SweepReport:
    """Purge expired jobs and push stuck ones toward a terminal state.

    * Terminal jobs older than ``ARTIFACT_TTL_SECONDS`` lose their files and row.
    * ``active`` jobs past ``STALE_JOB_SECONDS`` are requeued while attempts
      remain, otherwise failed.
    * ``queued`` jobs past ``STALE_JOB_SECONDS`` are republished; once older
      than the artifact TTL they are failed instead.
    * Leftover ``.part`` archives older than the TTL are removed.
    """

    settings = queue.settings
    now = now or utcnow()
    ttl_cutoff = now - timedelta(seconds=settings.artifact_ttl_seconds)
    stale_cutoff = now - timedelta(seconds=settings.stale_job_seconds)
    report = SweepReport()

    for snapshot in queue.expired_jobs(ttl_cutoff):
        try:
            store.discard_job_files(
                input_path=snapshot.input_path,
                output_dir=snapshot.output_dir,
                archive_path=snapshot.archive_path,
            )
        except ValueError as exc:
            LOGGER.warning("codegen_sweep_path_rejected", job_id=snapshot.job_id, error=str(exc))
        queue.delete(snapshot.job_id)
        report.expired += 1

    for snapshot in queue.stale_jobs(stale_cutoff):
        if (
            snapshot.status is JobStatus.QUEUED
            and snapshot.created_at is not None
            and snapshot.created_at < ttl_cutoff
        ):
            queue.mark_failed(snapshot.job_id, "Job was not picked up before it expired")
            report.failed += 1
            continue

        if queue.requeue(snapshot.job_id):
            report.requeued += 1
            continue

        refreshed = queue.get_job(snapshot.job_id)
        if refreshed is not None and refreshed.status is JobStatus.FAILED:
            report.failed += 1

    report.orphans = store.remove_orphan_parts(
        settings.artifact_ttl_seconds, now=now.timestamp()
    )

    LOGGER.info("codegen_sweep_finished", **asdict(report))
    return report


__all__ = ["SweepReport", "sweep_expired_jobs"]
