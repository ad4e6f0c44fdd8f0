"""Durable job queue: Celery/Redis delivery plus the ``jobs`` status table.

The broker carries only the job id (``task_id == job_id``); the row in ``jobs``
is the authoritative status record. Every status transition goes through this
class so the rules live in one place:

* ``queued -> active`` on :meth:`JobQueue.claim`, incrementing ``attempt``.
* ``active -> active`` on a broker redelivery or once the lease has expired
  (crashed worker).
* ``active -> queued`` on :meth:`JobQueue.requeue` (stale-job sweep).
* ``active -> completed | failed`` on :meth:`mark_completed` / :meth:`mark_failed`,
  only for the attempt that still owns the job.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from celery.result import AsyncResult
from kombu.exceptions import OperationalError
from redis.exceptions import RedisError
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.backend.src.db import session_scope
from app.backend.src.models import Job, JobStatus
from app.backend.src.models.job import utcnow
from app.backend.src.services.metrics import codegen_jobs_total

from .config import Settings, get_settings
from .errors import InfrastructureError, JobNotFoundError

LOGGER = structlog.get_logger(__name__)

GENERATE_TASK_NAME = "tasks.generate_code"

_PUBLISH_RETRY_POLICY = {
    "max_retries": 2,
    "interval_start": 0,
    "interval_step": 0.5,
    "interval_max": 1,
}


def as_utc(value: datetime | None) -> datetime | None:
    """Normalise timestamps; SQLite hands back naive UTC values."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class JobSnapshot:
    """Detached copy of a job row."""

    job_id: str
    filename: str
    status: JobStatus
    attempt: int
    max_attempts: int
    input_path: str
    output_dir: str
    archive_path: str | None
    error_message: str | None
    created_at: datetime | None
    queued_at: datetime | None
    started_at: datetime | None
    terminal_at: datetime | None
    consumed_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def consumed(self) -> bool:
        return self.consumed_at is not None

    @classmethod
    def from_model(cls, job: Job) -> "JobSnapshot":
        return cls(
            job_id=job.id,
            filename=job.filename,
            status=JobStatus(job.status),
            attempt=job.attempt,
            max_attempts=job.max_attempts,
            input_path=job.input_path,
            output_dir=job.output_dir,
            archive_path=job.archive_path,
            error_message=job.error_message,
            created_at=as_utc(job.created_at),
            queued_at=as_utc(job.queued_at),
            started_at=as_utc(job.started_at),
            terminal_at=as_utc(job.terminal_at),
            consumed_at=as_utc(job.consumed_at),
        )


class JobQueue:
    """Process-wide handle on the broker and the job table.

    Build one at startup, pass it to whoever needs it and call :meth:`close`
    at shutdown.
    """

    def __init__(
        self,
        celery_app: Celery,
        settings: Settings | None = None,
        session_factory: Callable[[], AbstractContextManager[Session]] = session_scope,
    ) -> None:
        self._celery = celery_app
        self._settings = settings or get_settings()
        self._session_scope = session_factory

    @property
    def settings(self) -> Settings:
        return self._settings

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    def enqueue(
        self,
        *,
        job_id: str,
        filename: str,
        input_path: str,
        output_dir: str,
    ) -> str:
        """Record the job as ``queued`` and publish it to the broker."""

        try:
            with self._session_scope() as session:
                session.add(
                    Job(
                        id=job_id,
                        filename=filename,
                        input_path=input_path,
                        output_dir=output_dir,
                        status=JobStatus.QUEUED.value,
                        attempt=0,
                        max_attempts=self._settings.max_attempts,
                        queued_at=utcnow(),
                    )
                )
        except SQLAlchemyError as exc:
            LOGGER.error("codegen_job_record_failed", job_id=job_id, error=str(exc))
            raise InfrastructureError(f"Job store unavailable: {exc}") from exc

        try:
            self._publish(job_id)
        except InfrastructureError:
            self.delete(job_id)
            raise

        LOGGER.info("codegen_job_enqueued", job_id=job_id, filename=filename)
        return job_id

    def _publish(self, job_id: str) -> None:
        task = self._celery.tasks[GENERATE_TASK_NAME]
        try:
            task.apply_async(
                args=[job_id],
                task_id=job_id,
                retry=True,
                retry_policy=_PUBLISH_RETRY_POLICY,
            )
        except (OperationalError, RedisError, OSError) as exc:
            LOGGER.error("codegen_job_publish_failed", job_id=job_id, error=str(exc))
            raise InfrastructureError(f"Job queue unavailable: {exc}") from exc

    # ------------------------------------------------------------------
    # Worker transitions
    # ------------------------------------------------------------------
    def claim(
        self,
        job_id: str,
        now: datetime | None = None,
        *,
        takeover: bool = False,
    ) -> JobSnapshot | None:
        """Take ownership of a delivered job.

        Returns an ``active`` snapshot when the caller should process the job,
        a ``failed`` snapshot when this delivery exhausted the attempt ceiling,
        and ``None`` when there is nothing to do (unknown id, already terminal,
        or another worker still holds an unexpired lease).

        ``takeover`` is set for messages the broker redelivered because the
        previous consumer never acknowledged them; such a delivery claims an
        ``active`` job even while its lease has not expired.
        """

        now = now or utcnow()
        lease = timedelta(seconds=self._settings.stale_job_seconds)
        with self._session_scope() as session:
            job = session.get(Job, job_id, with_for_update=True)
            if job is None:
                LOGGER.warning("codegen_job_missing", job_id=job_id)
                return None

            status = JobStatus(job.status)
            if status.is_terminal:
                LOGGER.info("codegen_job_duplicate_delivery", job_id=job_id, status=status.value)
                return None

            if status is JobStatus.ACTIVE:
                started_at = as_utc(job.started_at)
                lease_held = started_at is not None and now - started_at < lease
                if lease_held and not takeover:
                    LOGGER.warning("codegen_job_lease_held", job_id=job_id, attempt=job.attempt)
                    return None
                LOGGER.warning(
                    "codegen_job_redelivered",
                    job_id=job_id,
                    attempt=job.attempt,
                    lease_expired=not lease_held,
                )

            if job.attempt >= job.max_attempts:
                self._terminate(
                    job,
                    JobStatus.FAILED,
                    error=f"Exceeded maximum attempts ({job.max_attempts})",
                    now=now,
                )
                return JobSnapshot.from_model(job)

            job.attempt += 1
            job.status = JobStatus.ACTIVE.value
            job.started_at = now
            LOGGER.info("codegen_job_claimed", job_id=job_id, attempt=job.attempt)
            return JobSnapshot.from_model(job)

    def mark_completed(
        self, job_id: str, archive_path: str, attempt: int | None = None
    ) -> JobSnapshot | None:
        return self._finish(
            job_id, JobStatus.COMPLETED, attempt=attempt, archive_path=archive_path
        )

    def mark_failed(
        self, job_id: str, error: str, attempt: int | None = None
    ) -> JobSnapshot | None:
        return self._finish(job_id, JobStatus.FAILED, attempt=attempt, error=error)

    def _finish(
        self,
        job_id: str,
        status: JobStatus,
        *,
        attempt: int | None,
        archive_path: str | None = None,
        error: str | None = None,
    ) -> JobSnapshot | None:
        """Move a job to ``status`` unless it already left the caller's hands.

        With ``attempt`` the update only applies while the job is still
        ``active`` on that attempt, so a worker whose job was failed or
        requeued by the sweep cannot overwrite the outcome. Without it any
        non-terminal job is finished (sweep and administrative use). Returns
        ``None`` when the update lost.
        """

        condition = [Job.id == job_id]
        if attempt is None:
            condition.append(
                Job.status.in_([JobStatus.QUEUED.value, JobStatus.ACTIVE.value])
            )
        else:
            condition.extend([Job.status == JobStatus.ACTIVE.value, Job.attempt == attempt])

        with self._session_scope() as session:
            outcome = session.execute(
                update(Job)
                .where(*condition)
                .values(
                    status=status.value,
                    archive_path=archive_path if status is JobStatus.COMPLETED else None,
                    error_message=error if status is JobStatus.FAILED else None,
                    terminal_at=utcnow(),
                )
            )
            job = session.get(Job, job_id, populate_existing=True)
            if job is None:
                raise JobNotFoundError(job_id)
            if outcome.rowcount == 0:
                LOGGER.warning(
                    "codegen_job_outcome_discarded",
                    job_id=job_id,
                    attempted_status=status.value,
                    attempt=attempt,
                    current_status=job.status,
                    current_attempt=job.attempt,
                )
                return None
            self._record_terminal(job, status, error)
            return JobSnapshot.from_model(job)

    def _record_terminal(self, job: Job, status: JobStatus, error: str | None) -> None:
        codegen_jobs_total.labels(status=status.value).inc()
        LOGGER.info(
            "codegen_job_terminal",
            job_id=job.id,
            status=status.value,
            attempt=job.attempt,
            error=error,
        )

    def _terminate(
        self,
        job: Job,
        status: JobStatus,
        *,
        archive_path: str | None = None,
        error: str | None = None,
        now: datetime | None = None,
    ) -> None:
        job.status = status.value
        job.archive_path = archive_path if status is JobStatus.COMPLETED else None
        job.error_message = error if status is JobStatus.FAILED else None
        job.terminal_at = now or utcnow()
        self._record_terminal(job, status, error)

    def requeue(self, job_id: str) -> bool:
        """Put a stale job back on the queue, or fail it when out of attempts."""

        with self._session_scope() as session:
            job = self._require(session, job_id)
            status = JobStatus(job.status)
            if status.is_terminal:
                return False
            if job.attempt >= job.max_attempts:
                self._terminate(
                    job,
                    JobStatus.FAILED,
                    error=f"Timed out after {job.attempt} attempt(s)",
                )
                return False
            job.status = JobStatus.QUEUED.value
            job.started_at = None
            job.queued_at = utcnow()

        try:
            self._publish(job_id)
        except InfrastructureError:
            # Stays queued; the next sweep republishes it.
            return False
        LOGGER.info("codegen_job_requeued", job_id=job_id, previous_status=status.value)
        return True

    # ------------------------------------------------------------------
    # Status and completion
    # ------------------------------------------------------------------
    def get_job(self, job_id: str) -> JobSnapshot | None:
        with self._session_scope() as session:
            job = session.get(Job, job_id)
            return JobSnapshot.from_model(job) if job is not None else None

    def get_status(self, job_id: str) -> JobStatus:
        snapshot = self.get_job(job_id)
        if snapshot is None:
            raise JobNotFoundError(job_id)
        return snapshot.status

    def await_completion(self, job_id: str, timeout: float) -> JobSnapshot:
        """Block until the job is terminal or ``timeout`` seconds pass.

        The wait rides on the Celery result for ``job_id``, which the worker
        publishes when it finishes; the returned snapshot is always re-read
        from the job table.
        """

        snapshot = self.get_job(job_id)
        if snapshot is None:
            raise JobNotFoundError(job_id)
        if snapshot.is_terminal or timeout <= 0:
            return snapshot

        result = AsyncResult(job_id, app=self._celery)
        try:
            result.get(timeout=timeout, propagate=False)
        except CeleryTimeoutError:
            LOGGER.info("codegen_job_wait_timeout", job_id=job_id, timeout=timeout)

        refreshed = self.get_job(job_id)
        if refreshed is None:
            raise JobNotFoundError(job_id)
        return refreshed

    # ------------------------------------------------------------------
    # Single-use download
    # ------------------------------------------------------------------
    def claim_download(self, job_id: str) -> JobSnapshot | None:
        """Atomically mark a completed artifact as consumed.

        Returns the snapshot for the caller that won the claim, ``None`` when
        the artifact was already consumed.
        """

        with self._session_scope() as session:
            outcome = session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status == JobStatus.COMPLETED.value,
                    Job.consumed_at.is_(None),
                )
                .values(consumed_at=utcnow())
            )
            if outcome.rowcount == 0:
                if session.get(Job, job_id) is None:
                    raise JobNotFoundError(job_id)
                return None
            job = session.get(Job, job_id, populate_existing=True)
            return JobSnapshot.from_model(job)

    def release_download(self, job_id: str) -> None:
        with self._session_scope() as session:
            session.execute(update(Job).where(Job.id == job_id).values(consumed_at=None))
        LOGGER.info("codegen_download_released", job_id=job_id)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------
    def expired_jobs(self, cutoff: datetime) -> list[JobSnapshot]:
        """Terminal jobs whose ``terminal_at`` is older than ``cutoff``."""

        terminal = [JobStatus.COMPLETED.value, JobStatus.FAILED.value]
        with self._session_scope() as session:
            rows = session.scalars(
                select(Job)
                .where(Job.status.in_(terminal), Job.terminal_at < cutoff)
                .order_by(Job.terminal_at)
            ).all()
            return [JobSnapshot.from_model(job) for job in rows]

    def stale_jobs(self, cutoff: datetime) -> list[JobSnapshot]:
        """Non-terminal jobs that have not progressed since ``cutoff``."""

        with self._session_scope() as session:
            rows = session.scalars(
                select(Job)
                .where(
                    or_(
                        (Job.status == JobStatus.ACTIVE.value) & (Job.started_at < cutoff),
                        (Job.status == JobStatus.QUEUED.value) & (Job.queued_at < cutoff),
                    )
                )
                .order_by(Job.created_at)
            ).all()
            return [JobSnapshot.from_model(job) for job in rows]

    def delete(self, job_id: str) -> None:
        with self._session_scope() as session:
            job = session.get(Job, job_id)
            if job is not None:
                session.delete(job)

    def ping(self) -> None:
        """Raise :class:`InfrastructureError` if the broker is unreachable."""

        try:
            with self._celery.connection_for_write() as connection:
                connection.ensure_connection(max_retries=1)
        except (OperationalError, RedisError, OSError) as exc:
            raise InfrastructureError(f"Job queue unavailable: {exc}") from exc

    def close(self) -> None:
        """Release pooled broker connections."""

        self._celery.close()
        LOGGER.info("codegen_job_queue_closed")

    @staticmethod
    def _require(session: Session, job_id: str) -> Job:
        job = session.get(Job, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job


__all__ = ["GENERATE_TASK_NAME", "JobQueue", "JobSnapshot", "as_utc"]
