from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from celery.exceptions import TimeoutError as CeleryTimeoutError
from kombu.exceptions import OperationalError
from prometheus_client import REGISTRY

from app.backend.src.core.errors import InfrastructureError, JobNotFoundError
from app.backend.src.core.job_queue import JobQueue
from app.backend.src.models import JobStatus
from app.backend.src.models.job import utcnow


def test_claim_moves_queued_job_to_active(queue: JobQueue, make_job) -> None:
    job_id = make_job()

    snapshot = queue.claim(job_id)

    assert snapshot is not None
    assert snapshot.status is JobStatus.ACTIVE
    assert snapshot.attempt == 1
    assert snapshot.started_at is not None
    assert queue.get_status(job_id) is JobStatus.ACTIVE


def test_claim_ignores_terminal_and_unknown_jobs(queue: JobQueue, make_job) -> None:
    done = make_job(status=JobStatus.COMPLETED, attempt=1, archive_path="/tmp/x.zip")

    assert queue.claim(done) is None
    assert queue.claim("missing") is None
    assert queue.get_status(done) is JobStatus.COMPLETED


def test_claim_respects_unexpired_lease(queue: JobQueue, make_job) -> None:
    job_id = make_job(status=JobStatus.ACTIVE, attempt=1, started_at=utcnow())

    assert queue.claim(job_id) is None
    assert queue.get_job(job_id).attempt == 1


def test_redelivery_after_crash_counts_another_attempt(queue: JobQueue, make_job) -> None:
    crashed_at = utcnow() - timedelta(seconds=queue.settings.stale_job_seconds + 5)
    job_id = make_job(status=JobStatus.ACTIVE, attempt=1, started_at=crashed_at)

    snapshot = queue.claim(job_id)

    assert snapshot.status is JobStatus.ACTIVE
    assert snapshot.attempt == 2


def test_redelivery_past_attempt_ceiling_fails_job(queue: JobQueue, make_job) -> None:
    crashed_at = utcnow() - timedelta(seconds=queue.settings.stale_job_seconds + 5)
    job_id = make_job(
        status=JobStatus.ACTIVE, attempt=3, max_attempts=3, started_at=crashed_at
    )

    snapshot = queue.claim(job_id)

    assert snapshot.status is JobStatus.FAILED
    assert snapshot.attempt == 3
    assert "Exceeded maximum attempts (3)" in snapshot.error_message
    assert snapshot.terminal_at is not None


def test_mark_failed_clears_archive_and_sets_error(queue: JobQueue, make_job) -> None:
    job_id = make_job(status=JobStatus.ACTIVE, attempt=1, started_at=utcnow())

    snapshot = queue.mark_failed(job_id, "boom")

    assert snapshot.status is JobStatus.FAILED
    assert snapshot.error_message == "boom"
    assert snapshot.archive_path is None


def test_get_status_unknown_raises(queue: JobQueue) -> None:
    with pytest.raises(JobNotFoundError):
        queue.get_status("missing")


def test_await_completion_returns_terminal_job_without_waiting(
    queue: JobQueue, make_job
) -> None:
    job_id = make_job(status=JobStatus.FAILED, attempt=1, error_message="bad schema")

    with patch("app.backend.src.core.job_queue.AsyncResult") as async_result:
        snapshot = queue.await_completion(job_id, timeout=5)

    async_result.assert_not_called()
    assert snapshot.status is JobStatus.FAILED


def test_await_completion_times_out_as_pending(queue: JobQueue, make_job) -> None:
    job_id = make_job(status=JobStatus.ACTIVE, attempt=1, started_at=utcnow())
    result = MagicMock()
    result.get.side_effect = CeleryTimeoutError("The operation timed out.")

    with patch("app.backend.src.core.job_queue.AsyncResult", return_value=result) as factory:
        snapshot = queue.await_completion(job_id, timeout=0.25)

    factory.assert_called_once()
    assert factory.call_args.args == (job_id,)
    result.get.assert_called_once_with(timeout=0.25, propagate=False)
    assert snapshot.status is JobStatus.ACTIVE


def test_await_completion_rereads_job_after_signal(queue: JobQueue, make_job) -> None:
    job_id = make_job(status=JobStatus.ACTIVE, attempt=1, started_at=utcnow())
    result = MagicMock()

    def finish(**_: object) -> dict[str, str]:
        queue.mark_completed(job_id, "/tmp/done.zip")
        return {"status": "completed"}

    result.get.side_effect = finish

    with patch("app.backend.src.core.job_queue.AsyncResult", return_value=result):
        snapshot = queue.await_completion(job_id, timeout=1)

    assert snapshot.status is JobStatus.COMPLETED
    assert snapshot.archive_path == "/tmp/done.zip"


def test_await_completion_unknown_job_raises(queue: JobQueue) -> None:
    with pytest.raises(JobNotFoundError):
        queue.await_completion("missing", timeout=1)


def test_claim_download_is_single_use(queue: JobQueue, make_job) -> None:
    job_id = make_job(status=JobStatus.COMPLETED, attempt=1, archive_path="/tmp/a.zip")

    first = queue.claim_download(job_id)
    second = queue.claim_download(job_id)

    assert first is not None and first.consumed
    assert second is None

    queue.release_download(job_id)
    assert queue.claim_download(job_id) is not None


def test_claim_download_unknown_job_raises(queue: JobQueue) -> None:
    with pytest.raises(JobNotFoundError):
        queue.claim_download("missing")


def test_enqueue_removes_record_when_broker_is_down(queue: JobQueue, store) -> None:
    task = MagicMock()
    task.apply_async.side_effect = OperationalError("Error 111 connecting to redis")
    celery_app = MagicMock()
    celery_app.tasks = {"tasks.generate_code": task}
    broken = JobQueue(celery_app, queue.settings)

    with pytest.raises(InfrastructureError):
        broken.enqueue(
            job_id="job-broker-down",
            filename="schema.prisma",
            input_path=str(store.uploads_dir / "schema.prisma"),
            output_dir=str(store.output_dir_for("job-broker-down")),
        )

    assert queue.get_job("job-broker-down") is None


def test_enqueue_publishes_job_id_as_task_id(queue: JobQueue, store) -> None:
    task = MagicMock()
    celery_app = MagicMock()
    celery_app.tasks = {"tasks.generate_code": task}
    recording = JobQueue(celery_app, queue.settings)

    recording.enqueue(
        job_id="job-published",
        filename="schema.prisma",
        input_path=str(store.uploads_dir / "schema.prisma"),
        output_dir=str(store.output_dir_for("job-published")),
    )

    kwargs = task.apply_async.call_args.kwargs
    assert kwargs["args"] == ["job-published"]
    assert kwargs["task_id"] == "job-published"
    snapshot = queue.get_job("job-published")
    assert snapshot.status is JobStatus.QUEUED
    assert snapshot.attempt == 0
    assert snapshot.max_attempts == queue.settings.max_attempts


def test_requeue_returns_stale_job_to_queue(queue: JobQueue, make_job) -> None:
    task = MagicMock()
    celery_app = MagicMock()
    celery_app.tasks = {"tasks.generate_code": task}
    recording = JobQueue(celery_app, queue.settings)
    job_id = make_job(status=JobStatus.ACTIVE, attempt=1, started_at=utcnow())

    assert recording.requeue(job_id) is True

    snapshot = queue.get_job(job_id)
    assert snapshot.status is JobStatus.QUEUED
    assert snapshot.started_at is None
    task.apply_async.assert_called_once()


def test_requeue_fails_job_out_of_attempts(queue: JobQueue, make_job) -> None:
    job_id = make_job(status=JobStatus.ACTIVE, attempt=3, max_attempts=3, started_at=utcnow())

    assert queue.requeue(job_id) is False

    snapshot = queue.get_job(job_id)
    assert snapshot.status is JobStatus.FAILED
    assert "Timed out" in snapshot.error_message


def _terminal_count(status: str) -> float:
    return REGISTRY.get_sample_value("codegen_jobs_total", {"status": status}) or 0.0


def test_claim_takeover_ignores_unexpired_lease(queue: JobQueue, make_job) -> None:
    job_id = make_job(status=JobStatus.ACTIVE, attempt=1, started_at=utcnow())

    snapshot = queue.claim(job_id, takeover=True)

    assert snapshot.status is JobStatus.ACTIVE
    assert snapshot.attempt == 2


def test_outcome_from_failed_job_is_discarded(queue: JobQueue, make_job) -> None:
    job_id = make_job(status=JobStatus.ACTIVE, attempt=1, started_at=utcnow())
    queue.mark_failed(job_id, "Timed out after 1 attempt(s)")
    completed_before = _terminal_count("completed")

    assert queue.mark_completed(job_id, "/tmp/late.zip", attempt=1) is None

    snapshot = queue.get_job(job_id)
    assert snapshot.status is JobStatus.FAILED
    assert snapshot.archive_path is None
    assert _terminal_count("completed") == completed_before


def test_outcome_from_superseded_attempt_is_discarded(queue: JobQueue, make_job) -> None:
    job_id = make_job()
    first = queue.claim(job_id)
    second = queue.claim(job_id, takeover=True)

    assert queue.mark_failed(job_id, "boom", attempt=first.attempt) is None
    assert queue.get_job(job_id).status is JobStatus.ACTIVE

    finished = queue.mark_completed(job_id, "/tmp/done.zip", attempt=second.attempt)
    assert finished.status is JobStatus.COMPLETED
    assert finished.attempt == 2


def test_terminal_transition_happens_once(queue: JobQueue, make_job) -> None:
    job_id = make_job(status=JobStatus.ACTIVE, attempt=1, started_at=utcnow())
    failed_before = _terminal_count("failed")

    assert queue.mark_failed(job_id, "first") is not None
    assert queue.mark_failed(job_id, "second") is None

    assert queue.get_job(job_id).error_message == "first"
    assert _terminal_count("failed") == failed_before + 1
