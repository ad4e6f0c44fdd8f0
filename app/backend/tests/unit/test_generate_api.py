"""End-to-end tests for submission, status and single-use download."""

from __future__ import annotations

from io import BytesIO
from pathlib import Path
from zipfile import ZipFile

import pytest
from fastapi.testclient import TestClient

from app.backend.src.core.errors import InfrastructureError
from app.backend.src.core.job_queue import JobQueue
from app.backend.src.models import JobStatus
from app.backend.src.services import generation_worker

SCHEMA = b'datasource db {\n  provider = "postgresql"\n}\n\nmodel User {\n  id Int @id\n}\n'


def _submit(client: TestClient, filename: str = "schema.prisma", content: bytes = SCHEMA):
    return client.post(
        "/api/generate-code",
        files={"schema": (filename, BytesIO(content), "application/octet-stream")},
    )


def _uploads(store) -> list[Path]:
    return sorted(store.uploads_dir.iterdir())


def test_submit_then_download_returns_archive_once(
    client: TestClient, store, generator_calls
) -> None:
    response = _submit(client)

    assert response.status_code == 202
    payload = response.json()
    job_id = payload["job_id"]
    assert payload["status"] == "queued"
    assert len(generator_calls) == 1
    input_path, output_dir = generator_calls[0]
    assert output_dir == store.output_dir_for(job_id)
    assert input_path.name.endswith("-schema.prisma")

    status = client.get(f"/api/jobs/{job_id}")
    assert status.status_code == 200
    assert status.json()["status"] == "completed"
    assert status.json()["download_url"].endswith(f"/api/download/{job_id}")

    archive_path = store.archive_path_for(job_id)
    assert archive_path.is_file()

    download = client.get(f"/api/download/{job_id}")

    assert download.status_code == 200
    assert download.headers["content-type"] == "application/zip"
    assert f'filename="{job_id}.zip"' in download.headers["content-disposition"]
    archive = ZipFile(BytesIO(download.content))
    assert sorted(archive.namelist()) == sorted(
        [input_path.name, "README.md", "src/user/user.controller.ts"]
    )
    assert archive.read(input_path.name) == SCHEMA

    assert not archive_path.exists()
    assert not input_path.exists()
    assert not output_dir.exists()

    second = client.get(f"/api/download/{job_id}")
    assert second.status_code == 410
    assert second.json() == {"detail": "Artifact already consumed"}

    status = client.get(f"/api/jobs/{job_id}")
    assert status.json()["consumed"] is True
    assert status.json()["download_url"] is None


def test_collaborator_failure_is_reported_on_download(
    client: TestClient, store, monkeypatch: pytest.MonkeyPatch
) -> None:
    def rejecting_generator(input_path: Path, output_dir: Path) -> None:
        raise ValueError("Unknown type 'Strng' on field User.name")

    monkeypatch.setattr(
        generation_worker, "load_generator", lambda settings=None: rejecting_generator
    )

    job_id = _submit(client).json()["job_id"]

    response = client.get(f"/api/download/{job_id}")

    assert response.status_code == 422
    body = response.json()
    assert body["job_id"] == job_id
    assert body["status"] == "failed"
    assert "Unknown type 'Strng'" in body["error"]
    assert not store.archive_path_for(job_id).exists()
    assert list(store.archive_root.glob(f"{job_id}*")) == []

    status = client.get(f"/api/jobs/{job_id}").json()
    assert status["attempt"] == 1
    assert status["error"] == body["error"]


@pytest.mark.parametrize("filename", ["schema.txt", "schema.prisma.exe", "schema"])
def test_rejects_unaccepted_extension_without_side_effects(
    client: TestClient, store, queue: JobQueue, generator_calls, filename: str
) -> None:
    before = _uploads(store)

    response = _submit(client, filename=filename)

    assert response.status_code == 400
    assert "allowed" in response.json()["detail"]
    assert _uploads(store) == before
    assert generator_calls == []


def test_accepts_schema_extension_case_insensitively(
    client: TestClient, generator_calls
) -> None:
    response = _submit(client, filename="Models.SCHEMA")

    assert response.status_code == 202
    assert len(generator_calls) == 1


def test_missing_file_is_rejected(client: TestClient, generator_calls) -> None:
    response = client.post("/api/generate-code", data={"note": "no file"})

    assert response.status_code == 400
    assert response.json() == {"detail": "No file uploaded."}
    assert generator_calls == []


def test_empty_file_is_rejected(client: TestClient, store, generator_calls) -> None:
    before = _uploads(store)

    response = _submit(client, content=b"")

    assert response.status_code == 400
    assert response.json() == {"detail": "Uploaded file is empty"}
    assert _uploads(store) == before


def test_oversized_file_is_rejected_and_removed(
    client: TestClient, store, queue: JobQueue, generator_calls, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(queue.settings, "max_upload_bytes", 16)
    before = _uploads(store)

    response = _submit(client, content=b"x" * 64)

    assert response.status_code == 413
    assert _uploads(store) == before
    assert generator_calls == []


def test_simultaneous_submissions_never_share_paths(
    client: TestClient, store, generator_calls
) -> None:
    first = _submit(client).json()["job_id"]
    second = _submit(client).json()["job_id"]

    assert first != second
    (first_input, first_output), (second_input, second_output) = generator_calls
    assert first_input != second_input
    assert first_output != second_output
    assert first_input.parent == second_input.parent == store.uploads_dir


def test_download_unknown_job_returns_not_found(client: TestClient) -> None:
    response = client.get("/api/download/does-not-exist")

    assert response.status_code == 404
    assert response.json() == {"detail": "Job not found"}


def test_download_before_completion_returns_pending(client: TestClient, make_job) -> None:
    job_id = make_job(status=JobStatus.ACTIVE, attempt=1)

    response = client.get(f"/api/download/{job_id}", params={"wait": 0})

    assert response.status_code == 202
    assert response.json() == {
        "job_id": job_id,
        "status": "active",
        "detail": "Job is still processing",
    }


def test_job_status_unknown_returns_not_found(client: TestClient) -> None:
    response = client.get("/api/jobs/does-not-exist")

    assert response.status_code == 404


def test_broker_outage_fails_submission_loudly(
    client: TestClient, store, monkeypatch: pytest.MonkeyPatch
) -> None:
    def unavailable(self: JobQueue, job_id: str) -> None:
        raise InfrastructureError("Job queue unavailable: connection refused")

    monkeypatch.setattr(JobQueue, "_publish", unavailable)
    before = _uploads(store)

    response = _submit(client)

    assert response.status_code == 503
    assert response.json() == {"detail": "Job queue unavailable"}
    assert _uploads(store) == before


def test_missing_archive_does_not_consume_download(
    client: TestClient, store, generator_calls
) -> None:
    job_id = _submit(client).json()["job_id"]
    archive_path = store.archive_path_for(job_id)
    saved = archive_path.read_bytes()
    archive_path.unlink()

    missing = client.get(f"/api/download/{job_id}")

    assert missing.status_code == 404
    assert missing.json() == {"detail": "Artifact not found"}
    assert client.get(f"/api/jobs/{job_id}").json()["consumed"] is False

    archive_path.write_bytes(saved)
    restored = client.get(f"/api/download/{job_id}")

    assert restored.status_code == 200
    assert restored.content == saved
