from __future__ import annotations

import os
import sys
import tempfile
from datetime import datetime
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[3]))

# Configure environment before application imports
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="codegen-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_ROOT / 'test_codegen.db'}"
os.environ["LOCAL_STORAGE_PATH"] = str(_TEST_ROOT / "storage")
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ["DOWNLOAD_WAIT_SECONDS"] = "0"

import pytest
from fastapi.testclient import TestClient

from app.backend.src.core.artifact_store import ArtifactStore
from app.backend.src.core.config import get_settings
from app.backend.src.core.job_queue import JobQueue
from app.backend.src.db import create_tables, session_scope
from app.backend.src.models import Job, JobStatus
from app.backend.src.models.job import utcnow
from app.backend.src.services import generation_worker
from tasks.worker import celery


@pytest.fixture(autouse=True)
def clean_jobs() -> None:
    create_tables()
    with session_scope() as session:
        session.query(Job).delete()
    yield


@pytest.fixture()
def store() -> ArtifactStore:
    return ArtifactStore.from_settings(get_settings())


@pytest.fixture()
def queue() -> JobQueue:
    return JobQueue(celery, get_settings())


@pytest.fixture()
def client() -> TestClient:
    from app.backend.src.main import app

    with TestClient(app) as test_client:
        yield test_client


def write_generated_tree(input_path: Path, output_dir: Path) -> None:
    (output_dir / "src" / "user").mkdir(parents=True)
    (output_dir / "src" / "user" / "user.controller.ts").write_text(
        "export class UserController {}\n"
    )
    (output_dir / "README.md").write_text(f"Generated from {input_path.name}\n")


@pytest.fixture()
def generator_calls(monkeypatch: pytest.MonkeyPatch) -> list[tuple[Path, Path]]:
    """Replace the configured collaborator with one that writes a small tree."""

    calls: list[tuple[Path, Path]] = []

    def fake_generate(input_path: Path, output_dir: Path) -> None:
        calls.append((input_path, output_dir))
        write_generated_tree(input_path, output_dir)

    monkeypatch.setattr(generation_worker, "load_generator", lambda settings=None: fake_generate)
    return calls


@pytest.fixture()
def make_job(store: ArtifactStore):
    """Insert a job row directly, bypassing the broker."""

    counter = {"value": 0}

    def _make_job(
        *,
        status: JobStatus = JobStatus.QUEUED,
        attempt: int = 0,
        max_attempts: int = 3,
        started_at: datetime | None = None,
        created_at: datetime | None = None,
        terminal_at: datetime | None = None,
        archive_path: str | None = None,
        error_message: str | None = None,
        content: str = "model User {\n  id Int @id\n}\n",
    ) -> str:
        counter["value"] += 1
        job_id = f"job-{counter['value']}-{os.getpid()}-{utcnow().timestamp()}"
        input_path = store.uploads_dir / f"{job_id}-schema.prisma"
        input_path.write_text(content)
        created = created_at or utcnow()
        with session_scope() as session:
            session.add(
                Job(
                    id=job_id,
                    filename="schema.prisma",
                    input_path=str(input_path),
                    output_dir=str(store.output_dir_for(job_id)),
                    status=status.value,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    archive_path=archive_path,
                    error_message=error_message,
                    created_at=created,
                    queued_at=created,
                    started_at=started_at,
                    terminal_at=terminal_at,
                )
            )
        return job_id

    return _make_job


@pytest.fixture()
def tree_writer():
    return write_generated_tree
