"""Engine and session factory for the job table."""

from __future__ import annotations

from pathlib import Path

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.orm import sessionmaker

from app.backend.src.core.config import get_settings

LOGGER = structlog.get_logger(__name__)
PROJECT_ROOT = Path(__file__).resolve().parents[4]


def _sqlite_url(url: URL) -> URL:
    """Anchor a relative SQLite file at the project root and create its directory.

    The API process and the Celery worker usually start from different working
    directories; both must open the same database file.
    """

    database = url.database or ""
    if database in {"", ":memory:"}:
        return url

    db_path = Path(database)
    resolved = (db_path if db_path.is_absolute() else PROJECT_ROOT / db_path).resolve()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    if resolved != db_path:
        LOGGER.info("job_store_path_resolved", configured=database, resolved=str(resolved))
    return url.set(database=str(resolved))


def create_db_engine(raw_url: str) -> Engine:
    url = make_url(raw_url)
    connect_args: dict[str, object] = {}
    if url.drivername.startswith("sqlite"):
        url = _sqlite_url(url)
        # Request handlers and the download cleanup task run on different threads.
        connect_args["check_same_thread"] = False

    db_engine = create_engine(url, pool_pre_ping=True, connect_args=connect_args)
    LOGGER.info("job_store_engine_created", url=url.render_as_string(hide_password=True))
    return db_engine


engine = create_db_engine(get_settings().database_url)
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    expire_on_commit=False,
)

__all__ = ["create_db_engine", "engine", "SessionLocal"]
