"""Celery application factory."""

from __future__ import annotations

import ssl
from pathlib import Path
from typing import Any

import structlog
from celery import Celery, signals
from kombu import Queue

from app.backend.src.core.config import get_settings
from app.backend.src.core.logging import configure_logging

LOGGER = structlog.get_logger(__name__)
PROJECT_ROOT = Path(__file__).resolve().parents[1]

CODEGEN_QUEUE = "codegen"

settings = get_settings()


def _resolve_ca_cert_path(path: str | None) -> str | None:
    """Resolve the configured CA certificate path to an absolute path.

    redis-py needs an absolute filesystem path for ``ssl_ca_certs``. A
    project-relative value such as ``certs/redis_ca.pem`` is resolved against
    the project root; when the file cannot be found we log a warning and fall
    back to Python's default trust store.
    """

    if not path:
        return None

    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = PROJECT_ROOT / candidate

    if candidate.is_file():
        return str(candidate)

    LOGGER.warning(
        "redis_ca_certificate_missing",
        configured_path=path,
        resolved_path=str(candidate),
    )
    return None


def _build_ssl_options() -> dict[str, Any]:
    """Return SSL options for Redis connections."""

    options: dict[str, Any] = {"ssl_cert_reqs": ssl.CERT_REQUIRED}
    resolved_cert = _resolve_ca_cert_path(settings.redis_ca_cert_path)
    if resolved_cert:
        options["ssl_ca_certs"] = resolved_cert
    return options


def _verify_celery_connectivity() -> None:
    """Eagerly validate broker and backend connectivity.

    A worker that cannot reach Redis fails fast with a clear log message
    instead of idling while jobs pile up in ``queued``.
    """

    try:
        with celery.connection_for_read() as connection:
            connection.ensure_connection(max_retries=1)
    except Exception as exc:  # pragma: no cover - requires broker connectivity
        LOGGER.error("celery_broker_unavailable", error=str(exc))
        raise

    backend = celery.backend
    try:
        if hasattr(backend, "client"):
            backend.client.ping()
    except Exception as exc:  # pragma: no cover - requires backend connectivity
        LOGGER.error("celery_backend_unavailable", error=str(exc))
        raise


celery = Celery(
    "codegen_service",
    broker=settings.broker_url,
    backend=settings.result_backend,
)

celery_conf: dict[str, object] = {
    "include": ["tasks.codegen_tasks"],
    "task_default_queue": CODEGEN_QUEUE,
    "task_queues": (Queue(CODEGEN_QUEUE),),
    "task_serializer": "json",
    "accept_content": ["json"],
    "result_serializer": "json",
    "result_expires": settings.artifact_ttl_seconds,
    # At-least-once delivery: ack only after the task body returns and hand
    # the message back to the broker when the worker process dies.
    "task_acks_late": True,
    "task_reject_on_worker_lost": True,
    "worker_prefetch_multiplier": 1,
    "worker_concurrency": settings.worker_concurrency,
    "task_always_eager": settings.celery_task_always_eager,
    "task_store_eager_result": True,
    "broker_transport_options": {
        "global_keyprefix": "codegen-broker:",
        "visibility_timeout": settings.broker_visibility_timeout,
    },
    "result_backend_transport_options": {
        "global_keyprefix": "codegen-result:",
    },
    "broker_connection_retry_on_startup": True,
    "beat_schedule": {
        "sweep-expired-jobs": {
            "task": "tasks.sweep_expired_jobs",
            "schedule": float(settings.sweep_interval_seconds),
        },
    },
}

ssl_options = _build_ssl_options()

if settings.broker_url.startswith("rediss://"):
    celery_conf["broker_use_ssl"] = ssl_options.copy()

if settings.result_backend.startswith("rediss://"):
    celery_conf["redis_backend_use_ssl"] = ssl_options.copy()

celery.conf.update(**celery_conf)

# Import task definitions so Celery registers them whichever entrypoint
# imports this module (worker, beat or the web app).
from . import codegen_tasks  # noqa: E402,F401  # isort: skip


@signals.setup_logging.connect
def _setup_logging(**_: Any) -> None:
    configure_logging()


@signals.worker_ready.connect
def _log_worker_configuration(sender: Any | None = None, **_: Any) -> None:
    """Emit structured worker configuration details after startup."""

    app = sender.app if sender is not None else celery
    _verify_celery_connectivity()
    queue_names = sorted(
        getattr(queue, "name", str(queue)) for queue in app.conf.task_queues or []
    )
    registered_tasks = sorted(
        task_name for task_name in app.tasks.keys() if task_name.startswith("tasks.")
    )
    LOGGER.info(
        "celery_worker_configuration",
        queues=queue_names,
        concurrency=app.conf.worker_concurrency,
        registered_tasks=registered_tasks,
    )


@signals.worker_shutdown.connect
def _close_job_queue(**_: Any) -> None:
    codegen_tasks.shutdown()


@signals.task_prerun.connect
def _log_task_prerun(
    sender: Any | None = None,
    task_id: str | None = None,
    task: Any | None = None,
    **_: Any,
) -> None:
    """Log when a task begins execution to help debug queue issues."""

    task_name = getattr(task, "name", "")
    if task_name and not task_name.startswith("tasks."):
        return
    LOGGER.info("celery_task_prerun", task_id=task_id, task_name=task_name or None)


@signals.task_postrun.connect
def _log_task_postrun(
    sender: Any | None = None,
    task_id: str | None = None,
    task: Any | None = None,
    retval: Any | None = None,
    state: str | None = None,
    **_: Any,
) -> None:
    """Emit completion information after a task finishes."""

    payload: dict[str, Any] = {
        "task_id": task_id,
        "task_name": getattr(task, "name", None),
        "state": state,
    }
    task_name = payload["task_name"] or ""
    if task_name and not task_name.startswith("tasks."):
        return
    if isinstance(retval, dict):
        payload["job_status"] = retval.get("status")

    LOGGER.info("celery_task_postrun", **payload)


__all__ = ["celery", "CODEGEN_QUEUE"]
