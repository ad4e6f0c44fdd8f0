"""Application configuration utilities."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from urllib.parse import quote

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings derived from environment variables."""

    database_url: str = Field(default="sqlite:///./codegen.db", alias="DATABASE_URL")

    redis_url_override: str | None = Field(default=None, alias="REDIS_URL")
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_password: str | None = Field(default=None, alias="REDIS_PASSWORD")
    redis_db: int = Field(default=0, alias="REDIS_DB")
    redis_tls: bool = Field(default=False, alias="REDIS_TLS")
    redis_ca_cert_path: str | None = Field(default=None, alias="REDIS_CA_CERT_PATH")
    celery_broker_url: str | None = Field(default=None, alias="CELERY_BROKER_URL")
    celery_result_backend: str | None = Field(
        default=None, alias="CELERY_RESULT_BACKEND"
    )
    celery_task_always_eager: bool = Field(
        default=False, alias="CELERY_TASK_ALWAYS_EAGER"
    )
    broker_visibility_timeout: int = Field(
        default=3600, alias="BROKER_VISIBILITY_TIMEOUT"
    )

    local_storage_path: str = Field(
        default="/tmp/codegen-service", alias="LOCAL_STORAGE_PATH"
    )
    uploads_dir_override: str | None = Field(default=None, alias="UPLOADS_DIR")
    output_root_override: str | None = Field(default=None, alias="OUTPUT_ROOT")
    archive_root_override: str | None = Field(default=None, alias="ARCHIVE_ROOT")

    accepted_extensions: list[str] = Field(
        default=[".prisma", ".schema"], alias="ACCEPTED_EXTENSIONS"
    )
    max_upload_bytes: int = Field(default=5 * 1024 * 1024, alias="MAX_UPLOAD_BYTES")

    max_attempts: int = Field(default=3, alias="MAX_ATTEMPTS")
    worker_concurrency: int = Field(default=1, alias="WORKER_CONCURRENCY")
    generator_target: str = Field(default="command", alias="GENERATOR_TARGET")
    generator_command: str = Field(
        default="npx prisma-to-code {input} {output}", alias="GENERATOR_COMMAND"
    )

    artifact_ttl_seconds: int = Field(default=3600, alias="ARTIFACT_TTL_SECONDS")
    stale_job_seconds: int = Field(default=1800, alias="STALE_JOB_SECONDS")
    sweep_interval_seconds: int = Field(default=300, alias="SWEEP_INTERVAL_SECONDS")
    download_wait_seconds: float = Field(default=10.0, alias="DOWNLOAD_WAIT_SECONDS")
    max_download_wait_seconds: float = Field(
        default=60.0, alias="MAX_DOWNLOAD_WAIT_SECONDS"
    )

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
    )

    @property
    def redis_url(self) -> str:
        """Return the Redis URL, assembling it from host parameters when unset."""

        if self.redis_url_override:
            return self.redis_url_override

        scheme = "rediss" if self.redis_tls else "redis"
        credentials = ""
        if self.redis_password:
            credentials = f":{quote(self.redis_password, safe='')}@"
        return f"{scheme}://{credentials}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def broker_url(self) -> str:
        """Return the Celery broker URL, defaulting to Redis."""

        return self.celery_broker_url or self.redis_url

    @property
    def result_backend(self) -> str:
        """Return the Celery result backend, defaulting to the Redis URL."""

        if self.celery_result_backend:
            return self.celery_result_backend
        return self.redis_url

    @property
    def uploads_dir(self) -> Path:
        return Path(self.uploads_dir_override or Path(self.local_storage_path) / "uploads")

    @property
    def output_root(self) -> Path:
        return Path(self.output_root_override or Path(self.local_storage_path) / "output")

    @property
    def archive_root(self) -> Path:
        return Path(
            self.archive_root_override or Path(self.local_storage_path) / "archives"
        )

    def normalized_extensions(self) -> frozenset[str]:
        """Return accepted extensions lower-cased and dot-prefixed."""

        normalized = set()
        for extension in self.accepted_extensions:
            value = extension.strip().lower()
            if not value:
                continue
            normalized.add(value if value.startswith(".") else f".{value}")
        return frozenset(normalized)


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


__all__ = ["Settings", "get_settings"]
