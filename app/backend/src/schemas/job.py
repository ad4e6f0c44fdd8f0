"""Job API schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class JobSubmitResponse(BaseModel):
    """Returned by the ingress endpoint as soon as the job is queued."""

    job_id: str
    status: str


class JobRead(BaseModel):
    """Schema for job records exposed via the API."""

    id: str
    filename: str
    status: str
    attempt: int
    max_attempts: int
    error: str | None
    download_url: str | None
    consumed: bool
    created_at: datetime | None
    started_at: datetime | None
    terminal_at: datetime | None


class JobPending(BaseModel):
    job_id: str
    status: str
    detail: str


class JobFailure(BaseModel):
    job_id: str
    status: str
    error: str | None
