"""Prometheus metric definitions for code-generation jobs."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

codegen_jobs_total = Counter(
    "codegen_jobs_total",
    "Total code-generation jobs by terminal outcome.",
    labelnames=["status"],
)

job_duration_seconds = Histogram(
    "job_duration_seconds",
    "Duration of a single code-generation attempt in seconds.",
)

archive_build_seconds = Histogram(
    "archive_build_seconds",
    "Time spent writing a job's zip artifact.",
)

__all__ = [
    "archive_build_seconds",
    "codegen_jobs_total",
    "job_duration_seconds",
]
