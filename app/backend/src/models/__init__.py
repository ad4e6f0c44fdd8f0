"""ORM models exposed for easy imports."""

from .job import Base, Job, JobStatus

__all__ = [
    "Base",
    "Job",
    "JobStatus",
]
