"""
Error classes for the code-generation pipeline.

The pipeline separates failures by where they surface:
- ValidationError: rejected upload, reported synchronously, no job exists.
- GenerationError / ArchiveError: recorded on the job and reported on retrieval.
- JobNotFoundError: unknown or purged job id.
- InfrastructureError: queue or broker unavailable; the submitter must be told.

Only crash redelivery retries a job. Errors raised here are never retried.
"""


class PipelineError(Exception):
    """Base exception for the pipeline."""
    pass


class ValidationError(PipelineError):
    """Rejected upload: missing file, wrong extension, empty or oversized."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


class GenerationError(PipelineError):
    """The generation collaborator reported or raised a failure."""
    pass


class ArchiveError(PipelineError):
    """Bundling the generated output failed after a successful generation."""
    pass


class JobNotFoundError(PipelineError):
    """No job exists for the requested id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InfrastructureError(PipelineError):
    """The job queue or its broker could not be reached."""
    pass


__all__ = [
    "ArchiveError",
    "GenerationError",
    "InfrastructureError",
    "JobNotFoundError",
    "PipelineError",
    "ValidationError",
]
