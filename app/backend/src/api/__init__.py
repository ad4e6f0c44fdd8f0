"""Public API routers exposed by the FastAPI application."""

from . import generate, health, jobs

__all__ = [
    "generate",
    "health",
    "jobs",
]
