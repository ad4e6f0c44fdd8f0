"""Adapters for the external code-generation collaborator.

The pipeline only knows ``generate(input_path, output_dir)``. A collaborator
signals failure by raising or by returning ``False``; anything else counts as
success. ``GENERATOR_TARGET`` picks the implementation:

* ``command`` runs ``GENERATOR_COMMAND`` as a subprocess.
* ``package.module:callable`` imports a Python callable, sync or async.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import shlex
import subprocess
from pathlib import Path
from typing import Any, Callable

import structlog

from app.backend.src.core.config import Settings, get_settings
from app.backend.src.core.errors import GenerationError

LOGGER = structlog.get_logger(__name__)

Generator = Callable[[Path, Path], Any]

_MAX_STDERR_CHARS = 2000


class CommandGenerator:
    """Run an external CLI with ``{input}`` and ``{output}`` substituted."""

    def __init__(self, command: str) -> None:
        self.command = command

    def build_args(self, input_path: Path, output_dir: Path) -> list[str]:
        return [
            part.replace("{input}", str(input_path)).replace("{output}", str(output_dir))
            for part in shlex.split(self.command)
        ]

    def __call__(self, input_path: Path, output_dir: Path) -> bool:
        args = self.build_args(input_path, output_dir)
        LOGGER.info("generator_command_started", args=args)
        try:
            completed = subprocess.run(args, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise GenerationError(f"Generator command could not start: {exc}") from exc

        if completed.returncode != 0:
            stderr = (completed.stderr or completed.stdout or "").strip()
            raise GenerationError(
                f"Generator exited with status {completed.returncode}: "
                f"{stderr[-_MAX_STDERR_CHARS:]}"
            )
        return True


def _import_callable(target: str) -> Generator:
    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Generator target must look like 'module:callable', got {target!r}")
    module = importlib.import_module(module_name)
    generator = getattr(module, attribute)
    if not callable(generator):
        raise ValueError(f"Generator target {target!r} is not callable")
    return generator


def load_generator(settings: Settings | None = None) -> Generator:
    """Return the configured collaborator."""

    settings = settings or get_settings()
    target = settings.generator_target.strip()
    if target == "command":
        return CommandGenerator(settings.generator_command)
    return _import_callable(target)


def run_generator(generator: Generator, input_path: Path, output_dir: Path) -> None:
    """Invoke ``generator`` and normalise every failure into ``GenerationError``."""

    try:
        outcome = generator(input_path, output_dir)
        if inspect.isawaitable(outcome):
            outcome = asyncio.run(_await(outcome))
    except GenerationError:
        raise
    except Exception as exc:
        raise GenerationError(f"{type(exc).__name__}: {exc}") from exc

    if outcome is False:
        raise GenerationError("Generator reported failure")


async def _await(awaitable: Any) -> Any:
    return await awaitable


__all__ = ["CommandGenerator", "Generator", "load_generator", "run_generator"]
