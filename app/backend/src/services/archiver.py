"""Bundle a job's input schema and generated tree into one zip artifact."""

from __future__ import annotations

import os
from pathlib import Path
from time import perf_counter
from uuid import uuid4
from zipfile import ZIP_DEFLATED, ZipFile

import structlog

from app.backend.src.core.errors import ArchiveError
from app.backend.src.services.metrics import archive_build_seconds

LOGGER = structlog.get_logger(__name__)

COMPRESS_LEVEL = 9
PART_SUFFIX = ".part"


def _iter_generated_files(output_dir: Path):
    for root, dirs, files in os.walk(output_dir):
        dirs.sort()
        for name in sorted(files):
            yield Path(root) / name


def build_archive(input_path: Path | str, output_dir: Path | str, archive_path: Path | str) -> Path:
    """Write the archive and return its final path.

    The zip is streamed file by file into ``<archive_path>.<token>.part`` and only
    renamed to ``archive_path`` after the zip handle is closed, so a reader that
    can see ``archive_path`` always sees a complete file. On any failure the
    partial file is removed and :class:`ArchiveError` is raised.
    """

    input_path = Path(input_path)
    output_dir = Path(output_dir)
    archive_path = Path(archive_path)
    partial_path = archive_path.with_name(f"{archive_path.name}.{uuid4().hex[:8]}{PART_SUFFIX}")

    start = perf_counter()
    entries = 0
    try:
        if not input_path.is_file():
            raise FileNotFoundError(f"Input file missing: {input_path}")
        if not output_dir.is_dir():
            raise FileNotFoundError(f"Output directory missing: {output_dir}")

        archive_path.parent.mkdir(parents=True, exist_ok=True)
        input_name = input_path.name
        with ZipFile(partial_path, "w", ZIP_DEFLATED, compresslevel=COMPRESS_LEVEL) as zf:
            zf.write(input_path, arcname=input_name)
            entries += 1
            for file_path in _iter_generated_files(output_dir):
                arcname = file_path.relative_to(output_dir).as_posix()
                if arcname == input_name:
                    LOGGER.warning(
                        "archive_entry_shadowed",
                        arcname=arcname,
                        archive=str(archive_path),
                    )
                    continue
                zf.write(file_path, arcname=arcname)
                entries += 1
        os.replace(partial_path, archive_path)
    except Exception as exc:
        partial_path.unlink(missing_ok=True)
        LOGGER.error("archive_build_failed", archive=str(archive_path), error=str(exc))
        raise ArchiveError(f"Failed to build archive: {exc}") from exc
    finally:
        archive_build_seconds.observe(perf_counter() - start)

    LOGGER.info("archive_built", archive=str(archive_path), entries=entries)
    return archive_path


__all__ = ["build_archive", "PART_SUFFIX"]
