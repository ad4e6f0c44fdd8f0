"""Filesystem locations for uploads, generated output and archives."""

from __future__ import annotations

import re
import shutil
import time
from pathlib import Path
from typing import BinaryIO
from uuid import uuid4

import structlog

from .config import Settings, get_settings
from .errors import ValidationError

LOGGER = structlog.get_logger(__name__)

CHUNK_SIZE = 1024 * 1024


def sanitize_filename(filename: str) -> str:
    """Return a filesystem-safe basename, keeping the extension intact."""

    base = re.split(r"[\\/]+", filename or "")[-1].strip()
    base = re.sub(r"[^A-Za-z0-9._-]+", "_", base)
    base = re.sub(r"_+", "_", base).lstrip(".")
    return base or "upload"


class ArtifactStore:
    """Owns the three storage roots and refuses paths outside them."""

    def __init__(
        self,
        uploads_dir: Path | str,
        output_root: Path | str,
        archive_root: Path | str,
    ) -> None:
        self.uploads_dir = Path(uploads_dir).resolve()
        self.output_root = Path(output_root).resolve()
        self.archive_root = Path(archive_root).resolve()
        for root in (self.uploads_dir, self.output_root, self.archive_root):
            root.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ArtifactStore":
        settings = settings or get_settings()
        return cls(settings.uploads_dir, settings.output_root, settings.archive_root)

    # ------------------------------------------------------------------
    # Path scoping
    # ------------------------------------------------------------------
    def resolve(self, path: Path | str, root: Path) -> Path:
        """Return ``path`` resolved, raising ``ValueError`` if it escapes ``root``."""

        candidate = Path(path).resolve()
        if candidate != root and root not in candidate.parents:
            raise ValueError(f"{candidate} is outside {root}")
        return candidate

    def output_dir_for(self, job_id: str) -> Path:
        return self.resolve(self.output_root / job_id, self.output_root)

    def archive_path_for(self, job_id: str) -> Path:
        return self.resolve(self.archive_root / f"{job_id}.zip", self.archive_root)

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------
    def save_upload(self, filename: str, source: BinaryIO, max_bytes: int) -> Path:
        """Stream ``source`` into a collision-free file under the uploads root.

        Nothing is written when the stream is empty; an oversized upload is
        removed before :class:`ValidationError` is raised.
        """

        first_chunk = source.read(CHUNK_SIZE)
        if not first_chunk:
            raise ValidationError("Uploaded file is empty")

        unique_name = f"{time.time_ns()}-{uuid4().hex[:8]}-{sanitize_filename(filename)}"
        destination = self.resolve(self.uploads_dir / unique_name, self.uploads_dir)

        total = 0
        chunk = first_chunk
        try:
            # Exclusive create: a name collision fails instead of overwriting.
            with destination.open("xb") as handle:
                while chunk:
                    total += len(chunk)
                    if total > max_bytes:
                        raise ValidationError(
                            f"File too large (max {max_bytes} bytes)", status_code=413
                        )
                    handle.write(chunk)
                    chunk = source.read(CHUNK_SIZE)
        except Exception:
            destination.unlink(missing_ok=True)
            raise

        LOGGER.info("upload_stored", filename=filename, path=str(destination), size=total)
        return destination

    # ------------------------------------------------------------------
    # Output directories and archives
    # ------------------------------------------------------------------
    def reset_output_dir(self, output_dir: Path | str) -> Path:
        """Remove any previous attempt's files and recreate the directory."""

        target = self.resolve(output_dir, self.output_root)
        if target == self.output_root:
            raise ValueError("Refusing to reset the output root itself")
        if target.exists():
            shutil.rmtree(target)
        target.mkdir(parents=True)
        return target

    def remove_archive(self, archive_path: Path | str | None) -> None:
        if not archive_path:
            return
        target = self.resolve(archive_path, self.archive_root)
        target.unlink(missing_ok=True)

    def discard_job_files(
        self,
        *,
        input_path: str | None,
        output_dir: str | None,
        archive_path: str | None,
    ) -> None:
        """Delete every file a job owns. Missing files are ignored."""

        if input_path:
            self.resolve(input_path, self.uploads_dir).unlink(missing_ok=True)
        if output_dir:
            target = self.resolve(output_dir, self.output_root)
            if target != self.output_root:
                shutil.rmtree(target, ignore_errors=True)
        self.remove_archive(archive_path)
        LOGGER.info(
            "job_files_discarded",
            input_path=input_path,
            output_dir=output_dir,
            archive_path=archive_path,
        )

    def remove_orphan_parts(self, older_than_seconds: float, now: float | None = None) -> int:
        """Remove stale ``.part`` archives left behind by crashed workers."""

        now = now if now is not None else time.time()
        removed = 0
        for entry in self.archive_root.glob("*.part"):
            try:
                age = now - entry.stat().st_mtime
            except FileNotFoundError:
                continue
            if age > older_than_seconds:
                entry.unlink(missing_ok=True)
                removed += 1
        return removed


__all__ = ["ArtifactStore", "sanitize_filename", "CHUNK_SIZE"]
