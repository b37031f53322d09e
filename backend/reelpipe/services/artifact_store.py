"""
Artifact storage service for reelpipe.

Handles content-addressed, per-run filesystem artifact storage with
path traversal protection and atomic publication.

Layout:
- {base_dir}/{run_id}/audio/      - narration clips, music bed
- {base_dir}/{run_id}/images/     - scene images
- {base_dir}/{run_id}/subtitles/  - alignment timings, caption track
- {base_dir}/{run_id}/final/      - final video, thumbnail, export record
- {base_dir}/{run_id}/.staging/   - in-progress writes, never referenced
"""
import hashlib
import logging
import os
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path

from reelpipe.config import settings

logger = logging.getLogger(__name__)

SUBDIRS = ("audio", "images", "subtitles", "final")
STAGING_DIR = ".staging"

# Artifact kind -> run subdirectory
KIND_SUBDIR = {
    "audio": "audio",
    "music": "audio",
    "image": "images",
    "timing": "subtitles",
    "subtitles": "subtitles",
    "video": "final",
    "thumbnail": "final",
    "export": "final",
}

_CHUNK = 1024 * 1024


class ChecksumMismatchError(OSError):
    """Raised when a file on disk does not match its recorded checksum."""


@dataclass(frozen=True)
class StoredFile:
    """A published artifact file: path relative to the store root."""

    path: str
    size_bytes: int
    checksum: str


def sha256_file(path: Path) -> str:
    """Stream a file through sha256 and return the hex digest."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ArtifactStore:
    """
    Manage filesystem artifacts for render runs.

    Writes always go to a staging file first; publish() hashes the staged
    file, renames it into place under a content-addressed name and re-reads
    it to verify the checksum. A partially written file is never visible
    under its final name.
    """

    def __init__(self, base_dir: str | Path | None = None):
        """
        Initialize ArtifactStore with base directory.

        Args:
            base_dir: Root directory for all run artifacts.
                     If None, uses settings.storage.artifacts_dir
        """
        if base_dir is None:
            base_dir = settings.storage.artifacts_dir

        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _run_path(self, run_id: uuid.UUID | str) -> Path:
        run_dir = (self.base_dir / str(run_id)).resolve()

        # Path traversal protection
        if not run_dir.is_relative_to(self.base_dir) or run_dir == self.base_dir:
            raise ValueError("Invalid run path")
        return run_dir

    def run_dir(self, run_id: uuid.UUID | str) -> Path:
        """
        Get or create the run directory with its subdirectories.

        Raises:
            ValueError: If run_id resolves outside base_dir (traversal attack)
        """
        run_dir = self._run_path(run_id)
        run_dir.mkdir(exist_ok=True)
        for sub in (*SUBDIRS, STAGING_DIR):
            (run_dir / sub).mkdir(exist_ok=True)
        return run_dir

    def resolve(self, relative_path: str) -> Path:
        """Resolve a stored relative path to an absolute one inside the store."""
        path = (self.base_dir / relative_path).resolve()
        if not path.is_relative_to(self.base_dir):
            raise ValueError("Invalid artifact path")
        return path

    def stage(self, run_id: uuid.UUID | str, role: str, suffix: str = "") -> Path:
        """Return a fresh staging path for an artifact that is about to be written."""
        staging = self.run_dir(run_id) / STAGING_DIR
        return staging / f"{role}-{uuid.uuid4().hex}{suffix}"

    def published_path(
        self, run_id: uuid.UUID | str, role: str, kind: str, checksum: str, suffix: str = ""
    ) -> str:
        """Relative path a file with this checksum is published under."""
        if kind not in KIND_SUBDIR:
            raise ValueError(f"Unknown artifact kind: {kind}")
        run_dir = self._run_path(run_id)
        final_path = run_dir / KIND_SUBDIR[kind] / f"{role}-{checksum[:16]}{suffix}"
        return final_path.relative_to(self.base_dir).as_posix()

    def publish(self, run_id: uuid.UUID | str, role: str, kind: str, staged: Path) -> StoredFile:
        """Atomically move a staged file to its content-addressed final path.

        Raises:
            FileNotFoundError: If the staged file was never written
            ChecksumMismatchError: If the published file does not read back intact
        """
        if kind not in KIND_SUBDIR:
            raise ValueError(f"Unknown artifact kind: {kind}")
        staged = Path(staged)
        if not staged.exists():
            raise FileNotFoundError(f"Staged artifact missing for {role}: {staged}")

        with open(staged, "rb+") as f:
            os.fsync(f.fileno())
        checksum = sha256_file(staged)
        size = staged.stat().st_size

        final_path = self.resolve(self.published_path(run_id, role, kind, checksum, staged.suffix))
        self.run_dir(run_id)
        # Same content under the same name is harmless to replace
        os.replace(staged, final_path)

        self.verify(final_path, checksum)
        relative = final_path.relative_to(self.base_dir).as_posix()
        logger.debug(f"Published {role} -> {relative} ({size} bytes)")
        return StoredFile(path=relative, size_bytes=size, checksum=checksum)

    def write_bytes(
        self, run_id: uuid.UUID | str, role: str, kind: str, data: bytes, suffix: str = ""
    ) -> StoredFile:
        """Stage, write and publish an in-memory payload."""
        staged = self.stage(run_id, role, suffix)
        staged.write_bytes(data)
        return self.publish(run_id, role, kind, staged)

    def adopt(
        self, run_id: uuid.UUID | str, role: str, kind: str, source: str, checksum: str
    ) -> StoredFile:
        """Copy an artifact from another run into this run's namespace.

        The source must still match its recorded checksum.
        """
        source_path = self.resolve(source)
        self.verify(source_path, checksum)
        staged = self.stage(run_id, role, source_path.suffix)
        shutil.copyfile(source_path, staged)
        return self.publish(run_id, role, kind, staged)

    def verify(self, path: str | Path, checksum: str) -> None:
        """Re-read a file and compare its sha256 against the expected digest."""
        path = Path(path)
        if not path.is_absolute():
            path = self.resolve(str(path))
        actual = sha256_file(path)
        if actual != checksum:
            raise ChecksumMismatchError(
                f"Checksum mismatch for {path}: expected {checksum}, got {actual}"
            )

    def is_intact(self, relative_path: str, checksum: str) -> bool:
        """True if the file exists and matches its checksum."""
        try:
            self.verify(relative_path, checksum)
        except (OSError, ValueError):
            return False
        return True

    def discard(self, staged: Path) -> None:
        """Remove a staged file left behind by a failed attempt."""
        Path(staged).unlink(missing_ok=True)

    def clear_staging(self, run_id: uuid.UUID | str) -> int:
        """Remove leftovers of interrupted attempts. Returns the number removed."""
        staging = self._run_path(run_id) / STAGING_DIR
        if not staging.exists():
            return 0
        removed = 0
        for leftover in staging.iterdir():
            # encoder work directories are staged too
            if leftover.is_dir():
                shutil.rmtree(leftover)
            else:
                leftover.unlink()
            removed += 1
        if removed:
            logger.info(f"Run {run_id}: removed {removed} staged entries from interrupted attempts")
        return removed

    def list_files(self, run_id: uuid.UUID | str) -> list[str]:
        """Enumerate published files of a run (relative paths, sorted)."""
        run_dir = self._run_path(run_id)
        if not run_dir.exists():
            return []
        files = []
        for sub in SUBDIRS:
            sub_dir = run_dir / sub
            if sub_dir.exists():
                files.extend(
                    p.relative_to(self.base_dir).as_posix()
                    for p in sub_dir.iterdir()
                    if p.is_file()
                )
        return sorted(files)

    def purge_run(self, run_id: uuid.UUID | str) -> bool:
        """Delete a run's whole directory. Returns False if it did not exist."""
        run_dir = self._run_path(run_id)
        if not run_dir.exists():
            return False
        shutil.rmtree(run_dir)
        logger.info(f"Purged artifacts of run {run_id}")
        return True
