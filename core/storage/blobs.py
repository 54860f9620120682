"""
Content-addressed blob files with stage-then-commit writes.

Blobs are written to a staging directory, flushed and fsynced, then renamed
into place with `os.replace`, so a crash never leaves a truncated blob at a
final location. Callers (the version store) hold the write lock.
"""

import logging
import os
import uuid
from pathlib import Path
from typing import Iterator, Tuple

from .utils import blob_ref_for

logger = logging.getLogger(__name__)

STAGING_DIR_NAME = ".staging"


class BlobStore:
    """Blob directory owned by the version store"""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.staging_dir = self.root / STAGING_DIR_NAME
        self.root.mkdir(parents=True, exist_ok=True)
        self.staging_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, blob_ref: str) -> Path:
        """Resolve a blob reference, refusing anything that escapes the root"""
        path = (self.root / blob_ref).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Invalid blob reference: {blob_ref}")
        return path

    def exists(self, blob_ref: str) -> bool:
        return self.path_for(blob_ref).is_file()

    def put(self, content_hash: str, codec: str, data: bytes) -> Tuple[str, bool]:
        """
        Durably store a blob.

        Returns:
            (blob_ref, created) where created is False if an identical
            content-addressed blob was already present

        Raises:
            OSError: staging, fsync or rename failed (disk full, permissions)
        """
        blob_ref = blob_ref_for(content_hash, codec)
        final_path = self.path_for(blob_ref)

        if final_path.is_file():
            logger.debug(f"Reusing existing blob {blob_ref}")
            return blob_ref, False

        staging_path = self.staging_dir / f"{uuid.uuid4().hex}.tmp"
        try:
            with open(staging_path, 'wb') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())

            final_path.parent.mkdir(parents=True, exist_ok=True)
            os.replace(staging_path, final_path)
            self._fsync_dir(final_path.parent)
        except BaseException:
            staging_path.unlink(missing_ok=True)
            raise

        logger.debug(f"Committed blob {blob_ref} ({len(data)} bytes)")
        return blob_ref, True

    def get(self, blob_ref: str) -> bytes:
        """Read a blob. Raises FileNotFoundError if absent."""
        with open(self.path_for(blob_ref), 'rb') as f:
            return f.read()

    def discard(self, blob_ref: str) -> bool:
        """Delete a blob; returns False if it was already gone"""
        path = self.path_for(blob_ref)
        try:
            path.unlink()
        except FileNotFoundError:
            return False

        # Drop the fan-out directory once empty
        try:
            path.parent.rmdir()
        except OSError:
            pass
        return True

    def iter_refs(self) -> Iterator[str]:
        """Yield references of all committed blobs"""
        for path in self.root.rglob('*'):
            if not path.is_file() or STAGING_DIR_NAME in path.relative_to(self.root).parts:
                continue
            yield path.relative_to(self.root).as_posix()

    def clear_staging(self) -> int:
        """Remove leftovers of interrupted writes"""
        removed = 0
        for path in self.staging_dir.glob('*.tmp'):
            path.unlink(missing_ok=True)
            removed += 1
        if removed:
            logger.info(f"Removed {removed} interrupted blob writes from staging")
        return removed

    @staticmethod
    def _fsync_dir(directory: Path) -> None:
        # Directory fsync makes the rename durable; not available on Windows
        if os.name != 'posix':
            return
        fd = os.open(directory, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
