"""
Reading and writing the content of a save slot.

A file slot's payload is the file's bytes. A directory slot's payload is a
deterministic tar archive of its non-ignored files: names sorted, mtime, uid
and gid zeroed, mode fixed. Only content and relative names reach the hash,
so touching a file without changing it never creates a version.
"""

import io
import logging
import os
import tarfile
import uuid
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Sequence

from ..errors import TransientIOError
from ..models.versions import SaveSlot, SlotKind
from .utils import is_ignored

logger = logging.getLogger(__name__)

_FILE_MODE = 0o644

# Suffix of in-flight restore files; watchers ignore it
TEMP_SUFFIX = ".savevault-tmp"


class SnapshotReader:
    """Reads slot content into payload bytes and writes payloads back atomically"""

    def __init__(self, ignore_patterns: Sequence[str] = ()):
        self.ignore_patterns = list(ignore_patterns) + [f"*{TEMP_SUFFIX}"]

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def read(self, slot: SaveSlot) -> Optional[bytes]:
        """
        Read the current content of a slot.

        Returns:
            Payload bytes, or None when the content is absent (file missing,
            directory missing or without any non-ignored file)

        Raises:
            TransientIOError: file locked, permission denied or another OS
                error that may clear up on retry
        """
        if slot.kind == SlotKind.DIRECTORY:
            return self._read_directory(slot.root_path)
        return self._read_file(slot.root_path)

    def _read_file(self, path: Path) -> Optional[bytes]:
        try:
            with open(path, 'rb') as f:
                return f.read()
        except FileNotFoundError:
            return None
        except IsADirectoryError as e:
            raise TransientIOError(f"Expected a file but found a directory: {path}", str(path)) from e
        except OSError as e:
            raise TransientIOError(f"Failed to read {path}: {e}", str(path)) from e

    def list_files(self, root: Path) -> List[Path]:
        """Non-ignored files under `root`, sorted by relative POSIX path"""
        files = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = [d for d in dirnames if not is_ignored(d, self.ignore_patterns)]
            for name in filenames:
                if not is_ignored(name, self.ignore_patterns):
                    files.append(Path(dirpath) / name)
        return sorted(files, key=lambda p: p.relative_to(root).as_posix())

    def _read_directory(self, root: Path) -> Optional[bytes]:
        if not root.is_dir():
            return None

        try:
            files = self.list_files(root)
            if not files:
                return None

            buffer = io.BytesIO()
            with tarfile.open(fileobj=buffer, mode='w', format=tarfile.PAX_FORMAT) as tar:
                for path in files:
                    with open(path, 'rb') as f:
                        data = f.read()
                    info = tarfile.TarInfo(name=path.relative_to(root).as_posix())
                    info.size = len(data)
                    info.mtime = 0
                    info.mode = _FILE_MODE
                    info.uid = info.gid = 0
                    info.uname = info.gname = ""
                    tar.addfile(info, io.BytesIO(data))
        except FileNotFoundError:
            # A file vanished mid-scan; the emulator is still writing
            raise TransientIOError(f"Directory {root} changed while reading", str(root))
        except OSError as e:
            raise TransientIOError(f"Failed to read {root}: {e}", str(root)) from e

        logger.debug(f"Archived {len(files)} files from {root}")
        return buffer.getvalue()

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def write(self, slot: SaveSlot, payload: bytes) -> None:
        """
        Write a payload back to the slot's location.

        File slots are replaced atomically (temp file, fsync, rename).
        Directory slots are reconciled file by file: archived files are
        written atomically, non-ignored files absent from the archive are
        removed.
        """
        if slot.kind == SlotKind.DIRECTORY:
            self._write_directory(slot.root_path, payload)
        else:
            atomic_write(slot.root_path, payload)

    def _write_directory(self, root: Path, payload: bytes) -> None:
        entries = unpack_archive(payload)
        root.mkdir(parents=True, exist_ok=True)

        for relative, data in entries.items():
            atomic_write(root / relative, data)

        wanted = {root / relative for relative in entries}
        for path in self.list_files(root):
            if path not in wanted:
                path.unlink()
                logger.debug(f"Removed {path} (not part of restored version)")

        logger.debug(f"Restored {len(entries)} files into {root}")


def unpack_archive(payload: bytes) -> Dict[str, bytes]:
    """
    Extract a directory payload into {relative path: bytes}.

    Raises:
        ValueError: payload is not an archive, or contains an absolute or
            escaping member name
    """
    entries: Dict[str, bytes] = {}
    try:
        with tarfile.open(fileobj=io.BytesIO(payload), mode='r') as tar:
            for member in tar.getmembers():
                if not member.isfile():
                    continue
                name = PurePosixPath(member.name)
                if name.is_absolute() or '..' in name.parts:
                    raise ValueError(f"Unsafe archive member: {member.name}")
                extracted = tar.extractfile(member)
                entries[name.as_posix()] = extracted.read() if extracted else b""
    except tarfile.TarError as e:
        raise ValueError(f"Invalid directory payload: {e}") from e
    return entries


def atomic_write(path: Path, data: bytes) -> None:
    """Write via a sibling temp file, fsync, then rename over the target"""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}{TEMP_SUFFIX}")
    try:
        with open(tmp_path, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
