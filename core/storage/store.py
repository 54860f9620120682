"""
Version Store.

Durable metadata (SQLite) plus compressed blob storage with transactional
append, prune and read. This is the only component that touches the database
file or the blob directory.

Write discipline:
- all writes are serialized by one store-level lock
- append stages and commits the blob first, then inserts the metadata row in
  a single transaction; any failure removes the blob again unless another
  committed row references it
- prune deletes rows in one transaction, then removes unreferenced blobs

Reads open their own connection and may run concurrently with a writer (WAL).
"""

import asyncio
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

import zstandard as zstd

from ..errors import CorruptVersionError, DuplicateContentError, NotFoundError, StorageFailure
from ..models.versions import SaveSlot, SaveVersion, SlotKind
from .blobs import BlobStore
from .compression import CompressionResult, Compressor
from .hasher import compute_content_hash
from .utils import format_size

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS slots (
    slot_id TEXT PRIMARY KEY,
    root_path TEXT NOT NULL,
    emulator_tag TEXT NOT NULL,
    kind TEXT NOT NULL,
    active_version_id INTEGER,
    next_version_id INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    last_capture_at TEXT
);

CREATE TABLE IF NOT EXISTS versions (
    slot_id TEXT NOT NULL,
    version_id INTEGER NOT NULL,
    content_hash TEXT NOT NULL,
    blob_ref TEXT NOT NULL,
    codec TEXT NOT NULL,
    size_original INTEGER NOT NULL,
    size_compressed INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (slot_id, version_id),
    FOREIGN KEY (slot_id) REFERENCES slots(slot_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_versions_blob_ref ON versions(blob_ref);
"""


class SqliteVersionStore:
    """
    Synchronous SQLite-backed version store.

    Blocking; the async engine talks to it through VersionStore, which runs
    every call in a worker thread.
    """

    def __init__(self, db_path: Path, blob_dir: Path, compressor: Optional[Compressor] = None):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.blobs = BlobStore(blob_dir)
        self.compressor = compressor or Compressor()
        self._write_lock = threading.Lock()
        self._init_schema()

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.db_path, isolation_level=None, timeout=30.0)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as e:
            raise StorageFailure(f"Cannot open {self.db_path}: {e}") from e
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT, rolled back on any exception"""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageFailure(f"Read from {self.db_path} failed: {e}") from e
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._write_lock:
            conn = self._connect()
            try:
                conn.execute("PRAGMA journal_mode = WAL")
                conn.executescript(SCHEMA)
            finally:
                conn.close()
        logger.info(f"Opened version store at {self.db_path}")

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------

    def upsert_slot(self, slot: SaveSlot) -> SaveSlot:
        """Insert a slot, or return the stored one if it already exists"""
        try:
            with self._write_lock, self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO slots (slot_id, root_path, emulator_tag, kind, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(slot_id) DO NOTHING
                    """,
                    (slot.id, str(slot.root_path), slot.emulator_tag, slot.kind.value,
                     slot.created_at.isoformat())
                )
        except sqlite3.Error as e:
            raise StorageFailure(f"Failed to register slot {slot.id}: {e}") from e
        return self.get_slot(slot.id)

    def get_slot(self, slot_id: str) -> SaveSlot:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM slots WHERE slot_id = ?", (slot_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Unknown slot: {slot_id}")
        return self._row_to_slot(row)

    def list_slots(self) -> List[SaveSlot]:
        with self._reader() as conn:
            rows = conn.execute("SELECT * FROM slots ORDER BY created_at, slot_id").fetchall()
        return [self._row_to_slot(row) for row in rows]

    def delete_slot(self, slot_id: str) -> List[SaveVersion]:
        """Delete a slot with all of its versions and their unreferenced blobs"""
        with self._write_lock:
            try:
                with self._transaction() as conn:
                    if conn.execute("SELECT 1 FROM slots WHERE slot_id = ?", (slot_id,)).fetchone() is None:
                        raise NotFoundError(f"Unknown slot: {slot_id}")
                    doomed = [self._row_to_version(row) for row in conn.execute(
                        "SELECT * FROM versions WHERE slot_id = ? ORDER BY version_id", (slot_id,)
                    )]
                    conn.execute("DELETE FROM versions WHERE slot_id = ?", (slot_id,))
                    conn.execute("DELETE FROM slots WHERE slot_id = ?", (slot_id,))
            except sqlite3.Error as e:
                raise StorageFailure(f"Failed to delete slot {slot_id}: {e}") from e

            self._discard_unreferenced(v.blob_ref for v in doomed)

        logger.info(f"Deleted slot {slot_id} with {len(doomed)} versions")
        return doomed

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    def append(
        self,
        slot_id: str,
        content_hash: str,
        compressed: CompressionResult,
    ) -> SaveVersion:
        """
        Atomically append a new version.

        Either the blob and the metadata row are both committed, or neither
        is visible afterwards.

        Raises:
            NotFoundError: unknown slot
            DuplicateContentError: content equals the active version
            StorageFailure: blob write or transaction failed
        """
        with self._write_lock:
            try:
                blob_ref, created_blob = self.blobs.put(content_hash, compressed.codec, compressed.data)
            except OSError as e:
                raise StorageFailure(f"Failed to write blob for slot {slot_id}: {e}") from e

            try:
                with self._transaction() as conn:
                    version = self._insert_version(conn, slot_id, content_hash, blob_ref, compressed)
            except BaseException as e:
                if created_blob and not self._is_referenced(blob_ref):
                    self.blobs.discard(blob_ref)
                if isinstance(e, sqlite3.Error):
                    raise StorageFailure(f"Failed to commit version for slot {slot_id}: {e}") from e
                raise

        logger.info(
            f"Stored {version} ({format_size(version.size_original)} -> "
            f"{format_size(version.size_compressed)})"
        )
        return version

    def _insert_version(
        self,
        conn: sqlite3.Connection,
        slot_id: str,
        content_hash: str,
        blob_ref: str,
        compressed: CompressionResult,
    ) -> SaveVersion:
        slot_row = conn.execute(
            "SELECT next_version_id, active_version_id FROM slots WHERE slot_id = ?", (slot_id,)
        ).fetchone()
        if slot_row is None:
            raise NotFoundError(f"Unknown slot: {slot_id}")

        latest = conn.execute(
            "SELECT content_hash FROM versions WHERE slot_id = ? ORDER BY version_id DESC LIMIT 1",
            (slot_id,)
        ).fetchone()
        if latest is not None and latest["content_hash"] == content_hash:
            raise DuplicateContentError(slot_id, content_hash)

        version = SaveVersion(
            slot_id=slot_id,
            version_id=slot_row["next_version_id"],
            content_hash=content_hash,
            blob_ref=blob_ref,
            codec=compressed.codec,
            size_original=compressed.size_original,
            size_compressed=compressed.size_compressed,
            created_at=datetime.now(),
        )

        conn.execute(
            """
            INSERT INTO versions (
                slot_id, version_id, content_hash, blob_ref, codec,
                size_original, size_compressed, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (version.slot_id, version.version_id, version.content_hash, version.blob_ref,
             version.codec, version.size_original, version.size_compressed,
             version.created_at.isoformat())
        )
        conn.execute(
            """
            UPDATE slots
            SET active_version_id = ?, next_version_id = ?, last_capture_at = ?
            WHERE slot_id = ?
            """,
            (version.version_id, version.version_id + 1, version.created_at.isoformat(), slot_id)
        )
        return version

    def prune(self, slot_id: str, keep_ids: Set[int]) -> List[SaveVersion]:
        """
        Delete every version of `slot_id` whose id is not in `keep_ids`.

        Returns:
            The evicted versions, oldest first
        """
        with self._write_lock:
            try:
                with self._transaction() as conn:
                    versions = [self._row_to_version(row) for row in conn.execute(
                        "SELECT * FROM versions WHERE slot_id = ? ORDER BY version_id", (slot_id,)
                    )]
                    doomed = [v for v in versions if v.version_id not in keep_ids]
                    if not doomed:
                        return []

                    conn.executemany(
                        "DELETE FROM versions WHERE slot_id = ? AND version_id = ?",
                        [(slot_id, v.version_id) for v in doomed]
                    )
                    self._refresh_active_version(conn, slot_id)
            except sqlite3.Error as e:
                raise StorageFailure(f"Failed to prune slot {slot_id}: {e}") from e

            self._discard_unreferenced(v.blob_ref for v in doomed)

        logger.info(
            f"Evicted {len(doomed)} versions of slot {slot_id}: "
            f"{[v.version_id for v in doomed]}"
        )
        return doomed

    def delete_version(self, slot_id: str, version_id: int) -> SaveVersion:
        """Explicit user delete of a single version"""
        with self._write_lock:
            try:
                with self._transaction() as conn:
                    row = conn.execute(
                        "SELECT * FROM versions WHERE slot_id = ? AND version_id = ?",
                        (slot_id, version_id)
                    ).fetchone()
                    if row is None:
                        raise NotFoundError(f"Unknown version {version_id} of slot {slot_id}")
                    version = self._row_to_version(row)
                    conn.execute(
                        "DELETE FROM versions WHERE slot_id = ? AND version_id = ?",
                        (slot_id, version_id)
                    )
                    self._refresh_active_version(conn, slot_id)
            except sqlite3.Error as e:
                raise StorageFailure(f"Failed to delete version {version_id} of slot {slot_id}: {e}") from e

            self._discard_unreferenced([version.blob_ref])

        logger.info(f"Deleted {version}")
        return version

    @staticmethod
    def _refresh_active_version(conn: sqlite3.Connection, slot_id: str) -> None:
        conn.execute(
            """
            UPDATE slots SET active_version_id = (
                SELECT MAX(version_id) FROM versions WHERE slot_id = ?
            ) WHERE slot_id = ?
            """,
            (slot_id, slot_id)
        )

    def list_versions(self, slot_id: str) -> List[SaveVersion]:
        """Versions of a slot ordered by id ascending"""
        with self._reader() as conn:
            if conn.execute("SELECT 1 FROM slots WHERE slot_id = ?", (slot_id,)).fetchone() is None:
                raise NotFoundError(f"Unknown slot: {slot_id}")
            rows = conn.execute(
                "SELECT * FROM versions WHERE slot_id = ? ORDER BY version_id", (slot_id,)
            ).fetchall()
        return [self._row_to_version(row) for row in rows]

    def get_version(self, slot_id: str, version_id: int) -> SaveVersion:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT * FROM versions WHERE slot_id = ? AND version_id = ?",
                (slot_id, version_id)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Unknown version {version_id} of slot {slot_id}")
        return self._row_to_version(row)

    def get_active_version(self, slot_id: str) -> Optional[SaveVersion]:
        slot = self.get_slot(slot_id)
        if slot.active_version_id is None:
            return None
        return self.get_version(slot_id, slot.active_version_id)

    def read(self, slot_id: str, version_id: int) -> bytes:
        """
        Return the decompressed payload of a version, verified against its hash.

        Raises:
            NotFoundError: unknown slot/version
            CorruptVersionError: blob missing, undecodable or hash mismatch
        """
        version = self.get_version(slot_id, version_id)

        try:
            blob = self.blobs.get(version.blob_ref)
        except FileNotFoundError:
            raise CorruptVersionError(slot_id, version_id, f"blob {version.blob_ref} is missing")
        except OSError as e:
            raise StorageFailure(f"Failed to read blob {version.blob_ref}: {e}") from e

        try:
            payload = self.compressor.decompress(blob, version.codec)
        except (zstd.ZstdError, ValueError) as e:
            raise CorruptVersionError(slot_id, version_id, f"cannot decode blob: {e}") from e

        actual_hash = compute_content_hash(payload)
        if actual_hash != version.content_hash:
            raise CorruptVersionError(
                slot_id, version_id,
                f"hash mismatch (stored {version.content_hash[:12]}, computed {actual_hash[:12]})"
            )
        return payload

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def recover(self) -> Dict[str, int]:
        """
        Clean up after a crash: drop staging leftovers and orphan blobs.

        Rows whose blob is missing are only reported; they surface as
        CorruptVersionError on read.
        """
        with self._write_lock:
            staging_removed = self.blobs.clear_staging()

            with self._reader() as conn:
                referenced = {row["blob_ref"] for row in conn.execute("SELECT DISTINCT blob_ref FROM versions")}

            orphans_removed = 0
            for blob_ref in list(self.blobs.iter_refs()):
                if blob_ref not in referenced:
                    self.blobs.discard(blob_ref)
                    orphans_removed += 1

            missing = sum(1 for blob_ref in referenced if not self.blobs.exists(blob_ref))

        if orphans_removed:
            logger.info(f"Removed {orphans_removed} orphan blobs")
        if missing:
            logger.warning(f"{missing} stored versions reference missing blobs")

        return {
            "staging_removed": staging_removed,
            "orphans_removed": orphans_removed,
            "missing_blobs": missing,
        }

    def get_stats(self) -> Dict[str, Any]:
        with self._reader() as conn:
            slot_count = conn.execute("SELECT COUNT(*) FROM slots").fetchone()[0]
            row = conn.execute(
                """
                SELECT COUNT(*), COALESCE(SUM(size_original), 0), COALESCE(SUM(size_compressed), 0)
                FROM versions
                """
            ).fetchone()
        return {
            "slots": slot_count,
            "versions": row[0],
            "bytes_original": row[1],
            "bytes_compressed": row[2],
        }

    def _is_referenced(self, blob_ref: str) -> bool:
        with self._reader() as conn:
            return conn.execute(
                "SELECT 1 FROM versions WHERE blob_ref = ? LIMIT 1", (blob_ref,)
            ).fetchone() is not None

    def _discard_unreferenced(self, blob_refs: Iterable[str]) -> None:
        # Rows are already committed; a failure here only leaves an orphan for recover()
        for blob_ref in set(blob_refs):
            if self._is_referenced(blob_ref):
                continue
            try:
                self.blobs.discard(blob_ref)
            except OSError as e:
                logger.warning(f"Failed to delete blob {blob_ref}: {e}")

    @staticmethod
    def _row_to_slot(row: sqlite3.Row) -> SaveSlot:
        return SaveSlot(
            id=row["slot_id"],
            root_path=Path(row["root_path"]),
            emulator_tag=row["emulator_tag"],
            kind=SlotKind(row["kind"]),
            active_version_id=row["active_version_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            last_capture_at=datetime.fromisoformat(row["last_capture_at"]) if row["last_capture_at"] else None,
        )

    @staticmethod
    def _row_to_version(row: sqlite3.Row) -> SaveVersion:
        return SaveVersion(
            slot_id=row["slot_id"],
            version_id=row["version_id"],
            content_hash=row["content_hash"],
            blob_ref=row["blob_ref"],
            codec=row["codec"],
            size_original=row["size_original"],
            size_compressed=row["size_compressed"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )


class VersionStore:
    """Async facade over SqliteVersionStore; every call runs in a worker thread."""

    def __init__(self, db_path: Path, blob_dir: Path, compressor: Optional[Compressor] = None):
        self._sync = SqliteVersionStore(db_path, blob_dir, compressor)

    @property
    def compressor(self) -> Compressor:
        return self._sync.compressor

    async def upsert_slot(self, slot: SaveSlot) -> SaveSlot:
        return await asyncio.to_thread(self._sync.upsert_slot, slot)

    async def get_slot(self, slot_id: str) -> SaveSlot:
        return await asyncio.to_thread(self._sync.get_slot, slot_id)

    async def list_slots(self) -> List[SaveSlot]:
        return await asyncio.to_thread(self._sync.list_slots)

    async def delete_slot(self, slot_id: str) -> List[SaveVersion]:
        return await asyncio.to_thread(self._sync.delete_slot, slot_id)

    async def append(self, slot_id: str, content_hash: str, compressed: CompressionResult) -> SaveVersion:
        return await asyncio.to_thread(self._sync.append, slot_id, content_hash, compressed)

    async def prune(self, slot_id: str, keep_ids: Set[int]) -> List[SaveVersion]:
        return await asyncio.to_thread(self._sync.prune, slot_id, keep_ids)

    async def delete_version(self, slot_id: str, version_id: int) -> SaveVersion:
        return await asyncio.to_thread(self._sync.delete_version, slot_id, version_id)

    async def list_versions(self, slot_id: str) -> List[SaveVersion]:
        return await asyncio.to_thread(self._sync.list_versions, slot_id)

    async def get_version(self, slot_id: str, version_id: int) -> SaveVersion:
        return await asyncio.to_thread(self._sync.get_version, slot_id, version_id)

    async def get_active_version(self, slot_id: str) -> Optional[SaveVersion]:
        return await asyncio.to_thread(self._sync.get_active_version, slot_id)

    async def read(self, slot_id: str, version_id: int) -> bytes:
        return await asyncio.to_thread(self._sync.read, slot_id, version_id)

    async def recover(self) -> Dict[str, int]:
        return await asyncio.to_thread(self._sync.recover)

    async def get_stats(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self._sync.get_stats)
