"""
Save Versioning Engine.

Central coordinator turning filesystem activity on registered save slots into
a deduplicated, retention-bounded sequence of stored versions, and publishing
lifecycle events for UI collaborators.

Per slot: one watcher feeding one classifier task. Reads and compression run
on a bounded worker pool; store calls run in worker threads and are
serialized by the store's write lock. Capture and restore of one slot are
serialized by a per-slot asyncio lock.
"""

import asyncio
import logging
import sqlite3
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Union

import aiofiles
import zstandard as zstd

from ..errors import (
    CorruptVersionError,
    DuplicateContentError,
    NotFoundError,
    StorageFailure,
    TransientIOError,
)
from ..models.config import EngineSettings
from ..models.versions import SaveSlot, SaveVersion, SlotKind, SlotState, SlotStatus
from ..storage.compression import Compressor
from ..storage.hasher import hash_file
from ..storage.snapshot import SnapshotReader
from ..storage.store import VersionStore
from ..storage.utils import format_size
from .bus import LifecycleEventBus
from .classifier import ChangeClassifier, Resolution, ResolutionOutcome
from .deterministic import DeterministicSlotId
from .events import (
    CaptureFailed,
    REASON_COMPRESSION_FAILED,
    REASON_READ_FAILED,
    REASON_STORAGE_FAILED,
    REASON_WATCH_FAILED,
    SlotAvailable,
    SlotContentAbsent,
    SlotUnavailable,
    VersionCreated,
    VersionRestored,
)
from .retention import RetentionPolicy, build_retention_policy
from .watcher import PathWatcher, WatchTarget

logger = logging.getLogger(__name__)

WatcherFactory = Callable[[SaveSlot], PathWatcher]

# Upper bound on the wait between attempts to restart a failing watcher
_MAX_REARM_DELAY = 60.0

_RETENTION_ATTEMPTS = 2


@dataclass
class EngineMetrics:
    """Counters for monitoring the engine."""

    # Captures
    versions_created: int = 0
    unchanged_skipped: int = 0
    self_writes_suppressed: int = 0
    content_absent: int = 0
    capture_failures: int = 0
    versions_evicted: int = 0
    restores: int = 0

    # Volume
    bytes_original: int = 0
    bytes_compressed: int = 0

    # System
    uptime_seconds: float = 0.0

    # Error tracking
    consecutive_errors: int = 0
    last_error_time: Optional[datetime] = None
    last_error_message: Optional[str] = None


@dataclass
class SlotRuntime:
    """In-memory state of one registered slot."""

    slot: SaveSlot
    state: SlotState = SlotState.IDLE

    # Components
    watcher: Optional[PathWatcher] = None
    classifier: Optional[ChangeClassifier] = None
    task: Optional[asyncio.Task] = None

    # Metrics
    registered_at: datetime = field(default_factory=datetime.now)
    captures: int = 0
    last_error: Optional[str] = None

    @property
    def watch_mode(self) -> str:
        return self.watcher.mode if self.watcher else "none"


class VersioningEngine:
    """
    Orchestrates watching, classification, storage and retention for all
    registered save slots.

    Features:
    - Idempotent slot registration with deterministic slot ids
    - Debounced, hash-deduplicated captures
    - Pluggable retention with the newest version always retained
    - Atomic restore guarded against re-capturing its own write
    - Per-slot failure isolation; failures surface as lifecycle events
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        store: Optional[VersionStore] = None,
        bus: Optional[LifecycleEventBus] = None,
        retention_policy: Optional[RetentionPolicy] = None,
        watcher_factory: Optional[WatcherFactory] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the engine.

        Args:
            settings: Validated engine settings (defaults if omitted)
            store: Version store; opened from settings on start() if omitted
            bus: Lifecycle event bus shared with collaborators
            retention_policy: Overrides the policy named in settings
            watcher_factory: Builds the watcher for a slot
            clock: Monotonic clock used for debounce deadlines
        """
        self.settings = settings or EngineSettings()
        self.store = store
        self.bus = bus or LifecycleEventBus()
        self.retention_policy = retention_policy or build_retention_policy(self.settings)
        self.reader = SnapshotReader(self.settings.ignore_patterns)
        self._watcher_factory = watcher_factory or self._default_watcher_factory
        self._clock = clock

        # Slot management
        self.runtimes: Dict[str, SlotRuntime] = {}
        self._runtimes_lock = asyncio.Lock()
        self._slot_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

        # Background processing
        self._executor: Optional[ThreadPoolExecutor] = None
        self._inflight: Set[asyncio.Task] = set()
        self.is_running = False

        # Metrics and monitoring
        self.metrics = EngineMetrics()
        self.start_time: Optional[datetime] = None

        logger.info(
            f"Initialized VersioningEngine (debounce={self.settings.debounce_window}s, "
            f"retention={self.retention_policy!r}, workers={self.settings.worker_count})"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Open the store (schema + crash recovery) and start the worker pool.

        Raises:
            ConfigurationError: invalid compression settings
            StorageFailure: store cannot be opened
        """
        if self.is_running:
            logger.warning("Versioning engine is already running")
            return

        logger.info("Starting VersioningEngine")

        if self.store is None:
            compressor = Compressor(
                level=self.settings.compression_level,
                enabled=self.settings.compression_enabled,
            )
            try:
                self.store = await asyncio.to_thread(
                    VersionStore, self.settings.database_path, self.settings.blob_dir, compressor
                )
            except (OSError, sqlite3.Error) as e:
                raise StorageFailure(f"Failed to open version store in {self.settings.data_dir}: {e}") from e

        report = await self.store.recover()
        logger.debug(f"Store recovery: {report}")

        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.worker_count,
            thread_name_prefix="savevault-worker",
        )
        self.is_running = True
        self.start_time = datetime.now()
        logger.info(f"Started versioning engine with {self.settings.worker_count} workers")

    async def stop(self) -> None:
        """Stop all slots, wait for in-flight persists and release the worker pool."""
        if not self.is_running:
            return

        logger.info("Stopping VersioningEngine")
        self.is_running = False

        async with self._runtimes_lock:
            for runtime in list(self.runtimes.values()):
                await self._stop_runtime(runtime)
            self.runtimes.clear()

        if self._inflight:
            logger.info(f"Waiting for {len(self._inflight)} in-flight captures")
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

        if self._executor:
            await asyncio.to_thread(self._executor.shutdown, True)
            self._executor = None

        if self.start_time:
            self.metrics.uptime_seconds = (datetime.now() - self.start_time).total_seconds()

        self.bus.close()
        logger.info("Stopped VersioningEngine")

    def _require_running(self) -> VersionStore:
        if not self.is_running or self.store is None:
            raise RuntimeError("Versioning engine is not running")
        return self.store

    # ------------------------------------------------------------------
    # Slot registration
    # ------------------------------------------------------------------

    async def register_slot(
        self,
        root_path: Union[str, Path],
        emulator_tag: str,
        kind: Optional[SlotKind] = None,
    ) -> SaveSlot:
        """
        Register a save file or directory and start watching it.

        Registering an already registered path returns the existing slot.

        Args:
            root_path: Save file or save directory
            emulator_tag: Tag supplied by the registrar
            kind: File or directory; inferred from the filesystem if omitted
        """
        store = self._require_running()
        path = DeterministicSlotId.normalize_path(root_path)
        slot_id = DeterministicSlotId.generate(path, emulator_tag)

        async with self._runtimes_lock:
            existing = self.runtimes.get(slot_id)
            if existing:
                logger.debug(f"Slot already registered: {existing.slot}")
                return existing.slot

            slot = await store.upsert_slot(SaveSlot(
                id=slot_id,
                root_path=path,
                emulator_tag=emulator_tag,
                kind=kind or SlotKind.infer(path),
            ))

            # Catch up on evictions a failed prune or a smaller retention left behind
            async with self._slot_locks[slot_id]:
                evicted = await self._apply_retention(None, slot_id)
            if evicted:
                logger.info(f"Evicted {len(evicted)} versions of {slot} outside retention")

            active = await store.get_active_version(slot_id)

            runtime = SlotRuntime(slot=slot)
            runtime.classifier = ChangeClassifier(
                slot=slot,
                reader=self.reader,
                debounce_window=self.settings.debounce_window,
                read_max_attempts=self.settings.read_max_attempts,
                read_backoff_base=self.settings.read_backoff_base,
                executor=self._executor,
                clock=self._clock,
                handler=partial(self._handle_resolution, runtime),
                on_state=partial(self._set_state, runtime),
                active_hash=active.content_hash if active else None,
            )
            if self.settings.capture_on_register:
                runtime.classifier.request_evaluation()

            runtime.task = asyncio.create_task(self._run_slot(runtime), name=f"slot-{slot_id}")
            self.runtimes[slot_id] = runtime

        logger.info(f"Registered slot {slot} ({slot.kind.value})")
        return slot

    async def unregister_slot(self, slot_id: str) -> bool:
        """
        Stop watching a slot and discard its pending candidate.

        The slot and its versions stay in the store.

        Returns:
            True if the slot was registered
        """
        async with self._runtimes_lock:
            runtime = self.runtimes.pop(slot_id, None)
            if runtime is None:
                logger.warning(f"Slot not registered: {slot_id}")
                return False
            await self._stop_runtime(runtime)

        logger.info(f"Unregistered slot {runtime.slot}")
        return True

    async def _stop_runtime(self, runtime: SlotRuntime) -> None:
        if runtime.task and not runtime.task.done():
            runtime.task.cancel()
            try:
                await runtime.task
            except asyncio.CancelledError:
                pass
        if runtime.classifier:
            runtime.classifier.discard_pending()
        runtime.watcher = None
        runtime.state = SlotState.IDLE

    def _default_watcher_factory(self, slot: SaveSlot) -> PathWatcher:
        return PathWatcher(
            WatchTarget.for_slot(slot, self.settings.ignore_patterns),
            poll_interval=self.settings.poll_fallback_interval,
        )

    async def _run_slot(self, runtime: SlotRuntime) -> None:
        """
        Watch a slot; re-arm after the watch target disappears and comes back.

        A watcher that fails while its directory still exists is retried
        with exponential backoff, and the failure streak is reported once.
        """
        slot = runtime.slot
        loop = asyncio.get_running_loop()
        failures = 0

        while True:
            runtime.watcher = self._watcher_factory(slot)
            started = loop.time()
            try:
                terminal = await runtime.classifier.run(runtime.watcher.events())
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if loop.time() - started >= _MAX_REARM_DELAY:
                    failures = 0
                failures += 1
                detail = f"Watcher for {slot} failed: {e}"
                self._record_error(runtime, detail)
                if failures == 1:
                    logger.error(detail)
                    self.metrics.capture_failures += 1
                    self.bus.publish(CaptureFailed(slot_id=slot.id, reason=REASON_WATCH_FAILED, detail=detail))
                else:
                    logger.debug(f"{detail} (failure #{failures})")

                if slot.watch_dir.is_dir():
                    delay = min(self.settings.poll_fallback_interval * 2 ** (failures - 1), _MAX_REARM_DELAY)
                    await asyncio.sleep(delay)
                    continue
            else:
                failures = 0
                if terminal is None:
                    logger.debug(f"Event stream for slot {slot.id} ended")
                    return

            self._set_state(runtime, SlotState.UNAVAILABLE)
            self.bus.publish(SlotUnavailable(slot_id=slot.id, path=slot.watch_dir))
            logger.warning(f"Slot {slot.id} unavailable: {slot.watch_dir} is gone")

            while not slot.watch_dir.is_dir():
                await asyncio.sleep(self.settings.poll_fallback_interval)

            self._set_state(runtime, SlotState.IDLE)
            self.bus.publish(SlotAvailable(slot_id=slot.id, path=slot.watch_dir))
            logger.info(f"Slot {slot.id} available again; re-arming watcher")
            failures = 0

            # Content may have changed while the slot was unavailable
            runtime.classifier.request_evaluation()

    # ------------------------------------------------------------------
    # Capture pipeline
    # ------------------------------------------------------------------

    async def _handle_resolution(self, runtime: SlotRuntime, resolution: Resolution) -> None:
        slot_id = runtime.slot.id
        outcome = resolution.outcome

        if outcome == ResolutionOutcome.CAPTURED:
            try:
                await self.on_candidate_accepted(slot_id, resolution.payload, resolution.content_hash)
            except NotFoundError:
                logger.debug(f"Slot {slot_id} was removed while capturing")
            return

        if outcome == ResolutionOutcome.UNCHANGED:
            self.metrics.unchanged_skipped += 1
        elif outcome == ResolutionOutcome.SUPPRESSED:
            self.metrics.self_writes_suppressed += 1
            logger.debug(f"Slot {slot_id}: ignored our own restore write")
        elif outcome == ResolutionOutcome.ABSENT:
            self.metrics.content_absent += 1
            self.bus.publish(SlotContentAbsent(slot_id=slot_id, path=runtime.slot.root_path))
        elif outcome == ResolutionOutcome.FAILED:
            self.metrics.capture_failures += 1
            self._record_error(runtime, resolution.error)
            self.bus.publish(CaptureFailed(slot_id=slot_id, reason=REASON_READ_FAILED, detail=resolution.error))

        self._set_state(runtime, SlotState.IDLE)

    async def on_candidate_accepted(
        self,
        slot_id: str,
        payload: bytes,
        content_hash: str,
    ) -> Optional[SaveVersion]:
        """
        Persist an accepted candidate as a new version and apply retention.

        The persist runs in a shielded task: cancelling the caller never tears
        a transaction, and stop() waits for it.

        Returns:
            The new version, or None if nothing was stored (duplicate or failure)
        """
        if self.store is None:
            raise RuntimeError("Versioning engine is not running")
        task = asyncio.ensure_future(self._persist(slot_id, payload, content_hash))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def _persist(self, slot_id: str, payload: bytes, content_hash: str) -> Optional[SaveVersion]:
        store = self.store
        loop = asyncio.get_running_loop()

        async with self._slot_locks[slot_id]:
            runtime = self.runtimes.get(slot_id)

            try:
                active = await store.get_active_version(slot_id)
                if active is not None and active.content_hash == content_hash:
                    raise DuplicateContentError(slot_id, content_hash)

                self._set_state(runtime, SlotState.COMPRESSING)
                compressed = await loop.run_in_executor(self._executor, store.compressor.compress, payload)

                self._set_state(runtime, SlotState.PERSISTING)
                version = await store.append(slot_id, content_hash, compressed)
            except DuplicateContentError:
                self.metrics.unchanged_skipped += 1
                if runtime is not None:
                    runtime.classifier.active_hash = content_hash
                self._set_state(runtime, SlotState.IDLE)
                return None
            except zstd.ZstdError as e:
                self._capture_failed(runtime, slot_id, REASON_COMPRESSION_FAILED, f"Compression failed: {e}")
                return None
            except StorageFailure as e:
                self._capture_failed(runtime, slot_id, REASON_STORAGE_FAILED, str(e))
                return None

            evicted = await self._apply_retention(runtime, slot_id, version)

            self.metrics.versions_created += 1
            self.metrics.bytes_original += version.size_original
            self.metrics.bytes_compressed += version.size_compressed
            self.metrics.consecutive_errors = 0

            if runtime is not None:
                runtime.captures += 1
                runtime.last_error = None
                runtime.slot = runtime.slot.model_copy(update={
                    "active_version_id": version.version_id,
                    "last_capture_at": version.created_at,
                })
                runtime.classifier.active_hash = content_hash

            self.bus.publish(VersionCreated(
                slot_id=slot_id,
                version_id=version.version_id,
                content_hash=content_hash,
                size_original=version.size_original,
                size_compressed=version.size_compressed,
                evicted_version_ids=[v.version_id for v in evicted],
            ))
            logger.info(
                f"Captured {version} ({format_size(version.size_original)} -> "
                f"{format_size(version.size_compressed)}, {version.space_saved_percent:.0f}% saved)"
            )
            self._set_state(runtime, SlotState.IDLE)
            return version

    async def _apply_retention(
        self,
        runtime: Optional[SlotRuntime],
        slot_id: str,
        version: Optional[SaveVersion] = None,
    ) -> List[SaveVersion]:
        """
        Prune versions outside the keep-set; the newest version is always kept.

        A failed prune is retried once right away. If that fails too, the
        next capture or the next registration of the slot prunes again.
        """
        last_error: Optional[StorageFailure] = None
        for attempt in range(1, _RETENTION_ATTEMPTS + 1):
            try:
                versions = await self.store.list_versions(slot_id)
                if not versions:
                    return []
                keep = self.retention_policy.select_keep(versions, datetime.now())
                keep.add(versions[-1].version_id)
                if version is not None:
                    keep.add(version.version_id)
                evicted = await self.store.prune(slot_id, keep)
            except StorageFailure as e:
                last_error = e
                logger.warning(f"Retention for slot {slot_id} failed (attempt {attempt}): {e}")
                continue

            self.metrics.versions_evicted += len(evicted)
            return evicted

        self._record_error(runtime, str(last_error))
        return []

    def _capture_failed(self, runtime: Optional[SlotRuntime], slot_id: str, reason: str, detail: str) -> None:
        logger.error(f"Capture for slot {slot_id} failed ({reason}): {detail}")
        self.metrics.capture_failures += 1
        self._record_error(runtime, detail)
        self.bus.publish(CaptureFailed(slot_id=slot_id, reason=reason, detail=detail))
        self._set_state(runtime, SlotState.IDLE)

    # ------------------------------------------------------------------
    # Restore and user operations
    # ------------------------------------------------------------------

    async def restore_version(self, slot_id: str, version_id: int) -> SaveVersion:
        """
        Write a stored version back to the slot's location.

        The write is atomic and does not create a new version; the active
        version is unchanged.

        Raises:
            NotFoundError: unknown slot or version
            CorruptVersionError: stored blob is missing or damaged
            TransientIOError: the slot location could not be written
        """
        store = self._require_running()
        loop = asyncio.get_running_loop()

        async with self._slot_locks[slot_id]:
            slot = await store.get_slot(slot_id)
            version = await store.get_version(slot_id, version_id)
            payload = await store.read(slot_id, version_id)

            runtime = self.runtimes.get(slot_id)
            classifier = runtime.classifier if runtime is not None else None
            if classifier is not None:
                # The restore overwrites whatever the pending candidate saw
                classifier.discard_pending()
                classifier.suppress_next(version.content_hash)

            try:
                await loop.run_in_executor(self._executor, self.reader.write, slot, payload)
            except ValueError as e:
                if classifier is not None:
                    classifier.clear_guard()
                raise CorruptVersionError(slot_id, version_id, str(e)) from e
            except OSError as e:
                if classifier is not None:
                    classifier.clear_guard()
                raise TransientIOError(f"Failed to restore {slot.root_path}: {e}", str(slot.root_path)) from e

            if classifier is not None:
                classifier.self_write_completed()

        self.metrics.restores += 1
        self.bus.publish(VersionRestored(
            slot_id=slot_id,
            version_id=version_id,
            content_hash=version.content_hash,
        ))
        logger.info(f"Restored {version} to {slot.root_path}")
        return version

    async def export_version(self, slot_id: str, version_id: int, dest: Union[str, Path]) -> Path:
        """
        Write a decompressed copy of a version somewhere else.

        File slots export the save file's bytes; directory slots export their
        tar payload. An existing directory as `dest` receives a file named
        after the slot.

        Raises:
            TransientIOError: the written copy does not match the version's hash
        """
        store = self._require_running()
        slot = await store.get_slot(slot_id)
        version = await store.get_version(slot_id, version_id)
        payload = await store.read(slot_id, version_id)

        dest = Path(dest).expanduser()
        if dest.is_dir():
            suffix = ".tar" if slot.kind == SlotKind.DIRECTORY else ""
            dest = dest / f"{slot.root_path.name}.v{version_id}{suffix}"

        async with aiofiles.open(dest, 'wb') as f:
            await f.write(payload)

        written_hash = await asyncio.to_thread(hash_file, dest)
        if written_hash != version.content_hash:
            raise TransientIOError(f"Export to {dest} is incomplete (hash {written_hash[:8]})", str(dest))

        logger.info(f"Exported v{version_id} of {slot_id} to {dest} ({format_size(len(payload))})")
        return dest

    async def delete_version(self, slot_id: str, version_id: int) -> SaveVersion:
        """Explicitly delete one version (the active version moves to the newest remaining one)"""
        store = self._require_running()
        async with self._slot_locks[slot_id]:
            version = await store.delete_version(slot_id, version_id)
            active = await store.get_active_version(slot_id)

            runtime = self.runtimes.get(slot_id)
            if runtime is not None:
                runtime.classifier.active_hash = active.content_hash if active else None
                runtime.slot = runtime.slot.model_copy(
                    update={"active_version_id": active.version_id if active else None}
                )
        return version

    async def remove_slot(self, slot_id: str) -> int:
        """
        Explicit user removal: stop watching, delete all versions and blobs.

        Returns:
            Number of versions deleted
        """
        store = self._require_running()
        await self.unregister_slot(slot_id)
        async with self._slot_locks[slot_id]:
            deleted = await store.delete_slot(slot_id)
        self._slot_locks.pop(slot_id, None)
        return len(deleted)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_slot_status(self, slot_id: str) -> SlotStatus:
        """Read-only status of one slot (registered or only stored)"""
        store = self._require_running()
        slot = await store.get_slot(slot_id)
        versions = await store.list_versions(slot_id)
        runtime = self.runtimes.get(slot_id)

        active = next((v for v in versions if v.version_id == slot.active_version_id), None)
        return SlotStatus(
            slot_id=slot.id,
            root_path=slot.root_path,
            emulator_tag=slot.emulator_tag,
            kind=slot.kind,
            state=runtime.state if runtime else SlotState.IDLE,
            registered=runtime is not None,
            watch_mode=runtime.watch_mode if runtime else "none",
            active_version=active,
            version_count=len(versions),
            last_capture_time=slot.last_capture_at,
            last_error=runtime.last_error if runtime else None,
        )

    async def list_slots(self) -> List[SaveSlot]:
        return await self._require_running().list_slots()

    async def list_versions(self, slot_id: str) -> List[SaveVersion]:
        return await self._require_running().list_versions(slot_id)

    def get_status(self) -> Dict[str, Any]:
        """
        Get comprehensive status information about the engine.

        Returns:
            Dictionary with status information
        """
        if self.start_time and self.is_running:
            self.metrics.uptime_seconds = (datetime.now() - self.start_time).total_seconds()

        return {
            "is_running": self.is_running,
            "uptime_seconds": self.metrics.uptime_seconds,
            "slots_count": len(self.runtimes),
            "worker_count": self.settings.worker_count,
            "inflight_captures": len(self._inflight),
            "versions_created": self.metrics.versions_created,
            "unchanged_skipped": self.metrics.unchanged_skipped,
            "self_writes_suppressed": self.metrics.self_writes_suppressed,
            "capture_failures": self.metrics.capture_failures,
            "versions_evicted": self.metrics.versions_evicted,
            "restores": self.metrics.restores,
            "bytes_original": self.metrics.bytes_original,
            "bytes_compressed": self.metrics.bytes_compressed,
            "consecutive_errors": self.metrics.consecutive_errors,
            "last_error": self.metrics.last_error_message,
            "last_error_time": self.metrics.last_error_time.isoformat() if self.metrics.last_error_time else None,
            "slots": {
                slot_id: {
                    "root_path": str(runtime.slot.root_path),
                    "state": runtime.state.value,
                    "watch_mode": runtime.watch_mode,
                    "captures": runtime.captures,
                    "last_error": runtime.last_error,
                }
                for slot_id, runtime in self.runtimes.items()
            },
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _set_state(self, runtime: Optional[SlotRuntime], state: SlotState) -> None:
        if runtime is None or runtime.state == state:
            return
        logger.debug(f"Slot {runtime.slot.id}: {runtime.state.value} -> {state.value}")
        runtime.state = state

    def _record_error(self, runtime: Optional[SlotRuntime], message: Optional[str]) -> None:
        self.metrics.consecutive_errors += 1
        self.metrics.last_error_message = message
        self.metrics.last_error_time = datetime.now()
        if runtime is not None:
            runtime.last_error = message

    async def __aenter__(self):
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.stop()
