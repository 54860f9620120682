"""
Save Path Watcher.

Turns filesystem activity under a slot's root into a lazy stream of
RawChangeEvent. Two backends share one capability: native notifications via
watchdog, and periodic mtime/size polling. PathWatcher picks native first,
falls back to polling when native notifications cannot be established, and
restarts in polling mode when a native observer dies mid-stream.
"""

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Dict, Optional, Sequence, Tuple

from watchdog.observers import Observer
from watchdog.events import (
    FileSystemEventHandler,
    FileSystemEvent as WatchdogEvent,
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
)

from ..models.versions import SaveSlot, SlotKind
from ..storage.snapshot import TEMP_SUFFIX
from ..storage.utils import is_ignored
from .events import ChangeKind, RawChangeEvent

logger = logging.getLogger(__name__)

# Emitted by inotify after a write handle is closed
EVENT_TYPE_CLOSED = "closed"

WATCH_MODE_NATIVE = "native"
WATCH_MODE_POLLING = "polling"


@dataclass(frozen=True)
class WatchTarget:
    """What a subscription watches: one save file or one save directory"""
    root_path: Path
    kind: SlotKind
    ignore_patterns: Tuple[str, ...] = ()

    @classmethod
    def for_slot(cls, slot: SaveSlot, ignore_patterns: Sequence[str] = ()) -> 'WatchTarget':
        return cls(
            root_path=Path(os.path.realpath(slot.root_path)),
            kind=slot.kind,
            ignore_patterns=tuple(ignore_patterns) + (f"*{TEMP_SUFFIX}",),
        )

    @property
    def watch_dir(self) -> Path:
        return self.root_path if self.kind == SlotKind.DIRECTORY else self.root_path.parent

    @property
    def recursive(self) -> bool:
        return self.kind == SlotKind.DIRECTORY

    def in_scope(self, path: Path) -> bool:
        """True if a change at `path` can affect the slot's content"""
        if is_ignored(path.name, self.ignore_patterns):
            return False
        if self.kind == SlotKind.FILE:
            return path == self.root_path
        return path != self.root_path and self.root_path in path.parents


class WatchSubscription(ABC):
    """Handle for one active subscription; events arrive on `queue`"""

    mode: str = ""

    def __init__(self, target: WatchTarget):
        self.target = target
        self.queue: asyncio.Queue = asyncio.Queue()
        self.started_at = time.monotonic()

    def emit(self, path: Path, kind: ChangeKind) -> None:
        self.queue.put_nowait(RawChangeEvent(path=path, kind=kind, observed_at=time.monotonic()))

    @abstractmethod
    def is_healthy(self) -> bool:
        """False once the subscription can no longer deliver events"""


class WatchBackend(ABC):
    """Capability producing change notifications for a WatchTarget"""

    mode: str = ""

    @abstractmethod
    async def subscribe(self, target: WatchTarget) -> WatchSubscription:
        """
        Start watching a target.

        Raises:
            OSError: notifications cannot be established
        """

    @abstractmethod
    async def unsubscribe(self, subscription: WatchSubscription) -> None:
        """Stop a subscription and release its resources"""


# ----------------------------------------------------------------------
# Native backend (watchdog)
# ----------------------------------------------------------------------

class _NativeSubscription(WatchSubscription):
    mode = WATCH_MODE_NATIVE

    def __init__(self, target: WatchTarget):
        super().__init__(target)
        self.observer: Optional[Observer] = None
        self.handler: Optional['SaveEventHandler'] = None

    def is_healthy(self) -> bool:
        return (
            self.observer is not None
            and self.observer.is_alive()
            and self.target.watch_dir.is_dir()
        )


class SaveEventHandler(FileSystemEventHandler):
    """
    Watchdog handler forwarding in-scope changes to a subscription.

    Watchdog calls this from its observer thread; events are handed to the
    event loop with call_soon_threadsafe.
    """

    def __init__(self, subscription: _NativeSubscription, loop: asyncio.AbstractEventLoop):
        super().__init__()
        self.subscription = subscription
        self._event_loop: Optional[asyncio.AbstractEventLoop] = loop

    def detach(self) -> None:
        self._event_loop = None

    def on_any_event(self, event: WatchdogEvent) -> None:
        changes = self.convert(event)
        if not changes:
            return

        loop = self._event_loop
        if loop is None or loop.is_closed():
            logger.debug(f"No event loop available, dropping event: {event}")
            return

        for path, kind in changes:
            try:
                loop.call_soon_threadsafe(self.subscription.emit, path, kind)
            except RuntimeError as e:
                # Loop closing during shutdown
                logger.debug(f"Failed to schedule event on loop: {e}")
                return

    def convert(self, event: WatchdogEvent) -> list[tuple[Path, ChangeKind]]:
        """Translate one watchdog event into (path, kind) pairs"""
        target = self.subscription.target
        src_path = Path(os.fsdecode(event.src_path))

        if event.is_directory:
            if src_path == target.watch_dir and event.event_type in (EVENT_TYPE_DELETED, EVENT_TYPE_MOVED):
                return [(src_path, ChangeKind.UNAVAILABLE)]
            # Subdirectory churn inside a directory slot changes its content
            if target.recursive and event.event_type != EVENT_TYPE_MODIFIED and target.in_scope(src_path):
                return [(src_path, ChangeKind.MODIFIED)]
            return []

        if event.event_type == EVENT_TYPE_MOVED:
            dest_path = Path(os.fsdecode(event.dest_path))
            changes = []
            if target.in_scope(src_path):
                changes.append((src_path, ChangeKind.REMOVED))
            if target.in_scope(dest_path):
                changes.append((dest_path, ChangeKind.CREATED))
            return changes

        kind = {
            EVENT_TYPE_CREATED: ChangeKind.CREATED,
            EVENT_TYPE_MODIFIED: ChangeKind.MODIFIED,
            EVENT_TYPE_CLOSED: ChangeKind.MODIFIED,
            EVENT_TYPE_DELETED: ChangeKind.REMOVED,
        }.get(event.event_type)

        if kind is None or not target.in_scope(src_path):
            return []
        return [(src_path, kind)]


class NativeWatchBackend(WatchBackend):
    """OS notifications through a watchdog Observer"""

    mode = WATCH_MODE_NATIVE

    def __init__(self, join_timeout: float = 5.0):
        self.join_timeout = join_timeout

    async def subscribe(self, target: WatchTarget) -> WatchSubscription:
        if not target.watch_dir.is_dir():
            raise FileNotFoundError(f"Watch directory does not exist: {target.watch_dir}")

        subscription = _NativeSubscription(target)
        handler = SaveEventHandler(subscription, asyncio.get_running_loop())
        observer = Observer()

        try:
            observer.schedule(handler, str(target.watch_dir), recursive=target.recursive)
            observer.start()
        except OSError:
            handler.detach()
            if observer.is_alive():
                observer.stop()
            raise

        subscription.observer = observer
        subscription.handler = handler
        logger.debug(f"Native watch on {target.watch_dir} (recursive={target.recursive})")
        return subscription

    async def unsubscribe(self, subscription: WatchSubscription) -> None:
        if not isinstance(subscription, _NativeSubscription) or subscription.observer is None:
            return

        if subscription.handler:
            subscription.handler.detach()

        observer = subscription.observer
        subscription.observer = None
        try:
            observer.stop()
            await asyncio.to_thread(observer.join, self.join_timeout)
        except (OSError, RuntimeError) as e:
            logger.warning(f"Error stopping observer: {e}")


# ----------------------------------------------------------------------
# Polling backend
# ----------------------------------------------------------------------

FileState = Tuple[int, int]   # (mtime_ns, size)


class _PollingSubscription(WatchSubscription):
    mode = WATCH_MODE_POLLING

    def __init__(self, target: WatchTarget):
        super().__init__(target)
        self.task: Optional[asyncio.Task] = None

    def is_healthy(self) -> bool:
        return self.task is not None and not self.task.done()


class PollingWatchBackend(WatchBackend):
    """
    Periodic mtime/size snapshots diffed every `interval` seconds.

    Tolerates a missing target: files appearing later are reported as
    created. Only a watch directory that existed and then vanished yields
    the terminal unavailable event.
    """

    mode = WATCH_MODE_POLLING

    def __init__(self, interval: float = 2.0):
        self.interval = interval

    async def subscribe(self, target: WatchTarget) -> WatchSubscription:
        subscription = _PollingSubscription(target)
        try:
            initial = await asyncio.to_thread(self.scan, target)
        except OSError as e:
            # Unreadable for now; the first successful scan reports what is there
            logger.warning(f"Initial scan of {target.watch_dir} failed: {e}")
            initial = {}
        subscription.task = asyncio.create_task(self._poll(subscription, initial))
        logger.debug(f"Polling {target.watch_dir} every {self.interval}s")
        return subscription

    async def unsubscribe(self, subscription: WatchSubscription) -> None:
        if not isinstance(subscription, _PollingSubscription) or subscription.task is None:
            return
        task = subscription.task
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @staticmethod
    def scan(target: WatchTarget) -> Optional[Dict[Path, FileState]]:
        """
        Snapshot in-scope files.

        Returns:
            {path: (mtime_ns, size)}, or None when the watch directory is missing

        Raises:
            OSError: a file slot's save file cannot be inspected (permission
                denied and the like); unreadable files of a directory slot are
                skipped instead
        """
        if not target.watch_dir.is_dir():
            return None

        if target.kind == SlotKind.FILE:
            try:
                stat = target.root_path.stat()
            except FileNotFoundError:
                return {}
            return {target.root_path: (stat.st_mtime_ns, stat.st_size)}

        states: Dict[Path, FileState] = {}
        for dirpath, dirnames, filenames in os.walk(target.root_path):
            dirnames[:] = [d for d in dirnames if not is_ignored(d, target.ignore_patterns)]
            for name in filenames:
                path = Path(dirpath) / name
                if not target.in_scope(path):
                    continue
                try:
                    stat = path.stat()
                except FileNotFoundError:
                    continue
                except OSError as e:
                    logger.debug(f"Skipping {path}: {e}")
                    continue
                states[path] = (stat.st_mtime_ns, stat.st_size)
        return states

    @staticmethod
    def diff(
        previous: Dict[Path, FileState],
        current: Dict[Path, FileState],
    ) -> list[tuple[Path, ChangeKind]]:
        changes = []
        for path, state in current.items():
            if path not in previous:
                changes.append((path, ChangeKind.CREATED))
            elif previous[path] != state:
                changes.append((path, ChangeKind.MODIFIED))
        for path in previous:
            if path not in current:
                changes.append((path, ChangeKind.REMOVED))
        return sorted(changes, key=lambda change: str(change[0]))

    async def _poll(self, subscription: _PollingSubscription, initial: Optional[Dict[Path, FileState]]) -> None:
        target = subscription.target
        previous = initial or {}
        dir_seen = initial is not None

        while True:
            await asyncio.sleep(self.interval)
            try:
                current = await asyncio.to_thread(self.scan, target)
            except OSError as e:
                logger.warning(f"Polling scan of {target.watch_dir} failed: {e}")
                continue

            if current is None:
                if dir_seen:
                    subscription.emit(target.watch_dir, ChangeKind.UNAVAILABLE)
                    return
                continue

            dir_seen = True
            for path, kind in self.diff(previous, current):
                subscription.emit(path, kind)
            previous = current


# ----------------------------------------------------------------------
# Public watcher
# ----------------------------------------------------------------------

class PathWatcher:
    """
    Stream of raw change events for one slot.

    Callers only see `events()`; backend selection, fallback and restarts
    happen inside.
    """

    def __init__(
        self,
        target: WatchTarget,
        poll_interval: float = 2.0,
        use_native: bool = True,
        native_backend: Optional[WatchBackend] = None,
        polling_backend: Optional[WatchBackend] = None,
    ):
        self.target = target
        self.poll_interval = poll_interval
        self.use_native = use_native
        self.native_backend = native_backend or NativeWatchBackend()
        self.polling_backend = polling_backend or PollingWatchBackend(poll_interval)

        self._subscription: Optional[WatchSubscription] = None
        self._backend: Optional[WatchBackend] = None
        self.fallback_count = 0
        self.events_emitted = 0

    @property
    def mode(self) -> str:
        return self._subscription.mode if self._subscription else "none"

    async def _subscribe(self, prefer_native: bool) -> None:
        if prefer_native:
            try:
                self._subscription = await self.native_backend.subscribe(self.target)
                self._backend = self.native_backend
                return
            except OSError as e:
                self.fallback_count += 1
                logger.warning(
                    f"Native notifications unavailable for {self.target.watch_dir} ({e}); "
                    f"falling back to polling every {self.poll_interval}s"
                )

        self._subscription = await self.polling_backend.subscribe(self.target)
        self._backend = self.polling_backend

    async def _release(self) -> None:
        if self._subscription and self._backend:
            await self._backend.unsubscribe(self._subscription)
        self._subscription = None
        self._backend = None

    async def events(self) -> AsyncIterator[RawChangeEvent]:
        """
        Yield change events until the watch target becomes unavailable.

        The final event of a finished stream is always UNAVAILABLE.
        """
        await self._subscribe(self.use_native)
        logger.info(f"Watching {self.target.root_path} ({self.mode})")

        try:
            while True:
                try:
                    event = await asyncio.wait_for(self._subscription.queue.get(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    await self._check_health()
                    if self._subscription is None:
                        yield RawChangeEvent(
                            path=self.target.watch_dir,
                            kind=ChangeKind.UNAVAILABLE,
                            observed_at=time.monotonic(),
                        )
                        return
                    continue

                self.events_emitted += 1
                yield event
                if event.is_terminal:
                    logger.info(f"Watch target {self.target.watch_dir} is unavailable")
                    return
        finally:
            await self._release()

    async def _check_health(self) -> None:
        """Restart a dead subscription in polling mode, or release it if the target is gone"""
        # Queued events are drained before a dead subscription is replaced
        if self._subscription.is_healthy() or not self._subscription.queue.empty():
            return

        await self._release()

        if not self.target.watch_dir.is_dir():
            return

        logger.warning(f"Watch on {self.target.watch_dir} stopped; restarting in polling mode")
        self.fallback_count += 1
        await self._subscribe(prefer_native=False)

    def get_status(self) -> Dict[str, object]:
        return {
            "root_path": str(self.target.root_path),
            "kind": self.target.kind.value,
            "mode": self.mode,
            "fallback_count": self.fallback_count,
            "events_emitted": self.events_emitted,
        }
