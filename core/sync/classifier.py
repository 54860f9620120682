"""
Change Classifier.

Collapses bursts of raw change events for one slot into a single candidate
(debounce), then reads the slot's content and decides whether it is a new
version, an unchanged rewrite, one of our own restore writes, or absent.

Timer state is an explicit deadline value and the clock is injectable, so
`observe`, `is_due` and `resolve` can be driven with a simulated clock.
`run` is the scheduler loop used by the engine: it waits for whichever comes
first, the next raw event or the pending deadline.
"""

import asyncio
import logging
import time
from collections import Counter
from concurrent.futures import Executor
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple

from ..errors import TransientIOError
from ..models.versions import SaveSlot, SlotState
from ..storage.hasher import compute_content_hash
from ..storage.snapshot import SnapshotReader
from .events import ChangeKind, RawChangeEvent

logger = logging.getLogger(__name__)

_END = object()
_WAKE = object()


class ResolutionOutcome(Enum):
    """What a resolved candidate turned out to be"""
    CAPTURED = "captured"             # new content, hand to the engine
    UNCHANGED = "unchanged"           # same hash as the active version
    SUPPRESSED = "suppressed"         # our own restore write
    ABSENT = "absent"                 # nothing to read
    FAILED = "failed"                 # reads kept failing
    NOTHING_PENDING = "nothing_pending"


@dataclass
class PendingCandidate:
    """Debounce accumulator for one slot"""
    first_seen: float
    last_seen: float
    deadline: float
    event_count: int = 0
    last_kind: Optional[ChangeKind] = None


@dataclass
class Resolution:
    outcome: ResolutionOutcome
    payload: Optional[bytes] = None
    content_hash: Optional[str] = None
    error: Optional[str] = None
    event_count: int = 0
    attempts: int = 0


ResolutionHandler = Callable[[Resolution], Awaitable[None]]
StateListener = Callable[[SlotState], None]


class ChangeClassifier:
    """Per-slot debounce and dedup"""

    def __init__(
        self,
        slot: SaveSlot,
        reader: SnapshotReader,
        debounce_window: float = 1.5,
        read_max_attempts: int = 3,
        read_backoff_base: float = 0.25,
        executor: Optional[Executor] = None,
        clock: Callable[[], float] = time.monotonic,
        handler: Optional[ResolutionHandler] = None,
        on_state: Optional[StateListener] = None,
        active_hash: Optional[str] = None,
    ):
        self.slot = slot
        self.reader = reader
        self.debounce_window = debounce_window
        self.read_max_attempts = read_max_attempts
        self.read_backoff_base = read_backoff_base
        self._executor = executor
        self._clock = clock
        self._handler = handler
        self._on_state = on_state

        # Hash of the slot's active version; the engine keeps it current
        self.active_hash = active_hash

        self.pending: Optional[PendingCandidate] = None
        self._suppressed_hash: Optional[str] = None
        self._guard_written_at: Optional[float] = None
        self._inbox: Optional[asyncio.Queue] = None

        # Metrics
        self.events_observed = 0
        self.read_failures = 0
        self.outcomes: Counter = Counter()

    # ------------------------------------------------------------------
    # Debounce state
    # ------------------------------------------------------------------

    def observe(self, event: RawChangeEvent, now: Optional[float] = None) -> PendingCandidate:
        """Fold a raw event into the pending candidate, pushing its deadline out"""
        now = self._clock() if now is None else now
        self.events_observed += 1

        if self.pending is None:
            self.pending = PendingCandidate(first_seen=now, last_seen=now, deadline=now + self.debounce_window)
            self._set_state(SlotState.AWAITING_QUIET)
        else:
            self.pending.last_seen = now
            self.pending.deadline = now + self.debounce_window

        self.pending.event_count += 1
        self.pending.last_kind = event.kind
        logger.debug(f"Slot {self.slot.id}: {event} (#{self.pending.event_count} in window)")
        return self.pending

    def is_due(self, now: Optional[float] = None) -> bool:
        if self.pending is None:
            return False
        now = self._clock() if now is None else now
        return now >= self.pending.deadline

    def time_until_due(self, now: Optional[float] = None) -> Optional[float]:
        if self.pending is None:
            return None
        now = self._clock() if now is None else now
        return max(0.0, self.pending.deadline - now)

    def discard_pending(self) -> None:
        if self.pending is not None:
            logger.debug(f"Slot {self.slot.id}: discarded pending candidate ({self.pending.event_count} events)")
        self.pending = None

    def request_evaluation(self) -> None:
        """Make the slot due immediately (used for capture on registration)"""
        now = self._clock()
        if self.pending is None:
            self.pending = PendingCandidate(first_seen=now, last_seen=now, deadline=now)
        else:
            self.pending.deadline = min(self.pending.deadline, now)
        if self._inbox is not None:
            self._inbox.put_nowait(_WAKE)

    def suppress_next(self, content_hash: str) -> None:
        """
        Arm the self-write guard.

        The next resolution whose hash equals `content_hash` is dropped. The
        guard stays armed until such a resolution happens, or until a
        resolution that started after `self_write_completed()` reads other
        content. Resolutions already under way when the write lands can have
        read the old bytes and leave the guard alone.
        """
        self._suppressed_hash = content_hash
        self._guard_written_at = None

    def self_write_completed(self) -> None:
        """Record that the guarded write has landed on disk"""
        if self._suppressed_hash is not None:
            self._guard_written_at = self._clock()

    def clear_guard(self) -> None:
        self._suppressed_hash = None
        self._guard_written_at = None

    def _settle_guard(self, resolution: Resolution, started: float) -> None:
        if self._suppressed_hash is None:
            return
        if resolution.outcome == ResolutionOutcome.SUPPRESSED:
            self.clear_guard()
        elif resolution.outcome == ResolutionOutcome.FAILED:
            return
        elif self._guard_written_at is not None and started >= self._guard_written_at:
            logger.debug(f"Slot {self.slot.id}: restored content was replaced; guard cleared")
            self.clear_guard()

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(self) -> Resolution:
        """Read and classify the pending candidate, then hand the result to the handler"""
        candidate = self.pending
        self.pending = None
        if candidate is None:
            return Resolution(ResolutionOutcome.NOTHING_PENDING)

        started = self._clock()
        self._set_state(SlotState.READING)

        try:
            snapshot, attempts = await self._read_with_retry()
        except TransientIOError as e:
            resolution = Resolution(
                ResolutionOutcome.FAILED,
                error=str(e),
                event_count=candidate.event_count,
                attempts=self.read_max_attempts,
            )
        else:
            resolution = self._classify(snapshot, self._suppressed_hash, candidate, attempts)

        self._settle_guard(resolution, started)
        self.outcomes[resolution.outcome] += 1
        logger.debug(
            f"Slot {self.slot.id}: resolved {candidate.event_count} events as {resolution.outcome.value}"
        )

        if self._handler is not None:
            await self._handler(resolution)
        return resolution

    def _classify(
        self,
        snapshot: Optional[Tuple[bytes, str]],
        guard: Optional[str],
        candidate: PendingCandidate,
        attempts: int,
    ) -> Resolution:
        if snapshot is None:
            return Resolution(ResolutionOutcome.ABSENT, event_count=candidate.event_count, attempts=attempts)

        payload, content_hash = snapshot
        if guard is not None and content_hash == guard:
            outcome = ResolutionOutcome.SUPPRESSED
        elif content_hash == self.active_hash:
            outcome = ResolutionOutcome.UNCHANGED
        else:
            return Resolution(
                ResolutionOutcome.CAPTURED,
                payload=payload,
                content_hash=content_hash,
                event_count=candidate.event_count,
                attempts=attempts,
            )
        return Resolution(outcome, content_hash=content_hash, event_count=candidate.event_count, attempts=attempts)

    def _read_and_hash(self) -> Optional[Tuple[bytes, str]]:
        payload = self.reader.read(self.slot)
        if payload is None:
            return None
        return payload, compute_content_hash(payload)

    async def _read_with_retry(self) -> Tuple[Optional[Tuple[bytes, str]], int]:
        loop = asyncio.get_running_loop()
        last_error: Optional[TransientIOError] = None

        for attempt in range(self.read_max_attempts):
            try:
                snapshot = await loop.run_in_executor(self._executor, self._read_and_hash)
                return snapshot, attempt + 1
            except TransientIOError as e:
                last_error = e
                self.read_failures += 1
                if attempt + 1 < self.read_max_attempts:
                    delay = self.read_backoff_base * (2 ** attempt)
                    logger.debug(f"Slot {self.slot.id}: read failed ({e}), retrying in {delay:.2f}s")
                    await asyncio.sleep(delay)

        logger.warning(f"Slot {self.slot.id}: giving up after {self.read_max_attempts} read attempts: {last_error}")
        raise last_error

    # ------------------------------------------------------------------
    # Scheduler loop
    # ------------------------------------------------------------------

    async def run(self, events: AsyncIterator[RawChangeEvent]) -> Optional[RawChangeEvent]:
        """
        Consume raw events until the stream ends.

        Returns:
            The terminal UNAVAILABLE event, or None if the stream simply ended
        """
        self._inbox = asyncio.Queue()
        pump = asyncio.create_task(self._pump(events, self._inbox))

        try:
            while True:
                timeout = self.time_until_due()
                try:
                    item = await asyncio.wait_for(self._inbox.get(), timeout)
                except asyncio.TimeoutError:
                    if self.is_due():
                        await self.resolve()
                    continue

                if item is _WAKE:
                    continue
                if item is _END:
                    return None
                if isinstance(item, BaseException):
                    raise item
                if item.is_terminal:
                    self.discard_pending()
                    return item
                self.observe(item)
        finally:
            self._inbox = None
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass

    @staticmethod
    async def _pump(events: AsyncIterator[RawChangeEvent], inbox: asyncio.Queue) -> None:
        try:
            async for event in events:
                inbox.put_nowait(event)
        except Exception as e:
            inbox.put_nowait(e)
            return
        finally:
            aclose = getattr(events, 'aclose', None)
            if aclose is not None:
                await aclose()
        inbox.put_nowait(_END)

    def _set_state(self, state: SlotState) -> None:
        if self._on_state is not None:
            self._on_state(state)

    def get_status(self) -> Dict[str, Any]:
        return {
            "pending": self.pending is not None,
            "pending_events": self.pending.event_count if self.pending else 0,
            "guard_armed": self._suppressed_hash is not None,
            "events_observed": self.events_observed,
            "read_failures": self.read_failures,
            "outcomes": {outcome.value: count for outcome, count in self.outcomes.items()},
        }
