"""
Save Change Detection and Versioning.

Turns raw filesystem events on registered save slots into an ordered,
deduplicated, retention-bounded sequence of stored versions.

Key Components:
- DeterministicSlotId: Stable slot identification from emulator tag and path
- RawChangeEvent / lifecycle events: Event models flowing in and out
- PathWatcher: Native notifications with a polling fallback
- ChangeClassifier: Per-slot debounce and hash dedup
- RetentionPolicy: Pure keep-set selection
- LifecycleEventBus: Fan-out of lifecycle events to collaborators
- VersioningEngine: Central coordinator
"""

from .deterministic import DeterministicSlotId
from .events import (
    ChangeKind,
    RawChangeEvent,
    LifecycleEvent,
    LifecycleEventType,
    VersionCreated,
    CaptureFailed,
    SlotUnavailable,
    SlotAvailable,
    VersionRestored,
    SlotContentAbsent,
)
from .bus import LifecycleEventBus, EventSubscription
from .watcher import PathWatcher, WatchTarget, WatchBackend, NativeWatchBackend, PollingWatchBackend
from .classifier import ChangeClassifier, PendingCandidate, Resolution, ResolutionOutcome
from .retention import (
    RetentionPolicy,
    KeepLatestPolicy,
    KeepFirstAndLatestPolicy,
    MaxAgePolicy,
    build_retention_policy,
)
from .engine import VersioningEngine, EngineMetrics, SlotRuntime

__all__ = [
    "DeterministicSlotId",
    "ChangeKind",
    "RawChangeEvent",
    "LifecycleEvent",
    "LifecycleEventType",
    "VersionCreated",
    "CaptureFailed",
    "SlotUnavailable",
    "SlotAvailable",
    "VersionRestored",
    "SlotContentAbsent",
    "LifecycleEventBus",
    "EventSubscription",
    "PathWatcher",
    "WatchTarget",
    "WatchBackend",
    "NativeWatchBackend",
    "PollingWatchBackend",
    "ChangeClassifier",
    "PendingCandidate",
    "Resolution",
    "ResolutionOutcome",
    "RetentionPolicy",
    "KeepLatestPolicy",
    "KeepFirstAndLatestPolicy",
    "MaxAgePolicy",
    "build_retention_policy",
    "VersioningEngine",
    "EngineMetrics",
    "SlotRuntime",
]
