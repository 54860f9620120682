"""
Change and Lifecycle Event Models.

Raw change events flow from the path watcher into the change classifier.
Lifecycle events flow from the engine to UI collaborators through the
lifecycle event bus.
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator
import uuid


class ChangeKind(Enum):
    """Kinds of raw filesystem change"""
    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"
    UNAVAILABLE = "unavailable"   # watch target vanished; terminal


class RawChangeEvent(BaseModel):
    """
    A raw filesystem change as reported by a watch backend.

    Delivery is at-least-once: duplicates are expected and collapse in the
    classifier's debounce window.
    """
    model_config = ConfigDict(frozen=True)

    path: Path
    kind: ChangeKind
    observed_at: float = 0.0   # monotonic clock

    @field_validator('path')
    @classmethod
    def validate_path(cls, v: Path) -> Path:
        """Ensure path is absolute"""
        if not v.is_absolute():
            raise ValueError('Event path must be absolute')
        return v

    @property
    def is_terminal(self) -> bool:
        return self.kind == ChangeKind.UNAVAILABLE

    def __str__(self) -> str:
        return f"{self.kind.value.upper()}: {self.path}"


class LifecycleEventType(Enum):
    """Outbound lifecycle notifications"""
    VERSION_CREATED = "version_created"
    CAPTURE_FAILED = "capture_failed"
    SLOT_UNAVAILABLE = "slot_unavailable"
    VERSION_RESTORED = "version_restored"
    SLOT_CONTENT_ABSENT = "slot_content_absent"
    SLOT_AVAILABLE = "slot_available"


class LifecycleEvent(BaseModel):
    """Base lifecycle event; `sequence` increases monotonically per slot"""
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: LifecycleEventType
    slot_id: str
    sequence: int = Field(default=0, ge=0)
    timestamp: datetime = Field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization"""
        data = self.model_dump(mode='json')
        data["event_type"] = self.event_type.value
        return data

    def __str__(self) -> str:
        return f"{self.event_type.value} slot={self.slot_id} #{self.sequence}"


class VersionCreated(LifecycleEvent):
    event_type: LifecycleEventType = LifecycleEventType.VERSION_CREATED
    version_id: int
    content_hash: str
    size_original: int
    size_compressed: int
    evicted_version_ids: list[int] = Field(default_factory=list)


class CaptureFailed(LifecycleEvent):
    """A capture attempt ended without a version; the slot keeps running"""
    event_type: LifecycleEventType = LifecycleEventType.CAPTURE_FAILED
    reason: str
    detail: Optional[str] = None


class SlotUnavailable(LifecycleEvent):
    event_type: LifecycleEventType = LifecycleEventType.SLOT_UNAVAILABLE
    path: Path


class SlotAvailable(LifecycleEvent):
    event_type: LifecycleEventType = LifecycleEventType.SLOT_AVAILABLE
    path: Path


class VersionRestored(LifecycleEvent):
    event_type: LifecycleEventType = LifecycleEventType.VERSION_RESTORED
    version_id: int
    content_hash: str


class SlotContentAbsent(LifecycleEvent):
    """Informational: a change resolved while the slot had no content"""
    event_type: LifecycleEventType = LifecycleEventType.SLOT_CONTENT_ABSENT
    path: Path


# Reasons carried by CaptureFailed
REASON_READ_FAILED = "read_failed"
REASON_STORAGE_FAILED = "storage_failed"
REASON_COMPRESSION_FAILED = "compression_failed"
REASON_WATCH_FAILED = "watch_failed"
