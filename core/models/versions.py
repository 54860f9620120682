"""
Save slot and version models.

Defines the durable records owned by the version store (slots and their
retained versions) plus the read-only status view handed to collaborators.
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator, computed_field


class SlotKind(Enum):
    """What a slot's root path points at"""
    FILE = "file"
    DIRECTORY = "directory"

    @classmethod
    def infer(cls, root_path: Path) -> 'SlotKind':
        """Infer kind from the filesystem, falling back to the name for missing paths"""
        if root_path.is_dir():
            return cls.DIRECTORY
        if root_path.exists() or root_path.suffix:
            return cls.FILE
        return cls.DIRECTORY


class SlotState(Enum):
    """Per-slot pipeline state"""
    IDLE = "idle"
    AWAITING_QUIET = "awaiting_quiet"   # debounce timer running
    READING = "reading"
    COMPRESSING = "compressing"
    PERSISTING = "persisting"
    UNAVAILABLE = "unavailable"         # watch target removed


class SaveSlot(BaseModel):
    """One monitored save file or save directory"""
    model_config = ConfigDict(validate_assignment=True)

    id: str
    root_path: Path
    emulator_tag: str
    kind: SlotKind = SlotKind.FILE
    active_version_id: Optional[int] = None
    created_at: datetime = Field(default_factory=datetime.now)
    last_capture_at: Optional[datetime] = None

    @field_validator('root_path')
    @classmethod
    def validate_root_path(cls, v: Path) -> Path:
        """Slot roots are always stored absolute"""
        if not v.is_absolute():
            raise ValueError('Slot root path must be absolute')
        return v

    @field_validator('emulator_tag')
    @classmethod
    def validate_emulator_tag(cls, v: str) -> str:
        if not v.strip():
            raise ValueError('Emulator tag cannot be empty')
        return v.strip()

    @property
    def watch_dir(self) -> Path:
        """Directory the watcher subscribes to"""
        return self.root_path if self.kind == SlotKind.DIRECTORY else self.root_path.parent

    def __str__(self) -> str:
        return f"{self.emulator_tag}:{self.root_path} [{self.id}]"


class SaveVersion(BaseModel):
    """
    One retained snapshot of a slot.

    Immutable once created; `content_hash` is computed over the uncompressed
    payload so identical saves hash identically regardless of codec or level.
    """
    model_config = ConfigDict(frozen=True)

    slot_id: str
    version_id: int = Field(ge=1)
    content_hash: str
    blob_ref: str
    codec: str
    size_original: int = Field(ge=0)
    size_compressed: int = Field(ge=0)
    created_at: datetime = Field(default_factory=datetime.now)

    @computed_field
    @property
    def compression_ratio(self) -> float:
        """Compressed size over original size (1.0 for empty payloads)"""
        if self.size_original == 0:
            return 1.0
        return self.size_compressed / self.size_original

    @property
    def space_saved_percent(self) -> float:
        if self.size_original == 0:
            return 0.0
        return (self.size_original - self.size_compressed) / self.size_original * 100.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization"""
        return {
            "slot_id": self.slot_id,
            "version_id": self.version_id,
            "content_hash": self.content_hash,
            "blob_ref": self.blob_ref,
            "codec": self.codec,
            "size_original": self.size_original,
            "size_compressed": self.size_compressed,
            "created_at": self.created_at.isoformat(),
        }

    def __str__(self) -> str:
        return f"v{self.version_id} of {self.slot_id} ({self.content_hash[:12]})"


class SlotStatus(BaseModel):
    """Read-only slot status for UI collaborators"""

    slot_id: str
    root_path: Path
    emulator_tag: str
    kind: SlotKind
    state: SlotState
    registered: bool = False
    watch_mode: str = "none"
    active_version: Optional[SaveVersion] = None
    version_count: int = 0
    last_capture_time: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "root_path": str(self.root_path),
            "emulator_tag": self.emulator_tag,
            "kind": self.kind.value,
            "state": self.state.value,
            "registered": self.registered,
            "watch_mode": self.watch_mode,
            "active_version": self.active_version.version_id if self.active_version else None,
            "version_count": self.version_count,
            "last_capture_time": self.last_capture_time.isoformat() if self.last_capture_time else None,
            "last_error": self.last_error,
        }
