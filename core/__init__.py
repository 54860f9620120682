"""
savevault core package

Change detection and versioning engine for emulator save data.
"""

__version__ = "1.0.0"

from .models import SaveSlot, SaveVersion, SlotKind, SlotState, SlotStatus, EngineSettings

__all__ = [
    "SaveSlot",
    "SaveVersion",
    "SlotKind",
    "SlotState",
    "SlotStatus",
    "EngineSettings",
]
