"""
Core data models for savevault

Pydantic models for save slots, versions, status views and engine settings.
"""

from .versions import SaveSlot, SaveVersion, SlotKind, SlotState, SlotStatus
from .config import EngineSettings

__all__ = [
    # Slots and versions
    "SaveSlot",
    "SaveVersion",
    "SlotKind",
    "SlotState",
    "SlotStatus",

    # Configuration
    "EngineSettings",
]
