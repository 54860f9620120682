"""
SaveVault - versioned backups of emulator save data.

Watches save files and save directories, detects meaningful content changes
and keeps a bounded, compressed history of versions per save slot.
"""

__version__ = "1.0.0"

# Package imports for convenient access
from core.models.versions import SaveSlot, SaveVersion, SlotStatus
from core.models.config import EngineSettings
from core.sync.engine import VersioningEngine

__all__ = [
    "SaveSlot",
    "SaveVersion",
    "SlotStatus",
    "EngineSettings",
    "VersioningEngine",
    "__version__",
]
