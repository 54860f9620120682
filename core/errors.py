"""
Error taxonomy for the versioning engine.

Every failure raised by the store, the classifier or the engine derives from
SaveVaultError so collaborators can catch the whole family at one seam.
"""

from typing import Optional


class SaveVaultError(Exception):
    """Base class for all savevault errors"""


class TransientIOError(SaveVaultError):
    """Temporary read/write failure (file locked, emulator mid-write). Retried."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class StorageFailure(SaveVaultError):
    """Transaction or commit failure in the version store. Rolled back."""


class CorruptVersionError(SaveVaultError):
    """Stored blob is missing, undecodable or does not match its recorded hash."""

    def __init__(self, slot_id: str, version_id: int, detail: str):
        super().__init__(f"Version {version_id} of slot {slot_id} is corrupt: {detail}")
        self.slot_id = slot_id
        self.version_id = version_id
        self.detail = detail


class NotFoundError(SaveVaultError):
    """Unknown slot or version id."""


class ConfigurationError(SaveVaultError):
    """Invalid startup parameters."""


class DuplicateContentError(SaveVaultError):
    """Append refused: content equals the slot's active version."""

    def __init__(self, slot_id: str, content_hash: str):
        super().__init__(f"Slot {slot_id} already has {content_hash[:12]} as its active version")
        self.slot_id = slot_id
        self.content_hash = content_hash
