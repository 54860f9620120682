"""
Deterministic Slot ID Generation.

A slot's id depends only on its emulator tag and absolute root path, so
registering the same path again (after a restart or from a second
registrar call) yields the same slot.
"""

import hashlib
import os
from pathlib import Path
from typing import Dict, Union


class DeterministicSlotId:
    """Stable 16-hex-character slot identifiers"""

    # Cache for computed IDs, keyed by "<emulator_tag>:<absolute path>"
    _id_cache: Dict[str, str] = {}

    @staticmethod
    def normalize_path(root_path: Union[str, Path]) -> Path:
        """Absolute, user-expanded path without symlink resolution"""
        return Path(os.path.abspath(os.path.expanduser(str(root_path))))

    @staticmethod
    def generate(root_path: Union[str, Path], emulator_tag: str) -> str:
        """
        Generate the id for a slot.

        Args:
            root_path: Save file or save directory (made absolute)
            emulator_tag: Registrar-supplied tag, e.g. "pcsx2"

        Returns:
            First 16 hex characters of SHA-256 over "<emulator_tag>:<absolute path>"

        Example:
            generate("/saves/ff7.mcd", "pcsx2") always returns the same id,
            and a different one than generate("/saves/ff7.mcd", "duckstation")
        """
        key = f"{emulator_tag.strip()}:{DeterministicSlotId.normalize_path(root_path)}"

        if key in DeterministicSlotId._id_cache:
            return DeterministicSlotId._id_cache[key]

        slot_id = hashlib.sha256(key.encode('utf-8')).hexdigest()[:16]
        DeterministicSlotId._id_cache[key] = slot_id
        return slot_id

    @staticmethod
    def clear_cache() -> None:
        DeterministicSlotId._id_cache.clear()

    @staticmethod
    def get_cache_size() -> int:
        return len(DeterministicSlotId._id_cache)

    @staticmethod
    def validate(slot_id: str) -> bool:
        """True if `slot_id` looks like a generated id (16 hex characters)"""
        if len(slot_id) != 16:
            return False

        try:
            int(slot_id, 16)
            return True
        except ValueError:
            return False
