"""
Tests for deterministic slot id generation.

Validates that slot ids are stable across invocations, distinct per emulator
tag and path, and independent of how the path was spelled.
"""

import os
from pathlib import Path

import pytest

from core.sync.deterministic import DeterministicSlotId


class TestDeterministicSlotId:
    """Test suite for deterministic slot id generation."""

    def setup_method(self):
        """Clear id cache before each test."""
        DeterministicSlotId.clear_cache()

    def test_consistent_id_generation(self):
        """Test that the same tag and path produce the same id."""
        id1 = DeterministicSlotId.generate("/saves/ff7.mcd", "pcsx2")
        DeterministicSlotId.clear_cache()
        id2 = DeterministicSlotId.generate("/saves/ff7.mcd", "pcsx2")

        assert id1 == id2
        assert DeterministicSlotId.validate(id1)

    def test_different_tags_produce_different_ids(self):
        assert DeterministicSlotId.generate("/saves/ff7.mcd", "pcsx2") != \
            DeterministicSlotId.generate("/saves/ff7.mcd", "duckstation")

    def test_different_paths_produce_different_ids(self):
        assert DeterministicSlotId.generate("/saves/a.srm", "snes9x") != \
            DeterministicSlotId.generate("/saves/b.srm", "snes9x")

    def test_relative_and_absolute_paths_match(self, tmp_path, monkeypatch):
        """Test relative paths are made absolute before hashing."""
        monkeypatch.chdir(tmp_path)
        assert DeterministicSlotId.generate("game.srm", "mgba") == \
            DeterministicSlotId.generate(tmp_path / "game.srm", "mgba")

    def test_redundant_separators_normalized(self):
        assert DeterministicSlotId.generate("/saves//sub/../game.srm", "mgba") == \
            DeterministicSlotId.generate("/saves/game.srm", "mgba")

    def test_tag_whitespace_ignored(self):
        assert DeterministicSlotId.generate("/saves/game.srm", " mgba ") == \
            DeterministicSlotId.generate("/saves/game.srm", "mgba")

    def test_normalize_path_expands_user(self):
        normalized = DeterministicSlotId.normalize_path("~/saves/game.srm")
        assert normalized == Path(os.path.expanduser("~")) / "saves" / "game.srm"
        assert normalized.is_absolute()

    def test_cache(self):
        DeterministicSlotId.generate("/saves/a.srm", "snes9x")
        DeterministicSlotId.generate("/saves/a.srm", "snes9x")
        assert DeterministicSlotId.get_cache_size() == 1

        DeterministicSlotId.clear_cache()
        assert DeterministicSlotId.get_cache_size() == 0

    @pytest.mark.parametrize("slot_id,expected", [
        ("0123456789abcdef", True),
        ("0123456789abcde", False),
        ("0123456789abcdeg", False),
        ("", False),
    ])
    def test_validate(self, slot_id, expected):
        assert DeterministicSlotId.validate(slot_id) is expected
