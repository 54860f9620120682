"""
Unit tests for CLI functionality.

Tests the savevault command-line interface against a real data directory:
config, status, versions, restore, export, delete and remove.
"""

import json
import shutil
import tempfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from core.models.versions import SaveSlot
from core.storage.compression import Compressor
from core.storage.hasher import compute_content_hash
from core.storage.store import SqliteVersionStore
from core.sync.deterministic import DeterministicSlotId
from core.sync.events import CaptureFailed, VersionCreated
from savevault.cli import format_event, main


class CliTestBase:
    """Shared data directory with one slot holding two versions"""

    def setup_method(self):
        self.runner = CliRunner()
        self.temp_dir = tempfile.mkdtemp()
        self.temp_path = Path(self.temp_dir)
        self.data_dir = self.temp_path / "vault"
        self.save_path = self.temp_path / "saves" / "zelda.srm"
        self.save_path.parent.mkdir(parents=True)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def open_store(self) -> SqliteVersionStore:
        return SqliteVersionStore(self.data_dir / "savevault.db", self.data_dir / "blobs")

    def populate(self):
        """Store v1 and v2 of the save file; the file on disk holds v2"""
        store = self.open_store()
        self.slot_id = DeterministicSlotId.generate(self.save_path, "snes9x")
        store.upsert_slot(SaveSlot(id=self.slot_id, root_path=self.save_path, emulator_tag="snes9x"))

        compressor = Compressor()
        for payload in (b"save v1" * 100, b"save v2" * 100):
            store.append(self.slot_id, compute_content_hash(payload), compressor.compress(payload))
        self.save_path.write_bytes(b"save v2" * 100)
        return store

    def invoke(self, *args, **kwargs):
        return self.runner.invoke(main, ['--data-dir', str(self.data_dir), *args], **kwargs)


class TestConfigCommand(CliTestBase):
    """Test the savevault config command"""

    def test_config_init(self):
        result = self.invoke('config', '--init')

        assert result.exit_code == 0
        config_file = self.data_dir / "config.json"
        assert config_file.exists()
        assert json.loads(config_file.read_text())["storage"]["data_dir"] == str(self.data_dir)

    def test_config_init_existing(self):
        self.invoke('config', '--init')
        result = self.invoke('config', '--init')

        assert result.exit_code == 0
        assert "already exists" in result.output

    def test_config_show(self):
        result = self.invoke('config')

        assert result.exit_code == 0
        assert "retention_count" in result.output

    def test_invalid_config_exits_2(self):
        self.data_dir.mkdir()
        (self.data_dir / "config.json").write_text(json.dumps({"retention": {"retention_count": -1}}))

        result = self.invoke('status')

        assert result.exit_code == 2
        assert "retention_count" in result.output


class TestStatusCommand(CliTestBase):
    """Test the savevault status command"""

    def test_status_empty(self):
        result = self.invoke('status')

        assert result.exit_code == 0
        assert "No save slots registered" in result.output

    def test_status_with_slot(self):
        self.populate()

        result = self.invoke('status')

        assert result.exit_code == 0
        assert "2 versions" in result.output


class TestVersionCommands(CliTestBase):
    """Test version browsing and restore commands"""

    def test_versions_by_id_prefix(self):
        self.populate()

        result = self.invoke('versions', self.slot_id[:6])

        assert result.exit_code == 0
        assert "v1" in result.output
        assert "v2" in result.output

    def test_versions_by_path(self):
        self.populate()

        result = self.invoke('versions', str(self.save_path))

        assert result.exit_code == 0

    def test_versions_unknown_target(self):
        self.populate()

        result = self.invoke('versions', 'no-such-slot')

        assert result.exit_code == 1
        assert "No slot matches" in result.output

    def test_restore(self):
        """Test restore writes the old version back without a new version"""
        self.populate()

        result = self.invoke('restore', self.slot_id, '1', '--yes')

        assert result.exit_code == 0
        assert self.save_path.read_bytes() == b"save v1" * 100
        assert len(self.open_store().list_versions(self.slot_id)) == 2

    def test_restore_declined(self):
        self.populate()

        result = self.invoke('restore', self.slot_id, '1', input='n\n')

        assert result.exit_code != 0
        assert self.save_path.read_bytes() == b"save v2" * 100

    def test_restore_unknown_version(self):
        self.populate()

        result = self.invoke('restore', self.slot_id, '9', '--yes')

        assert result.exit_code == 1
        assert self.save_path.read_bytes() == b"save v2" * 100

    def test_export_to_directory(self):
        self.populate()
        export_dir = self.temp_path / "exports"
        export_dir.mkdir()

        result = self.invoke('export', self.slot_id, '1', str(export_dir))

        assert result.exit_code == 0
        exported = export_dir / "zelda.srm.v1"
        assert exported.read_bytes() == b"save v1" * 100

    def test_delete(self):
        self.populate()

        result = self.invoke('delete', self.slot_id, '1', '--yes')

        assert result.exit_code == 0
        assert [v.version_id for v in self.open_store().list_versions(self.slot_id)] == [2]

    def test_remove(self):
        self.populate()

        result = self.invoke('remove', self.slot_id, '--yes')

        assert result.exit_code == 0
        assert self.open_store().list_slots() == []
        assert self.save_path.exists()


class TestWatchCommand(CliTestBase):
    """Test argument validation of the watch command"""

    def test_paths_require_emulator(self):
        result = self.invoke('watch', str(self.save_path))
        assert result.exit_code == 2

    def test_nothing_to_watch(self):
        result = self.invoke('watch')

        assert result.exit_code == 0
        assert "Nothing to watch" in result.output


class TestFormatEvent:
    """Test lifecycle event formatting"""

    def test_version_created(self):
        text = format_event(VersionCreated(
            slot_id="0123456789abcdef", version_id=6, content_hash="ab" * 32,
            size_original=2048, size_compressed=512, evicted_version_ids=[1],
        ))
        assert "v6" in text
        assert "evicted [1]" in text

    def test_capture_failed(self):
        text = format_event(CaptureFailed(slot_id="0123456789abcdef", reason="read_failed", detail="locked"))
        assert "read_failed" in text
        assert "locked" in text
