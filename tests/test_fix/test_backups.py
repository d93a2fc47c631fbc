"""Tests for session backups and restore."""

from __future__ import annotations

from pathlib import Path

from buildmend.fix.backups import FileBackupSet, latest_session, restore_session


class TestFileBackupSet:
    def test_first_capture_wins(self, tmp_path: Path):
        target = tmp_path / "a.ts"
        target.write_text("v1")
        backups = FileBackupSet(tmp_path, persist=False)

        assert backups.backup(target) is True
        target.write_text("v2")
        assert backups.backup("a.ts") is False

        backups.restore_all()
        assert target.read_text() == "v1"

    def test_new_file_is_removed_on_restore(self, tmp_path: Path):
        backups = FileBackupSet(tmp_path, persist=False)
        backups.backup("created.ts")
        (tmp_path / "created.ts").write_text("x")

        assert backups.restore_all() == 1
        assert not (tmp_path / "created.ts").exists()

    def test_membership_and_clear(self, tmp_path: Path):
        (tmp_path / "a.ts").write_text("a")
        backups = FileBackupSet(tmp_path, persist=False)
        backups.backup("a.ts")

        assert "a.ts" in backups
        assert tmp_path / "a.ts" in backups
        assert len(backups) == 1

        backups.clear()
        assert len(backups) == 0


class TestPersistedSessions:
    def test_no_session(self, tmp_path: Path):
        assert latest_session(tmp_path) is None

    def test_restore_latest_session(self, tmp_path: Path):
        edited = tmp_path / "main.ts"
        edited.write_text("original")
        backups = FileBackupSet(tmp_path)
        backups.backup(edited)
        backups.backup("added.ts")

        edited.write_text("patched")
        (tmp_path / "added.ts").write_text("new")

        session = latest_session(tmp_path)
        assert session is not None
        assert (session / "manifest.json").exists()

        restored = restore_session(session)

        assert edited in restored
        assert edited.read_text() == "original"
        assert not (tmp_path / "added.ts").exists()
