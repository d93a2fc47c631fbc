"""Original-content backups for files touched during a session.

Each file is captured once, the first time a fix is about to touch it,
and never overwritten afterwards. Copies are also mirrored to
``.buildmend/backups/<session>/`` with a ``manifest.json`` so that an
interrupted session can still be restored with ``buildmend restore``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

from buildmend.core.config import WORKDIR_NAME, get_buildmend_dir

logger = logging.getLogger(__name__)


class FileBackupSet:
    """Per-session map of file path to original content."""

    def __init__(self, project_path: Path, persist: bool = True):
        self.project_path = project_path
        self._originals: dict[Path, str | None] = {}
        self._session_dir: Path | None = None
        self.persist = persist

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, (str, Path)):
            return False
        return self._resolve(Path(path)) in self._originals

    def __len__(self) -> int:
        return len(self._originals)

    @property
    def files(self) -> list[Path]:
        return list(self._originals)

    def backup(self, path: str | Path) -> bool:
        """Capture *path* if it has not been captured yet.

        A file that does not exist yet is recorded as ``None`` so that
        restoring removes it again. Returns True when a new entry was made.
        """
        file_path = self._resolve(Path(path))
        if file_path in self._originals:
            return False

        if file_path.exists():
            try:
                content: str | None = file_path.read_text()
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("Cannot back up %s: %s", file_path, e)
                return False
        else:
            content = None

        self._originals[file_path] = content
        if self.persist:
            self._mirror(file_path, content)
        return True

    def restore_all(self) -> int:
        """Restore every captured file. Returns the number of files restored."""
        restored = 0
        for file_path, content in self._originals.items():
            try:
                if content is None:
                    if file_path.exists():
                        file_path.unlink()
                else:
                    file_path.parent.mkdir(parents=True, exist_ok=True)
                    file_path.write_text(content)
                restored += 1
            except OSError as e:
                logger.error("Failed to restore %s: %s", file_path, e)
        logger.info("Restored %d of %d backed-up files", restored, len(self._originals))
        return restored

    def clear(self) -> None:
        self._originals.clear()
        self._session_dir = None

    def _resolve(self, path: Path) -> Path:
        if path.is_absolute():
            return path
        return self.project_path / path

    def _mirror(self, file_path: Path, content: str | None) -> None:
        """Write the backup copy and manifest entry to disk."""
        try:
            if self._session_dir is None:
                timestamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S-%f")
                self._session_dir = get_buildmend_dir(self.project_path) / "backups" / timestamp
                self._session_dir.mkdir(parents=True, exist_ok=True)

            manifest_file = self._session_dir / "manifest.json"
            manifest = []
            if manifest_file.exists():
                manifest = json.loads(manifest_file.read_text())

            backup_file = None
            if content is not None:
                backup_file = self._session_dir / f"{len(manifest):04d}-{file_path.name}.bak"
                backup_file.write_text(content)

            manifest.append({
                "file": str(file_path),
                "backup": str(backup_file) if backup_file else None,
                "timestamp": datetime.now().isoformat(timespec="seconds"),
            })
            manifest_file.write_text(json.dumps(manifest, indent=2))
        except (OSError, ValueError) as e:
            logger.warning("Could not persist backup of %s: %s", file_path, e)


def latest_session(project_path: Path) -> Path | None:
    """Return the most recent persisted backup session directory, if any."""
    backup_dir = project_path / WORKDIR_NAME / "backups"
    if not backup_dir.exists():
        return None
    sessions = sorted(p for p in backup_dir.iterdir() if (p / "manifest.json").exists())
    return sessions[-1] if sessions else None


def restore_session(session_dir: Path) -> list[Path]:
    """Restore the files recorded in a persisted session manifest."""
    manifest = json.loads((session_dir / "manifest.json").read_text())
    restored = []
    for entry in manifest:
        target = Path(entry["file"])
        if entry["backup"] is None:
            if target.exists():
                target.unlink()
        else:
            target.write_text(Path(entry["backup"]).read_text())
        restored.append(target)
    return restored
