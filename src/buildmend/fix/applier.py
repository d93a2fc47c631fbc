"""Apply FileChanges to disk using exact or whitespace-tolerant matching."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from buildmend.core.models import ChangeKind, FileChange, SearchReplace
from buildmend.core.output import Reporter
from buildmend.fix.backups import FileBackupSet

logger = logging.getLogger(__name__)

# ">>> 12: code" or "    12: code" as produced by numbered prompt excerpts
_LINE_PREFIX = re.compile(r"^(?:>>>\s+|\s*)\d+:\s")


def strip_line_numbers(text: str) -> str:
    """Remove ``N:`` prefixes, but only if every non-blank line carries one."""
    lines = text.split("\n")
    non_blank = [line for line in lines if line.strip()]
    if not non_blank or not all(_LINE_PREFIX.match(line) for line in non_blank):
        return text
    return "\n".join(_LINE_PREFIX.sub("", line, count=1) for line in lines)


def _collapse(line: str) -> str:
    return " ".join(line.split())


def _squash(line: str) -> str:
    return "".join(line.split())


def _leading_ws(line: str) -> str:
    return line[: len(line) - len(line.lstrip())]


def _trim_blank_edges(lines: list[str]) -> list[str]:
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return lines[start:end]


def fuzzy_replace(content: str, search: str, replace: str) -> str | None:
    """Replace the line range matching *search* ignoring whitespace differences.

    Lines are compared first with whitespace runs collapsed, then with all
    whitespace removed. The replacement is re-indented onto the matched
    block's leading indentation, keeping its own relative indentation.
    Returns None when no range matches.
    """
    newline = "\r\n" if "\r\n" in content else "\n"
    lines = content.replace("\r\n", "\n").split("\n")
    needle = _trim_blank_edges(search.replace("\r\n", "\n").split("\n"))
    if not needle:
        return None

    start = None
    for normalise in (_collapse, _squash):
        wanted = [normalise(line) for line in needle]
        for i in range(len(lines) - len(needle) + 1):
            if all(normalise(lines[i + k]) == wanted[k] for k in range(len(needle))):
                start = i
                break
        if start is not None:
            break
    if start is None:
        if len(needle) == 1:
            return _inline_replace(content, needle[0], replace)
        return None

    indent = _leading_ws(lines[start])
    new_lines = replace.replace("\r\n", "\n").split("\n")
    body = [line for line in new_lines if line.strip()]
    min_indent = min((len(_leading_ws(line)) for line in body), default=0)
    reindented = [indent + line[min_indent:] if line.strip() else "" for line in new_lines]

    result = lines[:start] + reindented + lines[start + len(needle):]
    return newline.join(result)


def _inline_replace(content: str, search: str, replace: str) -> str | None:
    """Match a one-line fragment inside a line, allowing any whitespace between characters."""
    chars = _squash(search)
    if not chars:
        return None
    pattern = re.compile(r"[ \t]*".join(re.escape(c) for c in chars))
    m = pattern.search(content)
    if m is None:
        return None
    return content[: m.start()] + replace.strip() + content[m.end():]


class PatchApplier:
    """Writes FileChanges, tracking every file actually modified."""

    def __init__(
        self,
        project_path: Path,
        reporter: Reporter | None = None,
        backups: FileBackupSet | None = None,
    ):
        self.project_path = project_path
        self.reporter = reporter
        self.backups = backups
        self.modified_files: list[Path] = []

    def apply(self, changes: list[FileChange]) -> list[Path]:
        """Apply *changes* in order. Returns the files modified by this call."""
        modified: list[Path] = []
        for change in changes:
            file_path = self._resolve(change.file)
            try:
                if self._apply_one(file_path, change):
                    modified.append(file_path)
            except (OSError, UnicodeDecodeError) as e:
                logger.error("Failed to apply change to %s: %s", file_path, e)

        for path in modified:
            if path not in self.modified_files:
                self.modified_files.append(path)
        return modified

    def _apply_one(self, file_path: Path, change: FileChange) -> bool:
        if change.kind is ChangeKind.DELETE:
            if not file_path.exists():
                return False
            self._backup(file_path)
            file_path.unlink()
            return True

        if change.kind is ChangeKind.CREATE:
            if change.content is None:
                logger.warning("Create change for %s carries no content", file_path)
                return False
            self._backup(file_path)
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(change.content)
            return True

        if not file_path.exists():
            logger.warning("Cannot modify missing file %s", file_path)
            return False

        original = file_path.read_text()

        if change.search_replace:
            updated, applied = self.apply_search_replace(original, change.search_replace)
            if applied == 0 or updated == original:
                logger.info("No search/replace pair matched in %s", file_path)
                return False
        elif change.content is not None:
            if not change.full_replacement:
                logger.warning(
                    "UNSAFE: overwriting whole file %s with unflagged full content", file_path
                )
                if self.reporter:
                    self.reporter.warning(f"Full-file overwrite of {file_path} (unflagged)")
            updated = change.content
            if updated == original:
                return False
        else:
            return False

        self._backup(file_path)
        file_path.write_text(updated)
        return True

    def apply_search_replace(self, content: str, pairs: list[SearchReplace]) -> tuple[str, int]:
        """Apply each pair once. Returns the new content and the number applied."""
        applied = 0
        for pair in pairs:
            search = strip_line_numbers(pair.search)
            replace = strip_line_numbers(pair.replace)
            if not search.strip():
                continue

            if search in content:
                content = content.replace(search, replace, 1)
                applied += 1
                continue

            fuzzy = fuzzy_replace(content, search, replace)
            if fuzzy is not None:
                logger.debug("Applied fuzzy match for %r", search[:60])
                content = fuzzy
                applied += 1
            else:
                logger.info("Search text not found: %r", search[:80])
        return content, applied

    def _backup(self, file_path: Path) -> None:
        if self.backups is not None:
            self.backups.backup(file_path)

    def _resolve(self, file: str) -> Path:
        path = Path(file)
        if path.is_absolute():
            return path
        return self.project_path / path
