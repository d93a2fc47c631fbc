"""Content-addressed on-disk cache of AI fix results.

Entries live at ``{project_root}/.buildmend/cache/<sha256>.json``, one file
per key. The key hashes the error message with line and column numbers
masked, plus category, file, line and the first 500 characters of the
surrounding context. Entries older than ``max_age_seconds`` are treated
as absent and deleted on read. Cache failures are logged and never
propagate to the caller.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from buildmend.core.config import WORKDIR_NAME
from buildmend.core.models import BuildError, FixResult

logger = logging.getLogger(__name__)

CONTEXT_LIMIT = 500
DEFAULT_MAX_AGE_SECONDS = 24 * 60 * 60
_GITIGNORE = "*\n!.gitignore\n"

_MASKS = (
    (re.compile(r"line \d+"), "line X"),
    (re.compile(r"column \d+"), "column Y"),
    (re.compile(r":\d+:\d+"), ":X:Y"),
    (re.compile(r"\(\d+,\s*\d+\)"), "(X,Y)"),
)


@dataclass
class CacheDirStats:
    size: int
    entries: int
    oldest: datetime | None
    newest: datetime | None


def normalize_message(message: str) -> str:
    for pattern, replacement in _MASKS:
        message = pattern.sub(replacement, message)
    return message


def cache_key(error: BuildError, context: str) -> str:
    raw = "|".join([
        normalize_message(error.message),
        error.category.value,
        str(error.file),
        str(error.line),
        context[:CONTEXT_LIMIT],
    ])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class ResponseCache:
    """Passive key/value store, last write wins."""

    def __init__(
        self,
        project_path: Path,
        enabled: bool = True,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.cache_dir = project_path / WORKDIR_NAME / "cache"
        self.enabled = enabled
        self.max_age_seconds = max_age_seconds
        self._clock = clock

    def get(self, error: BuildError, context: str) -> FixResult | None:
        if not self.enabled:
            return None

        cache_file = self.cache_dir / f"{cache_key(error, context)}.json"
        try:
            if not cache_file.exists():
                return None
            entry = json.loads(cache_file.read_text())
            age = self._clock() - float(entry["timestamp"])
            if age > self.max_age_seconds:
                cache_file.unlink()
                logger.debug("Expired cache entry %s (%.0fs old)", cache_file.name, age)
                return None
            result = FixResult.from_dict(entry["result"])
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable cache entry %s: %s", cache_file.name, e)
            return None

        result.from_cache = True
        logger.info("Cache hit for error: %s", error.message)
        return result

    def set(self, error: BuildError, context: str, result: FixResult) -> None:
        if not self.enabled:
            return

        try:
            self._ensure_dir()
            entry = {
                "error": {
                    "message": normalize_message(error.message),
                    "category": error.category.value,
                    "file": error.file,
                    "line": error.line,
                },
                "context": context[:CONTEXT_LIMIT],
                "result": result.to_dict(),
                "timestamp": self._clock(),
            }
            cache_file = self.cache_dir / f"{cache_key(error, context)}.json"
            cache_file.write_text(json.dumps(entry, indent=2))
            logger.debug("Cached result for error: %s", error.message)
        except (OSError, TypeError, ValueError) as e:
            logger.warning("Could not write cache entry: %s", e)

    def clear(self) -> int:
        """Delete every entry. Returns the number removed."""
        if not self.cache_dir.exists():
            return 0
        removed = 0
        for entry in self.cache_dir.glob("*.json"):
            try:
                entry.unlink()
                removed += 1
            except OSError as e:
                logger.warning("Could not remove %s: %s", entry, e)
        return removed

    def stats(self) -> CacheDirStats:
        if not self.cache_dir.exists():
            return CacheDirStats(size=0, entries=0, oldest=None, newest=None)

        size = 0
        stamps: list[float] = []
        entries = 0
        for entry in self.cache_dir.glob("*.json"):
            entries += 1
            try:
                size += entry.stat().st_size
                stamps.append(float(json.loads(entry.read_text())["timestamp"]))
            except (OSError, ValueError, KeyError) as e:
                logger.debug("Skipping %s in stats: %s", entry.name, e)

        def _dt(ts: float) -> datetime:
            return datetime.fromtimestamp(ts, tz=timezone.utc)

        return CacheDirStats(
            size=size,
            entries=entries,
            oldest=_dt(min(stamps)) if stamps else None,
            newest=_dt(max(stamps)) if stamps else None,
        )

    def _ensure_dir(self) -> None:
        if self.cache_dir.exists():
            return
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        (self.cache_dir / ".gitignore").write_text(_GITIGNORE)
