"""Base class and shared helpers for fix strategies."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from buildmend.core.models import BuildError, ChangeKind, ErrorCategory, FileChange, FixResult
from buildmend.llm.client import LLMClient


@dataclass
class FixContext:
    project_path: Path
    target_version: str
    llm: LLMClient | None = None

    def resolve(self, file: str) -> Path:
        path = Path(file)
        if path.is_absolute():
            return path
        return self.project_path / path

    def relative(self, path: Path) -> str:
        try:
            return str(path.relative_to(self.project_path))
        except ValueError:
            return str(path)


class FixStrategy(ABC):
    """Abstract base class for all fix strategies."""

    name: str = ""
    category: ErrorCategory = ErrorCategory.UNKNOWN
    deterministic: bool = True

    @abstractmethod
    def can_handle(self, error: BuildError) -> bool:
        ...

    @abstractmethod
    async def apply(self, error: BuildError, context: FixContext) -> FixResult:
        """Propose changes for *error*. Must not write to disk."""
        ...

    def _modified(self, file: str, content: str, suggestion: str | None = None) -> FixResult:
        return FixResult(
            success=True,
            changes=[FileChange(file=file, kind=ChangeKind.MODIFY, content=content, full_replacement=True)],
            suggestion=suggestion,
            source=self.name,
        )

    def _manual(self, suggestion: str, error: str | None = None) -> FixResult:
        return FixResult.manual(suggestion, error=error, source=self.name)


def insert_after_last_import(content: str, statement: str) -> str | None:
    """Insert *statement* on the line after the last ``import`` line, or None."""
    lines = content.split("\n")
    last = -1
    for i, line in enumerate(lines):
        if line.strip().startswith("import "):
            last = i
    if last == -1:
        return None
    lines.insert(last + 1, statement)
    return "\n".join(lines)
