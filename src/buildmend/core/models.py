"""Core data models shared across buildmend."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

DEPENDENCY_DIR = "node_modules"
DEPENDENCY_MANIFEST = "package.json"


class ErrorCategory(Enum):
    COMPILATION = "compilation"
    TYPESCRIPT = "typescript"
    TEMPLATE = "template"
    IMPORT = "import"
    DEPENDENCY = "dependency"
    ROUTER = "router"
    RXJS = "rxjs"
    STANDALONE = "standalone"
    SSR = "ssr"
    UNKNOWN = "unknown"


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"


class ChangeKind(Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


@dataclass(frozen=True)
class BuildError:
    """A single classified error extracted from build output."""

    category: ErrorCategory
    message: str
    file: str | None = None
    line: int | None = None
    column: int | None = None
    code: str | None = None
    severity: Severity = Severity.ERROR

    @property
    def in_dependency_dir(self) -> bool:
        return bool(self.file) and DEPENDENCY_DIR in self.file

    @property
    def location(self) -> str:
        if not self.file:
            return "<unknown>"
        if self.line is None:
            return self.file
        return f"{self.file}:{self.line}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "message": self.message,
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "code": self.code,
            "severity": self.severity.value,
        }


@dataclass
class SearchReplace:
    search: str
    replace: str


@dataclass
class FileChange:
    """A proposed change to one file.

    When ``search_replace`` is non-empty it takes precedence over
    ``content``. ``full_replacement`` marks content that is meant to
    overwrite the whole file.
    """

    file: str
    kind: ChangeKind = ChangeKind.MODIFY
    search_replace: list[SearchReplace] = field(default_factory=list)
    content: str | None = None
    diff: str | None = None
    full_replacement: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "file": self.file,
            "kind": self.kind.value,
            "search_replace": [
                {"search": sr.search, "replace": sr.replace} for sr in self.search_replace
            ],
            "content": self.content,
            "diff": self.diff,
            "full_replacement": self.full_replacement,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileChange:
        return cls(
            file=data["file"],
            kind=ChangeKind(data.get("kind", "modify")),
            search_replace=[
                SearchReplace(search=sr["search"], replace=sr["replace"])
                for sr in data.get("search_replace", [])
            ],
            content=data.get("content"),
            diff=data.get("diff"),
            full_replacement=data.get("full_replacement", False),
        )


@dataclass
class FixResult:
    """Outcome of one fix attempt. Failures are data, never exceptions."""

    success: bool
    changes: list[FileChange] = field(default_factory=list)
    error: str | None = None
    reasoning: str | None = None
    confidence: float | None = None
    requires_manual_intervention: bool = False
    suggestion: str | None = None
    source: str = ""
    from_cache: bool = False

    @classmethod
    def manual(cls, suggestion: str, error: str | None = None, source: str = "") -> FixResult:
        return cls(
            success=False,
            error=error,
            requires_manual_intervention=True,
            suggestion=suggestion,
            source=source,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "changes": [c.to_dict() for c in self.changes],
            "error": self.error,
            "reasoning": self.reasoning,
            "confidence": self.confidence,
            "requires_manual_intervention": self.requires_manual_intervention,
            "suggestion": self.suggestion,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FixResult:
        return cls(
            success=data.get("success", False),
            changes=[FileChange.from_dict(c) for c in data.get("changes", [])],
            error=data.get("error"),
            reasoning=data.get("reasoning"),
            confidence=data.get("confidence"),
            requires_manual_intervention=data.get("requires_manual_intervention", False),
            suggestion=data.get("suggestion"),
            source=data.get("source", ""),
        )


@dataclass
class BuildResult:
    success: bool
    output: str
    exit_code: int | None = None


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0


@dataclass
class UnresolvedError:
    """An error the loop could not fix, with the advice gathered for it."""

    error: BuildError
    suggestion: str | None = None


@dataclass
class LoopResult:
    """Final report of a build-fix session."""

    success: bool
    attempts: int
    resolved_errors: list[BuildError] = field(default_factory=list)
    unresolved_errors: list[UnresolvedError] = field(default_factory=list)
    applied_fixes: list[FixResult] = field(default_factory=list)
    cache_stats: CacheStats | None = None
    rolled_back: bool = False
    manual_actions: list[str] = field(default_factory=list)
