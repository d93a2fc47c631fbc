"""Agent session state schema and runtime-error knowledge tables."""

import re
from dataclasses import dataclass, field
from enum import Enum
from operator import add
from typing import Annotated, Any, Dict, List, Optional, TypedDict

from buildmend.core.models import BuildError, FileChange


class AgentPhase(str, Enum):
    ANALYZING = "analyzing"
    INVESTIGATING = "investigating"
    FIXING = "fixing"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    FAILED = "failed"


class IssueType(str, Enum):
    NODE_ONLY_PACKAGE = "node-only-package"
    BROWSER_COMPATIBILITY = "browser-compatibility"
    DEPRECATED_API = "deprecated-api"
    RUNTIME_ERROR = "runtime-error"
    MISSING_DEPENDENCY = "missing-dependency"


@dataclass(frozen=True)
class RuntimePattern:
    pattern: "re.Pattern[str]"
    issue_type: IssueType
    hint: str


RUNTIME_ERROR_PATTERNS = (
    RuntimePattern(
        re.compile(r"Cannot convert undefined or null to object", re.IGNORECASE),
        IssueType.BROWSER_COMPATIBILITY,
        "Node.js-only package being used in browser context",
    ),
    RuntimePattern(
        re.compile(r"is not a function", re.IGNORECASE),
        IssueType.DEPRECATED_API,
        "API may have changed or been removed in newer version",
    ),
    RuntimePattern(
        re.compile(r"Cannot read propert(?:y|ies) of (?:undefined|null)", re.IGNORECASE),
        IssueType.RUNTIME_ERROR,
        "Object or module not properly initialized",
    ),
    RuntimePattern(
        re.compile(r"Module not found|Cannot find module", re.IGNORECASE),
        IssueType.MISSING_DEPENDENCY,
        "Missing or incorrectly installed package",
    ),
    RuntimePattern(
        re.compile(r"getPrototypeOf|Object\.prototype", re.IGNORECASE),
        IssueType.NODE_ONLY_PACKAGE,
        "Node.js-specific code running in browser",
    ),
)

# Packages and core modules that only work under Node.js
NODE_ONLY_PACKAGES = frozenset({
    "whatwg-url", "node-fetch", "fs", "path", "crypto", "stream", "buffer",
    "util", "os", "child_process", "http", "https", "net", "tls", "dns",
    "dgram", "cluster", "readline", "repl", "vm", "v8", "worker_threads",
})

BROWSER_ALTERNATIVES = {
    "whatwg-url": "Use browser native URL API",
    "node-fetch": "Use browser native fetch API",
    "fs": "Use File System Access API or IndexedDB",
    "path": "Use URL API for path manipulation",
    "crypto": "Use Web Crypto API",
}

_DEPENDENCY_PATH = re.compile(r"node_modules/([^/\s'\"]+(?:/[^/\s'\"]+)?)")


def packages_in(text: str) -> List[str]:
    """Package names that appear after ``node_modules/`` in *text*, first-seen order."""
    seen: List[str] = []
    for m in _DEPENDENCY_PATH.finditer(text):
        name = m.group(1)
        if not name.startswith("@"):
            name = name.split("/")[0]
        if name not in seen:
            seen.append(name)
    return seen


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class InvestigationResult:
    tool: str
    query: str
    result: str
    success: bool


def _merge(current: Dict[str, str], update: Dict[str, str]) -> Dict[str, str]:
    return {**(current or {}), **(update or {})}


def _union(current: List[str], update: List[str]) -> List[str]:
    merged = list(current or [])
    for item in update or []:
        if item not in merged:
            merged.append(item)
    return merged


class AgentState(TypedDict, total=False):
    """State carried through one agent session."""

    error: BuildError
    project_path: str
    project_context: str
    build_output: str
    target_version: str

    phase: AgentPhase
    iteration: int
    max_iterations: int
    token_usage: int
    max_token_budget: int

    messages: Annotated[List[Dict[str, str]], add]
    investigation: Annotated[List[InvestigationResult], add]
    files_read: Annotated[Dict[str, str], _merge]
    related_packages: Annotated[List[str], _union]
    browser_issues: Annotated[List[str], _union]

    pending_tool_calls: List[ToolCall]
    proposal: Optional[Dict[str, Any]]
    final_changes: List[FileChange]

    success: bool
    confidence: float
    reasoning: Optional[str]
    suggestions: Annotated[List[str], add]
