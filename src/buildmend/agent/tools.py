"""Investigation tools the agent may call during a session.

Every tool returns a :class:`ToolExecutionResult`; failures are reported
in the result and never raised. ``propose_changes`` is terminal: it only
echoes its arguments back so the graph can turn them into a plan.
"""

from __future__ import annotations

import asyncio
import fnmatch
import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

from buildmend.agent.state import (
    NODE_ONLY_PACKAGES,
    RUNTIME_ERROR_PATTERNS,
    IssueType,
    packages_in,
)
from buildmend.core.models import DEPENDENCY_DIR, DEPENDENCY_MANIFEST

logger = logging.getLogger(__name__)

MAX_FILE_CHARS = 15_000
MAX_SEARCH_RESULTS = 50
DEFAULT_COMMAND_TIMEOUT = 120.0
_SKIP_DIRS = {DEPENDENCY_DIR, ".git", "dist", ".angular", ".buildmend"}
_SOURCE_GLOB = "*.{ts,js,tsx,jsx}"


@dataclass
class ToolContext:
    project_path: Path
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    max_file_chars: int = MAX_FILE_CHARS


@dataclass
class ToolExecutionResult:
    success: bool
    result: str
    metadata: dict[str, Any] = field(default_factory=dict)


def _resolve(ctx: ToolContext, path: str) -> Path:
    p = Path(path)
    return p if p.is_absolute() else ctx.project_path / p


def expand_braces(pattern: str) -> list[str]:
    """``*.{ts,js}`` -> ``["*.ts", "*.js"]``."""
    m = re.search(r"\{([^{}]*)\}", pattern)
    if m is None:
        return [pattern]
    head, tail = pattern[: m.start()], pattern[m.end():]
    out: list[str] = []
    for option in m.group(1).split(","):
        out.extend(expand_braces(head + option + tail))
    return out


def _walk(root: Path, patterns: list[str]):
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS and not d.startswith("."))
        for name in sorted(filenames):
            if any(fnmatch.fnmatch(name, p) for p in patterns):
                yield Path(dirpath) / name


async def read_file(args: dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    file_path = args.get("file_path") or args.get("filePath")
    if not file_path:
        return ToolExecutionResult(False, "Missing required argument: file_path")
    path = _resolve(ctx, str(file_path))
    if not path.exists():
        return ToolExecutionResult(False, f"File not found: {file_path}")

    content = path.read_text(errors="replace")
    lines = content.split("\n")
    start, end = args.get("start_line"), args.get("end_line")
    if start is not None and end is not None:
        first = max(0, int(start) - 1)
        last = min(len(lines), int(end))
        result = "\n".join(f"{first + i + 1}: {line}" for i, line in enumerate(lines[first:last]))
    elif len(content) > ctx.max_file_chars:
        result = (
            content[: ctx.max_file_chars]
            + "\n\n... [FILE TRUNCATED - use start_line/end_line to read specific sections]"
        )
    else:
        result = content

    return ToolExecutionResult(True, result, {"total_lines": len(lines), "file_size": len(content)})


def _search(ctx: ToolContext, pattern: str, file_pattern: str, case_sensitive: bool) -> list[str]:
    regex = re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)
    hits: list[str] = []
    for path in _walk(ctx.project_path, expand_braces(file_pattern)):
        try:
            text = path.read_text(errors="replace")
        except OSError:
            continue
        rel = path.relative_to(ctx.project_path)
        for lineno, line in enumerate(text.split("\n"), start=1):
            if regex.search(line):
                hits.append(f"{rel}:{lineno}: {line.strip()}")
    return hits


async def search_code(args: dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    pattern = args.get("pattern")
    if not pattern:
        return ToolExecutionResult(False, "Missing required argument: pattern")
    file_pattern = args.get("file_pattern") or args.get("filePattern") or "*.{ts,js,json,html}"
    try:
        hits = await asyncio.to_thread(
            _search, ctx, str(pattern), str(file_pattern), bool(args.get("case_sensitive"))
        )
    except re.error as e:
        return ToolExecutionResult(False, f"Invalid pattern: {e}")

    if not hits:
        return ToolExecutionResult(True, "No matches found", {"match_count": 0})
    result = "\n".join(hits[:MAX_SEARCH_RESULTS])
    if len(hits) > MAX_SEARCH_RESULTS:
        result += f"\n\n... [{len(hits) - MAX_SEARCH_RESULTS} more results truncated]"
    return ToolExecutionResult(True, result, {"match_count": len(hits)})


async def list_files(args: dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    directory = str(args.get("directory", "."))
    root = _resolve(ctx, directory)
    if not root.is_dir():
        return ToolExecutionResult(False, f"Directory not found: {directory}")

    pattern = args.get("pattern")
    recursive = bool(args.get("recursive"))
    entries: list[str] = []

    def walk(path: Path) -> None:
        for entry in sorted(path.iterdir()):
            if entry.name in _SKIP_DIRS or entry.name.startswith("."):
                continue
            rel = entry.relative_to(root)
            if entry.is_dir():
                entries.append(f"{rel}/")
                if recursive:
                    walk(entry)
            elif not pattern or fnmatch.fnmatch(entry.name, str(pattern)):
                entries.append(str(rel))

    await asyncio.to_thread(walk, root)
    return ToolExecutionResult(
        True, "\n".join(entries) if entries else "Directory is empty", {"file_count": len(entries)}
    )


async def run_command(args: dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    command = args.get("command")
    if not command:
        return ToolExecutionResult(False, "Missing required argument: command")
    cwd = _resolve(ctx, str(args["cwd"])) if args.get("cwd") else ctx.project_path
    timeout = float(args["timeout"]) / 1000 if args.get("timeout") else ctx.command_timeout

    proc = await asyncio.create_subprocess_shell(
        str(command),
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return ToolExecutionResult(False, f"Command timed out after {timeout:.0f}s", {"exit_code": None})

    parts = []
    if stdout:
        parts.append(f"STDOUT:\n{stdout.decode(errors='replace')}")
    if stderr:
        parts.append(f"STDERR:\n{stderr.decode(errors='replace')}")
    if proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
    output = "\n\n".join(parts) or "Command completed with no output"
    return ToolExecutionResult(proc.returncode == 0, output, {"exit_code": proc.returncode})


def _read_json(path: Path) -> dict[str, Any] | None:
    try:
        return json.loads(path.read_text())
    except (OSError, ValueError):
        return None


async def check_package(args: dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    name = args.get("package_name") or args.get("packageName")
    if not name:
        return ToolExecutionResult(False, "Missing required argument: package_name")
    name = str(name)

    manifest = _read_json(ctx.project_path / DEPENDENCY_MANIFEST)
    if manifest is None:
        return ToolExecutionResult(False, f"{DEPENDENCY_MANIFEST} not found in project root")

    deps = {**manifest.get("dependencies", {}), **manifest.get("devDependencies", {})}
    info = _read_json(ctx.project_path / DEPENDENCY_DIR / name / DEPENDENCY_MANIFEST) or {}

    has_browser = bool(info.get("browser"))
    has_module = bool(info.get("module"))
    has_main = bool(info.get("main"))
    known_incompatible = name in NODE_ONLY_PACKAGES
    node_only = bool((info.get("engines") or {}).get("node")) and not has_browser

    if known_incompatible or node_only:
        recommendation = (
            f"NOT browser-compatible. Remove '{name}' or replace it with a "
            "browser-native API."
        )
    elif has_main and not has_browser and not has_module:
        recommendation = "May have limited browser support; check whether it targets Node.js only."
    else:
        recommendation = "Appears to be browser-compatible."

    analysis = {
        "package_name": name,
        "version": deps.get(name, "not installed"),
        "installed": name in deps,
        "browser_incompatible": known_incompatible,
        "has_browser_field": has_browser,
        "has_module_field": has_module,
        "node_only": node_only,
        "recommendation": recommendation,
    }
    return ToolExecutionResult(True, json.dumps(analysis, indent=2), analysis)


_STACK_FILE = re.compile(r"([^\s(]+\.(?:ts|js|tsx|jsx))(?::\d+)?")


def diagnose_runtime_error(message: str, stack: str | None = None) -> dict[str, Any]:
    """Pattern-match a runtime error into a diagnosis dict."""
    diagnosis: dict[str, Any] = {
        "issue_type": None,
        "root_cause": None,
        "suggested_fix": None,
        "evidence": [],
        "affected_files": [],
        "confidence": 0.0,
    }

    for rule in RUNTIME_ERROR_PATTERNS:
        if rule.pattern.search(message):
            diagnosis["issue_type"] = rule.issue_type.value
            diagnosis["evidence"].append(f"Matched pattern: {rule.hint}")
            diagnosis["confidence"] = 0.7
            break

    if stack:
        files = []
        for m in _STACK_FILE.finditer(stack):
            if m.group(1) not in files:
                files.append(m.group(1))
        diagnosis["affected_files"] = files
        for pkg in packages_in(stack):
            if pkg in NODE_ONLY_PACKAGES:
                diagnosis.update(
                    issue_type=IssueType.NODE_ONLY_PACKAGE.value,
                    root_cause=f"Package '{pkg}' is Node.js-only and cannot run in the browser",
                    suggested_fix=f"Remove '{pkg}' from dependencies or use a browser-compatible alternative",
                    confidence=0.9,
                )
                diagnosis["evidence"].append(f"Found Node.js-only package in stack trace: {pkg}")
                break

    if "whatwg-url" in message or "getPrototypeOf" in message:
        diagnosis.update(
            issue_type=IssueType.NODE_ONLY_PACKAGE.value,
            root_cause="whatwg-url implements the URL standard for Node.js; browsers have native URL support.",
            suggested_fix="Remove whatwg-url and its imports; use the native URL and URLSearchParams APIs.",
            confidence=0.95,
        )

    if diagnosis["issue_type"] is None:
        diagnosis.update(
            issue_type=IssueType.RUNTIME_ERROR.value,
            root_cause="Unknown runtime error - requires investigation",
            confidence=0.3,
        )
    return diagnosis


async def analyze_runtime_error(args: dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    message = args.get("error_message") or args.get("errorMessage")
    if not message:
        return ToolExecutionResult(False, "Missing required argument: error_message")
    diagnosis = diagnose_runtime_error(str(message), args.get("stack_trace") or args.get("stackTrace"))
    return ToolExecutionResult(True, json.dumps(diagnosis, indent=2), diagnosis)


async def propose_changes(args: dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    changes = args.get("changes")
    if not isinstance(changes, list) or not changes:
        return ToolExecutionResult(False, "propose_changes needs a non-empty 'changes' list")
    if any(not isinstance(c, dict) or not c.get("file") for c in changes):
        return ToolExecutionResult(False, "Every change needs a 'file'")
    return ToolExecutionResult(True, json.dumps(args, indent=2), dict(args))


async def find_package_usages(package: str, ctx: ToolContext) -> list[str]:
    """Project files that import or require *package*."""
    quoted = re.escape(package)
    result = await search_code(
        {
            "pattern": rf"""from\s+['"]{quoted}['"]|require\(\s*['"]{quoted}['"]\s*\)|import\s+['"]{quoted}['"]""",
            "file_pattern": _SOURCE_GLOB,
            "case_sensitive": True,
        },
        ctx,
    )
    if not result.success or result.result == "No matches found":
        return []
    files: list[str] = []
    for line in result.result.split("\n"):
        m = re.match(r"^([^:]+):\d+:", line)
        if m and m.group(1) not in files:
            files.append(m.group(1))
    return files


ToolFn = Callable[[dict[str, Any], ToolContext], Awaitable[ToolExecutionResult]]

TOOLS: dict[str, ToolFn] = {
    "read_file": read_file,
    "search_code": search_code,
    "list_files": list_files,
    "run_command": run_command,
    "check_package": check_package,
    "analyze_runtime_error": analyze_runtime_error,
    "propose_changes": propose_changes,
}

TOOL_DEFINITIONS = [
    {
        "name": "read_file",
        "description": "Read a project file. Use start_line/end_line for large files.",
        "parameters": {"file_path": "string (required)", "start_line": "int", "end_line": "int"},
    },
    {
        "name": "search_code",
        "description": "Regex search across project files; returns path:line: text.",
        "parameters": {
            "pattern": "string (required)",
            "file_pattern": 'glob such as "*.ts" or "*.{ts,js}"',
            "case_sensitive": "bool",
        },
    },
    {
        "name": "list_files",
        "description": "List a directory, skipping node_modules and dot-directories.",
        "parameters": {"directory": "string (required)", "recursive": "bool", "pattern": "glob"},
    },
    {
        "name": "run_command",
        "description": "Run a shell command in the project (bounded timeout).",
        "parameters": {"command": "string (required)", "cwd": "string", "timeout": "milliseconds"},
    },
    {
        "name": "check_package",
        "description": "Check whether an npm package is installed and browser-compatible.",
        "parameters": {"package_name": "string (required)"},
    },
    {
        "name": "analyze_runtime_error",
        "description": "Diagnose a runtime error message and optional stack trace.",
        "parameters": {"error_message": "string (required)", "stack_trace": "string"},
    },
    {
        "name": "propose_changes",
        "description": (
            "Propose the fix. Only call when confident. Prefer search/replace pairs over "
            "full content. Never edit package.json."
        ),
        "parameters": {
            "changes": (
                'list of {"file", "type": "create|modify|delete", "search", "replace", '
                '"content", "reasoning"} (required)'
            ),
            "explanation": "string (required)",
            "confidence": "number 0-1 (required)",
        },
    },
]


async def execute_tool(name: str, args: dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    tool = TOOLS.get(name)
    if tool is None:
        return ToolExecutionResult(False, f"Unknown tool: {name}")
    try:
        return await tool(args, ctx)
    except Exception as e:
        logger.warning("Tool %s failed: %s", name, e)
        return ToolExecutionResult(False, f"{name} failed: {e}")
