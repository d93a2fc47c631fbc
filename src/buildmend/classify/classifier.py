"""Turn raw build-tool output into a deduplicated list of typed errors.

The classifier walks the output one line at a time. Lines that name a
source file update a running "current file" context, and lines that look
like errors are matched against an ordered rule table. An error line that
carries no location of its own takes the indented location line esbuild
prints below it, when there is one. The first rule
whose pattern matches decides the category; anything left over is
``UNKNOWN``. Malformed input never raises: unparseable lines are skipped.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Callable

from buildmend.core.models import BuildError, ErrorCategory, Severity

logger = logging.getLogger(__name__)

Extractor = Callable[["re.Match[str]"], dict[str, Any]]

_SOURCE_EXT = r"\.(?:ts|js|html|css|scss)"

# "Error in <file>:", "ERROR in <file>(", "at <file>:"
_CONTEXT_PREFIXED = re.compile(
    r"(?:Error in|ERROR in|at)\s+([^\s:]+" + _SOURCE_EXT + r")(?::|\()",
    re.IGNORECASE,
)
# "<file>:<line>:<col>" at the start of a line
_CONTEXT_LOCATED = re.compile(r"^\s*([^\s:]+" + _SOURCE_EXT + r"):\d+:\d+")
# "<file>:<line>:<col>" anywhere on an error line
_INLINE_LOCATION = re.compile(r"([^\s:()'\"]+" + _SOURCE_EXT + r"):(\d+):(\d+)")
# esbuild prints the location on its own indented line after the error: "  <file>:<line>:<col>:"
_TRAILING_LOCATION = re.compile(r"^\s+([^\s:]+" + _SOURCE_EXT + r"):(\d+):(\d+):\s*$")

_STACK_FRAME = re.compile(r"^\s*at\s+")
_FAILURE_GLYPH = "✖"
_MAX_PATH_LENGTH = 200


@dataclass(frozen=True)
class ErrorRule:
    """One row of the classification table."""

    category: ErrorCategory
    pattern: re.Pattern[str]
    extract: Extractor

    def match(self, line: str) -> dict[str, Any] | None:
        m = self.pattern.search(line)
        if m is None:
            return None
        return self.extract(m)


def _whole(m: re.Match[str]) -> dict[str, Any]:
    return {"message": m.group(0)}


def _line(m: re.Match[str]) -> dict[str, Any]:
    return {"message": m.string.strip()}


def _first_group(m: re.Match[str]) -> dict[str, Any]:
    return {"message": m.group(1)}


def _missing_module(m: re.Match[str]) -> dict[str, Any]:
    return {"message": f"Cannot find module '{m.group(1)}'"}


def _typescript(m: re.Match[str]) -> dict[str, Any]:
    code = re.match(r"TS\d+", m.group(0))
    return {"message": m.group(1), "code": code.group(0) if code else None}


def _located_error(m: re.Match[str]) -> dict[str, Any]:
    return {
        "message": m.group(1),
        "file": m.group(2),
        "line": int(m.group(3)),
        "column": int(m.group(4)),
    }


# Order matters: specific shapes are tried before the generic ones.
DEFAULT_RULES: tuple[ErrorRule, ...] = (
    ErrorRule(
        ErrorCategory.COMPILATION,
        re.compile(r"Compiling with Angular sources in (ivy|partial) compilation mode", re.IGNORECASE),
        _whole,
    ),
    ErrorRule(
        ErrorCategory.IMPORT,
        re.compile(r"Cannot find module ['\"](.+?)['\"]"),
        _missing_module,
    ),
    ErrorRule(
        ErrorCategory.DEPENDENCY,
        re.compile(r"peer dep|ERESOLVE|npm ERR!|Module not found.*Can't resolve.*", re.IGNORECASE),
        _line,
    ),
    ErrorRule(
        ErrorCategory.TYPESCRIPT,
        re.compile(r"TS\d+:\s*(.+)"),
        _typescript,
    ),
    ErrorRule(
        ErrorCategory.COMPILATION,
        re.compile(r"Error: (.+?)\s+at\s+(.+?):(\d+):(\d+)"),
        _located_error,
    ),
    ErrorRule(
        ErrorCategory.TEMPLATE,
        re.compile(r"Error in template:?\s*(.+)", re.IGNORECASE),
        _first_group,
    ),
    ErrorRule(
        ErrorCategory.ROUTER,
        re.compile(r"Router|routing|loadChildren", re.IGNORECASE),
        _line,
    ),
    ErrorRule(
        ErrorCategory.RXJS,
        re.compile(r"rxjs|Observable|Subscription|pipe", re.IGNORECASE),
        _line,
    ),
    ErrorRule(
        ErrorCategory.STANDALONE,
        re.compile(r"standalone|imports array|Component .+ is standalone", re.IGNORECASE),
        _line,
    ),
)


def is_error_line(line: str) -> bool:
    return (
        "Error:" in line
        or "error TS" in line
        or "ERROR" in line
        or _FAILURE_GLYPH in line
        or _STACK_FRAME.match(line) is not None
    )


def _context_file(line: str) -> str | None:
    m = _CONTEXT_PREFIXED.search(line) or _CONTEXT_LOCATED.match(line)
    if m is None:
        return None
    candidate = m.group(1)
    if "migrateto" in candidate or "Error" in candidate or len(candidate) >= _MAX_PATH_LENGTH:
        return None
    return candidate


class ErrorClassifier:
    """Classifies build output using an ordered rule table."""

    def __init__(self, rules: tuple[ErrorRule, ...] | None = None):
        self.rules = rules if rules is not None else DEFAULT_RULES

    def classify_errors(self, output: str) -> list[BuildError]:
        errors: list[BuildError] = []
        current_file: str | None = None
        awaiting_location = False

        for line in output.splitlines():
            trailing = _TRAILING_LOCATION.match(line)
            if trailing is not None and awaiting_location:
                errors[-1] = replace(
                    errors[-1],
                    file=trailing.group(1),
                    line=int(trailing.group(2)),
                    column=int(trailing.group(3)),
                )
                awaiting_location = False

            found = _context_file(line)
            if found is not None:
                current_file = found

            if not is_error_line(line):
                continue
            try:
                error = self.classify_line(line, current_file)
            except (ValueError, IndexError) as e:
                logger.debug("Skipping unparseable build line %r: %s", line, e)
                awaiting_location = False
                continue
            errors.append(error)
            awaiting_location = error.line is None

        return deduplicate(errors)

    def classify_line(self, line: str, context_file: str | None = None) -> BuildError:
        """Classify one error line, falling back to UNKNOWN."""
        for rule in self.rules:
            extracted = rule.match(line)
            if extracted is None:
                continue

            file = extracted.get("file")
            lineno = extracted.get("line")
            column = extracted.get("column")
            if file is None:
                inline = _INLINE_LOCATION.search(line)
                if inline is not None:
                    file, lineno, column = inline.group(1), int(inline.group(2)), int(inline.group(3))
                else:
                    file = context_file

            return BuildError(
                category=rule.category,
                message=extracted.get("message") or line.strip(),
                file=file,
                line=lineno,
                column=column,
                code=extracted.get("code"),
                severity=Severity.ERROR,
            )

        inline = _INLINE_LOCATION.search(line)
        return BuildError(
            category=ErrorCategory.UNKNOWN,
            message=line.strip(),
            file=inline.group(1) if inline else context_file,
            line=int(inline.group(2)) if inline else None,
            column=int(inline.group(3)) if inline else None,
        )

    def group_by_category(self, errors: list[BuildError]) -> dict[ErrorCategory, list[BuildError]]:
        return group_by_category(errors)


def deduplicate(errors: list[BuildError]) -> list[BuildError]:
    """Drop exact (category, file, line, message) repeats, keeping first-seen order."""
    seen: set[tuple[Any, ...]] = set()
    unique: list[BuildError] = []
    for err in errors:
        key = (err.category, err.file, err.line, err.message)
        if key in seen:
            continue
        seen.add(key)
        unique.append(err)
    return unique


def group_by_category(errors: list[BuildError]) -> dict[ErrorCategory, list[BuildError]]:
    grouped: dict[ErrorCategory, list[BuildError]] = {}
    for err in errors:
        grouped.setdefault(err.category, []).append(err)
    return grouped
