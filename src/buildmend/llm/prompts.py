"""Prompt construction and reply parsing for the reasoning backend."""

from __future__ import annotations

import re

from buildmend.core.models import BuildError, SearchReplace

_SEARCH_REPLACE = re.compile(
    r"<<<<<<< SEARCH\n(.*?)\n=======\n(.*?)\n>>>>>>> REPLACE", re.DOTALL
)
_FIXED_CODE = re.compile(
    r"FIXED_CODE:\s*```(?:typescript|ts|javascript|js|html|scss|css)?\s*(.*?)```",
    re.DOTALL | re.IGNORECASE,
)
_CODE_BLOCK = re.compile(r"```(?:typescript|ts|javascript|js|html|scss|css)?\s*(.*?)```", re.DOTALL)
_EXPLANATION = re.compile(
    r"EXPLANATION:\s*(.*?)(?=FIXED_CODE:|CONFIDENCE:|<<<<<<< SEARCH|```|$)",
    re.DOTALL | re.IGNORECASE,
)
_CONFIDENCE = re.compile(r"CONFIDENCE:\s*(high|medium|low)", re.IGNORECASE)

CONFIDENCE_SCORES = {"high": 0.85, "medium": 0.60, "low": 0.35}

DEFAULT_CONSTRAINTS = [
    "Do not change or guess package versions.",
    "Produce a minimal, surgical diff. Change as few lines as possible.",
    "Do not modify package.json or any other dependency manifest.",
    "Preserve existing functionality and code style.",
]


def numbered_context(content: str, line: int | None, radius: int = 30) -> str:
    """Return the lines around *line*, numbered, with the error line marked ``>>>``."""
    if not content:
        return "[File content not available]"
    error_line = line or 1
    lines = content.split("\n")
    start = max(0, error_line - radius - 1)
    end = min(len(lines), error_line + radius)
    out = []
    for offset, text in enumerate(lines[start:end]):
        number = start + offset + 1
        marker = ">>> " if number == error_line else "    "
        out.append(f"{marker}{number}: {text}")
    return "\n".join(out)


def build_fix_prompt(
    error: BuildError, file_content: str, target_version: str, constraints: list[str]
) -> str:
    context = numbered_context(file_content, error.line)
    rules = "\n".join(f"- {c}" for c in constraints)
    return f"""You are an expert Angular developer upgrading a project to Angular {target_version}.

ERROR:
  Category: {error.category.value}
  Message: {error.message}
  File: {error.file}
  Location: line {error.line}, column {error.column}

CODE CONTEXT (the error line is marked with >>>; line numbers are NOT part of the code):
```typescript
{context}
```

CONSTRAINTS:
{rules}

Respond in this exact format. Do NOT output the whole file.

EXPLANATION: <what caused the error and how the change fixes it>

<<<<<<< SEARCH
<exact original code, without line numbers>
=======
<corrected code>
>>>>>>> REPLACE

CONFIDENCE: <high|medium|low>

You may emit several SEARCH/REPLACE blocks. Each SEARCH block must match the
original code exactly, including indentation.
"""


def build_codegen_prompt(
    description: str, error: BuildError, file_content: str, constraints: list[str]
) -> str:
    rules = "\n".join(f"- {c}" for c in constraints)
    return f"""{description}

ERROR:
  Message: {error.message}
  Location: line {error.line}, column {error.column}

CODE:
```typescript
{file_content}
```

CONSTRAINTS:
{rules}

Return the corrected version of the CODE above, complete, in this format:

EXPLANATION: <one or two sentences>

FIXED_CODE:
```typescript
<corrected code>
```
"""


def extract_search_replace_blocks(text: str) -> list[SearchReplace]:
    return [SearchReplace(search=m.group(1), replace=m.group(2)) for m in _SEARCH_REPLACE.finditer(text)]


def extract_code(text: str) -> str | None:
    m = _FIXED_CODE.search(text) or _CODE_BLOCK.search(text)
    if m is None:
        return None
    code = m.group(1).strip()
    return code or None


def extract_explanation(text: str) -> str:
    m = _EXPLANATION.search(text)
    if m and m.group(1).strip():
        return m.group(1).strip()
    return text.split("\n\n")[0].strip()


def extract_confidence(text: str, default: float = 0.60) -> float:
    m = _CONFIDENCE.search(text)
    if m is None:
        return default
    return CONFIDENCE_SCORES[m.group(1).lower()]
