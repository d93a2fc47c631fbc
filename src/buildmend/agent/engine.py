"""Agent fix engine: quick diagnosis, fast-path fixes, and the full agent session."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from buildmend.agent.graph import run_agent
from buildmend.agent.state import (
    BROWSER_ALTERNATIVES,
    NODE_ONLY_PACKAGES,
    RUNTIME_ERROR_PATTERNS,
    IssueType,
    packages_in,
)
from buildmend.agent.tools import (
    ToolContext,
    check_package,
    diagnose_runtime_error,
    find_package_usages,
)
from buildmend.core.models import DEPENDENCY_MANIFEST, BuildError, ChangeKind, FileChange, FixResult
from buildmend.core.output import Reporter

logger = logging.getLogger(__name__)

NPM_INSTALL_HINT = "Run `npm install` after applying these changes to update node_modules."


@dataclass
class QuickDiagnosis:
    issue_type: IssueType
    packages: list[str] = field(default_factory=list)
    affected_files: list[str] = field(default_factory=list)
    suggested_action: str = ""
    confidence: float = 0.0


@dataclass
class CompatibilityReport:
    compatible: bool
    reason: str
    alternative: str | None = None


@dataclass
class BrowserIssue:
    package: str
    files: list[str]
    suggestion: str


def _import_patterns(package: str) -> list[re.Pattern[str]]:
    pkg = re.escape(package)
    return [
        re.compile(rf"""import\s+.*?\s+from\s+['"]{pkg}['"];?\n?"""),
        re.compile(rf"""import\s+['"]{pkg}['"];?\n?"""),
        re.compile(rf"""const\s+.*?\s*=\s*require\(['"]{pkg}['"]\);?\n?"""),
        re.compile(rf"""require\(['"]{pkg}['"]\);?\n?"""),
    ]


def remove_imports(content: str, packages: list[str]) -> str:
    """Strip import and require statements of *packages* from *content*."""
    for pkg in packages:
        for pattern in _import_patterns(pkg):
            content = pattern.sub("", content)
    return content


def describe_diagnosis(diagnosis: QuickDiagnosis) -> str:
    """Markdown explanation attached to a fast-path fix."""
    parts = [f"**Issue Type:** {diagnosis.issue_type.value}", ""]
    if diagnosis.packages:
        parts += [f"**Problematic Packages:** {', '.join(diagnosis.packages)}", ""]

    parts.append("**Root Cause:**")
    if diagnosis.issue_type is IssueType.NODE_ONLY_PACKAGE:
        parts.append(
            "The application uses Node.js-only packages that cannot run in a browser. "
            "They rely on Node.js built-in modules that browsers do not provide."
        )
    elif diagnosis.issue_type is IssueType.BROWSER_COMPATIBILITY:
        parts.append("Some packages or APIs are not compatible with the browser runtime.")
    elif diagnosis.issue_type is IssueType.DEPRECATED_API:
        parts.append("The code calls APIs that were removed or changed in the target version.")
    else:
        parts.append(diagnosis.suggested_action)

    parts += ["", "**Solution:**", diagnosis.suggested_action]
    if "whatwg-url" in diagnosis.packages:
        parts += [
            "",
            "**Note:** Browsers ship native `URL` and `URLSearchParams`; "
            "`whatwg-url` is only needed under Node.js.",
        ]
    return "\n".join(parts)


class AgentFixEngine:
    """Last-resort fixer that investigates one error with a bounded agent session."""

    def __init__(
        self,
        llm,
        project_path: Path,
        target_version: str,
        max_iterations: int = 10,
        max_token_budget: int = 500_000,
        fast_path_threshold: float = 0.9,
        record_threshold: float = 0.7,
        reporter: Reporter | None = None,
    ):
        self.llm = llm
        self.project_path = Path(project_path)
        self.target_version = target_version
        self.max_iterations = max_iterations
        self.max_token_budget = max_token_budget
        self.fast_path_threshold = fast_path_threshold
        self.record_threshold = record_threshold
        self.reporter = reporter
        self.tool_context = ToolContext(project_path=self.project_path)

    async def request_fix(self, error: BuildError, project_context: str, build_output: str) -> FixResult:
        """Never raises; every failure comes back as a manual-intervention result."""
        try:
            diagnosis = await self.quick_diagnose(error, build_output)
            if diagnosis is not None and diagnosis.confidence >= self.fast_path_threshold:
                logger.info("Quick diagnosis %s (%.2f)", diagnosis.issue_type.value, diagnosis.confidence)
                if self.reporter:
                    self.reporter.detail(f"Quick diagnosis: {diagnosis.issue_type.value}")
                fast = self.generate_fast_fix(diagnosis)
                if fast is not None:
                    return fast
            elif diagnosis is not None and diagnosis.confidence >= self.record_threshold:
                logger.info(
                    "Possible %s (%.2f): %s",
                    diagnosis.issue_type.value, diagnosis.confidence, diagnosis.suggested_action,
                )

            if self.reporter:
                self.reporter.detail(f"Starting agent session for {error.location}")
            outcome = await run_agent(
                self.llm,
                error,
                self.project_path,
                project_context=project_context,
                build_output=build_output,
                target_version=self.target_version,
                max_iterations=self.max_iterations,
                max_token_budget=self.max_token_budget,
            )
        except Exception as e:
            logger.exception("Agent session failed for %s", error.location)
            return FixResult(
                success=False,
                error=str(e),
                requires_manual_intervention=True,
                suggestion="An error occurred during agent execution. Please check the logs.",
                source="agent",
            )

        if outcome.success and outcome.changes:
            return FixResult(
                success=True,
                changes=outcome.changes,
                reasoning=outcome.reasoning,
                confidence=outcome.confidence,
                suggestion="\n".join(outcome.suggestions) or None,
                source="agent",
            )
        return FixResult(
            success=False,
            reasoning=outcome.reasoning,
            requires_manual_intervention=True,
            suggestion="\n".join(outcome.suggestions) or "Agent could not determine a fix",
            source="agent",
        )

    async def quick_diagnose(self, error: BuildError, build_output: str) -> QuickDiagnosis | None:
        """Match well-known signatures, strongest first."""
        text = f"{error.message}\n{error.file or ''}\n{build_output}"

        if "whatwg-url" in text or (
            "Cannot convert undefined or null to object" in text and "getPrototypeOf" in text
        ):
            return QuickDiagnosis(
                issue_type=IssueType.NODE_ONLY_PACKAGE,
                packages=["whatwg-url"],
                affected_files=await find_package_usages("whatwg-url", self.tool_context),
                suggested_action="Remove the whatwg-url package and its imports. Use the browser native URL API instead.",
                confidence=0.95,
            )

        problematic = [p for p in packages_in(text) if p in NODE_ONLY_PACKAGES]
        if problematic:
            files: list[str] = []
            for pkg in problematic:
                for f in await find_package_usages(pkg, self.tool_context):
                    if f not in files:
                        files.append(f)
            return QuickDiagnosis(
                issue_type=IssueType.NODE_ONLY_PACKAGE,
                packages=problematic,
                affected_files=files,
                suggested_action=f"Remove or replace browser-incompatible packages: {', '.join(problematic)}",
                confidence=0.85,
            )

        for rule in RUNTIME_ERROR_PATTERNS:
            if rule.pattern.search(text):
                return QuickDiagnosis(
                    issue_type=rule.issue_type,
                    suggested_action=rule.hint,
                    confidence=0.7,
                )
        return None

    def generate_fast_fix(self, diagnosis: QuickDiagnosis) -> FixResult | None:
        if diagnosis.issue_type is not IssueType.NODE_ONLY_PACKAGE:
            return None

        changes: list[FileChange] = []
        removed = ", ".join(diagnosis.packages)
        for rel in diagnosis.affected_files:
            try:
                content = (self.project_path / rel).read_text()
            except OSError as e:
                logger.warning("Could not read %s: %s", rel, e)
                continue
            updated = remove_imports(content, diagnosis.packages)
            if updated != content:
                changes.append(FileChange(
                    file=rel,
                    kind=ChangeKind.MODIFY,
                    content=updated,
                    diff=f"Removed imports of: {removed}",
                    full_replacement=True,
                ))

        manifest_change = self._manifest_without(diagnosis.packages)
        if manifest_change is not None:
            changes.append(manifest_change)

        if not changes:
            return None
        return FixResult(
            success=True,
            changes=changes,
            reasoning=describe_diagnosis(diagnosis),
            confidence=diagnosis.confidence,
            suggestion=NPM_INSTALL_HINT,
            source="agent-fast-path",
        )

    def _manifest_without(self, packages: list[str]) -> FileChange | None:
        path = self.project_path / DEPENDENCY_MANIFEST
        try:
            manifest: dict[str, Any] = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            logger.warning("Could not update %s: %s", DEPENDENCY_MANIFEST, e)
            return None

        modified = False
        for section in ("dependencies", "devDependencies"):
            deps = manifest.get(section) or {}
            for pkg in packages:
                if pkg in deps:
                    del deps[pkg]
                    modified = True
        if not modified:
            return None
        return FileChange(
            file=DEPENDENCY_MANIFEST,
            kind=ChangeKind.MODIFY,
            content=json.dumps(manifest, indent=2) + "\n",
            diff=f"Removed packages: {', '.join(packages)}",
            full_replacement=True,
        )

    def analyze_runtime_error(self, message: str, stack: str | None = None) -> dict[str, Any]:
        return diagnose_runtime_error(message, stack)

    async def check_browser_compatibility(self, package: str) -> CompatibilityReport:
        result = await check_package({"package_name": package}, self.tool_context)
        if not result.success:
            return CompatibilityReport(compatible=False, reason=result.result)
        if package in NODE_ONLY_PACKAGES:
            return CompatibilityReport(
                compatible=False,
                reason=f"{package} is a Node.js-only package",
                alternative=BROWSER_ALTERNATIVES.get(package),
            )
        return CompatibilityReport(
            compatible=not result.metadata["node_only"],
            reason=result.metadata["recommendation"],
        )

    async def scan_for_browser_issues(self) -> list[BrowserIssue]:
        """Node-only packages declared in the manifest, with the files that import them."""
        try:
            manifest = json.loads((self.project_path / DEPENDENCY_MANIFEST).read_text())
        except (OSError, ValueError) as e:
            logger.info("Skipping browser scan: %s", e)
            return []

        declared = {**manifest.get("dependencies", {}), **manifest.get("devDependencies", {})}
        issues = []
        for pkg in declared:
            if pkg in NODE_ONLY_PACKAGES:
                issues.append(BrowserIssue(
                    package=pkg,
                    files=await find_package_usages(pkg, self.tool_context),
                    suggestion=f"Remove {pkg} - use browser native APIs instead",
                ))
        return issues
