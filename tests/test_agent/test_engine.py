"""Tests for the agent fix engine."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from buildmend.agent.engine import AgentFixEngine, QuickDiagnosis, describe_diagnosis, remove_imports
from buildmend.agent.graph import FAIL_SUGGESTIONS
from buildmend.agent.state import IssueType
from buildmend.core.models import BuildError, ErrorCategory
from buildmend.llm.client import Completion


@pytest.fixture
def project(tmp_path: Path) -> Path:
    (tmp_path / "src" / "app").mkdir(parents=True)
    (tmp_path / "package.json").write_text(json.dumps({
        "dependencies": {"@angular/core": "^17.0.0", "whatwg-url": "^14.0.0"},
        "devDependencies": {"lodash": "^4.17.21"},
    }))
    (tmp_path / "src" / "app" / "url.ts").write_text(
        "import { URL } from 'whatwg-url';\nexport const u = new URL('http://x');\n"
    )
    return tmp_path


def _make_engine(project: Path, llm=None, **kwargs) -> AgentFixEngine:
    if llm is None:
        llm = MagicMock()
        llm.chat = AsyncMock(return_value=Completion(text="thinking"))
    return AgentFixEngine(llm, project, target_version="17.0.0", **kwargs)


WHATWG_ERROR = BuildError(
    ErrorCategory.UNKNOWN,
    "Cannot convert undefined or null to object",
    file="node_modules/whatwg-url/lib/URL.js",
    line=10,
)


class TestFastPath:
    def test_whatwg_fast_path_skips_backend(self, project: Path):
        engine = _make_engine(project)

        result = asyncio.run(engine.request_fix(WHATWG_ERROR, "", ""))

        engine.llm.chat.assert_not_called()
        assert result.success
        assert result.source == "agent-fast-path"
        assert result.confidence == 0.95

        source_change, manifest_change = result.changes
        assert source_change.file == str(Path("src/app/url.ts"))
        assert source_change.content == "export const u = new URL('http://x');\n"
        assert source_change.full_replacement is True

        assert manifest_change.file == "package.json"
        manifest = json.loads(manifest_change.content)
        assert manifest["dependencies"] == {"@angular/core": "^17.0.0"}
        assert manifest_change.content.endswith("\n")

    def test_fast_path_does_not_write(self, project: Path):
        asyncio.run(_make_engine(project).request_fix(WHATWG_ERROR, "", ""))
        assert "whatwg-url" in (project / "src" / "app" / "url.ts").read_text()

    def test_high_threshold_routes_to_agent(self, project: Path):
        engine = _make_engine(project, fast_path_threshold=0.99, max_iterations=1)

        result = asyncio.run(engine.request_fix(WHATWG_ERROR, "", ""))

        assert engine.llm.chat.await_count == 1
        assert not result.success


class TestAgentSession:
    def test_backend_exception_becomes_manual(self, project: Path):
        llm = MagicMock()
        llm.chat = AsyncMock(side_effect=RuntimeError("backend down"))
        engine = _make_engine(project, llm=llm)
        error = BuildError(ErrorCategory.TYPESCRIPT, "Type 'A' is not assignable to type 'B'.", file="src/app/a.ts")

        result = asyncio.run(engine.request_fix(error, "", ""))

        assert not result.success
        assert result.requires_manual_intervention
        assert result.error == "backend down"
        assert result.suggestion == "An error occurred during agent execution. Please check the logs."

    def test_exhausted_session_returns_suggestions(self, project: Path):
        engine = _make_engine(project, max_iterations=2)
        error = BuildError(ErrorCategory.TYPESCRIPT, "Type 'A' is not assignable to type 'B'.", file="src/app/a.ts")

        result = asyncio.run(engine.request_fix(error, "", ""))

        assert engine.llm.chat.await_count == 2
        assert result.requires_manual_intervention
        assert result.suggestion == "\n".join(FAIL_SUGGESTIONS)
        assert result.source == "agent"


class TestQuickDiagnose:
    def test_node_only_package_in_output(self, project: Path):
        error = BuildError(ErrorCategory.DEPENDENCY, "Module not found")
        diagnosis = asyncio.run(_make_engine(project).quick_diagnose(
            error, "ERROR in ./node_modules/node-fetch/lib/index.js"
        ))

        assert diagnosis.issue_type is IssueType.NODE_ONLY_PACKAGE
        assert diagnosis.packages == ["node-fetch"]
        assert diagnosis.confidence == 0.85

    def test_runtime_pattern(self, project: Path):
        error = BuildError(ErrorCategory.UNKNOWN, "TypeError: x.foo is not a function")
        diagnosis = asyncio.run(_make_engine(project).quick_diagnose(error, ""))

        assert diagnosis.issue_type is IssueType.DEPRECATED_API
        assert diagnosis.confidence == 0.7

    def test_no_signature(self, project: Path):
        error = BuildError(ErrorCategory.TYPESCRIPT, "Type 'A' is not assignable to type 'B'.")
        assert asyncio.run(_make_engine(project).quick_diagnose(error, "")) is None


class TestBrowserChecks:
    def test_node_only_package_is_incompatible(self, project: Path):
        report = asyncio.run(_make_engine(project).check_browser_compatibility("fs"))
        assert not report.compatible
        assert report.alternative == "Use File System Access API or IndexedDB"

    def test_scan_for_browser_issues(self, project: Path):
        [issue] = asyncio.run(_make_engine(project).scan_for_browser_issues())
        assert issue.package == "whatwg-url"
        assert issue.files == [str(Path("src/app/url.ts"))]

    def test_analyze_runtime_error(self, project: Path):
        diagnosis = _make_engine(project).analyze_runtime_error("getPrototypeOf failed")
        assert diagnosis["confidence"] == 0.95


class TestHelpers:
    def test_remove_imports(self):
        content = (
            "import { URL } from 'whatwg-url';\n"
            "import 'whatwg-url';\n"
            "const x = require('whatwg-url');\n"
            "keep();\n"
        )
        assert remove_imports(content, ["whatwg-url"]) == "keep();\n"

    def test_describe_diagnosis(self):
        text = describe_diagnosis(QuickDiagnosis(
            issue_type=IssueType.NODE_ONLY_PACKAGE,
            packages=["whatwg-url"],
            suggested_action="Remove it",
        ))
        assert "**Issue Type:** node-only-package" in text
        assert "**Problematic Packages:** whatwg-url" in text
        assert text.rstrip().endswith("`whatwg-url` is only needed under Node.js.")
