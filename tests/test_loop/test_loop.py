"""End-to-end tests for the build-fix loop with scripted builds."""

from __future__ import annotations

import asyncio
import io
from pathlib import Path

import pytest
from rich.console import Console

from buildmend.build.generators import CONTROL_FLOW, GeneratorRunner
from buildmend.classify.classifier import group_by_category
from buildmend.core.config import BuildMendConfig
from buildmend.core.models import (
    BuildError,
    BuildResult,
    CacheStats,
    ChangeKind,
    ErrorCategory,
    FileChange,
    FixResult,
    SearchReplace,
)
from buildmend.core.output import Reporter
from buildmend.fix.backups import FileBackupSet
from buildmend.llm.client import ReasoningResponse
from buildmend.llm.prompts import DEFAULT_CONSTRAINTS
from buildmend.loop import BuildFixLoop

MISSING_MODULE = (
    "src/app/app.component.ts:3:20 - error TS2307: Cannot find module 'rxjs/operators' "
    "or its corresponding type declarations."
)
NOT_ASSIGNABLE = "src/app/a.ts:1:7 - error TS2322: Type 'A' is not assignable to type 'B'."
ESBUILD_MISSING_MODULE = (
    "✘ [ERROR] TS2307: Cannot find module 'rxjs/operators' or its corresponding type declarations. "
    "[plugin angular-compiler]\n\n"
    "    src/app/app.component.ts:3:20:\n"
    "      3 │ import { map } from 'rxjs/operators';\n"
)


class FakeRunner:
    """Replays build outputs in order; ``None`` is a passing build. The last entry repeats."""

    def __init__(self, *outputs: str | None, tests_pass: bool = True):
        self.outputs = list(outputs)
        self.tests_pass = tests_pass
        self.builds = 0

    async def run_build(self) -> BuildResult:
        output = self.outputs[min(self.builds, len(self.outputs) - 1)]
        self.builds += 1
        if output is None:
            return BuildResult(success=True, output="Application bundle generation complete.", exit_code=0)
        return BuildResult(success=False, output=output, exit_code=1)

    async def run_tests(self) -> BuildResult:
        return BuildResult(success=self.tests_pass, output="", exit_code=0 if self.tests_pass else 1)


class CountingClassifier:
    """Interprets the build output as the number of errors to report."""

    def classify_errors(self, output: str) -> list[BuildError]:
        return [
            BuildError(ErrorCategory.TYPESCRIPT, f"error {i}", file=f"src/app/f{i}.ts", line=1)
            for i in range(int(output))
        ]

    def group_by_category(self, errors):
        return group_by_category(errors)


class RecordingRegistry:
    """Creates one file per error, so every fix writes something."""

    def __init__(self):
        self.calls: list[BuildError] = []

    async def apply_fix(self, error, context) -> FixResult:
        self.calls.append(error)
        return FixResult(
            success=True,
            changes=[FileChange(file=error.file, kind=ChangeKind.CREATE, content=f"// {len(self.calls)}\n")],
            source="recording",
        )


class NullRegistry:
    async def apply_fix(self, error, context) -> FixResult:
        return FixResult.manual("No automatic fix available for this error")


class LineClassifier:
    """Interprets the build output as a count of errors on successive lines of one file."""

    def __init__(self, file: str, message: str = "error", category: ErrorCategory = ErrorCategory.TYPESCRIPT):
        self.file = file
        self.message = message
        self.category = category

    def classify_errors(self, output: str) -> list[BuildError]:
        return [
            BuildError(self.category, self.message, file=self.file, line=i + 1)
            for i in range(int(output))
        ]

    def group_by_category(self, errors):
        return group_by_category(errors)


class FakeAgent:
    """Rewrites the error's file on every request, or always gives up."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.calls: list[BuildError] = []

    async def request_fix(self, error, project_context, build_output) -> FixResult:
        self.calls.append(error)
        if not self.succeed:
            return FixResult.manual("Agent could not find a fix", source="agent")
        return FixResult(
            success=True,
            changes=[FileChange(
                file=error.file, content=f"// agent fix {len(self.calls)}\n", full_replacement=True
            )],
            confidence=0.8,
            source="agent",
        )


class SpyGenerators:
    def __init__(self):
        self.seen: list[BuildError] = []

    def is_generator_fixable(self, error) -> bool:
        self.seen.append(error)
        return True

    def determine_generator(self, error) -> str:
        return CONTROL_FLOW

    def has_run(self, name: str) -> bool:
        return False

    async def try_fix(self, error) -> FixResult:
        self.seen.append(error)
        return FixResult(success=False, source="generator")


class FakeGeneratorCommand:
    """Stands in for the framework CLI; every invocation prints *output*."""

    def __init__(self, output: str):
        self.output = output
        self.commands: list[str] = []

    async def __call__(self, command: str, cwd: Path, timeout: float | None = None) -> BuildResult:
        self.commands.append(command)
        return BuildResult(success=True, output=self.output, exit_code=0)


class FakeLLM:
    def __init__(self, response: ReasoningResponse):
        self.response = response
        self.requests = []

    async def request_fix(self, request) -> ReasoningResponse:
        self.requests.append(request)
        return self.response


@pytest.fixture
def project(tmp_path: Path) -> Path:
    (tmp_path / "src" / "app").mkdir(parents=True)
    (tmp_path / "src" / "app" / "app.component.ts").write_text(
        "import { Component } from '@angular/core';\n\nexport class AppComponent {}\n"
    )
    (tmp_path / "src" / "app" / "a.ts").write_text("const a: B = makeA();\n")
    return tmp_path


@pytest.fixture
def config() -> BuildMendConfig:
    config = BuildMendConfig()
    config.loop.use_generators = False
    config.cache.enabled = False
    return config


def _make_loop(project: Path, runner, config: BuildMendConfig, **kwargs) -> BuildFixLoop:
    return BuildFixLoop(
        project,
        "17.0.0",
        runner,
        config=config,
        reporter=Reporter(Console(file=io.StringIO())),
        backups=FileBackupSet(project, persist=False),
        **kwargs,
    )


class TestDeterministicFixes:
    @pytest.mark.parametrize("output", [MISSING_MODULE, ESBUILD_MISSING_MODULE], ids=["tsc", "esbuild"])
    def test_missing_module_fixed_then_build_passes(self, project: Path, config: BuildMendConfig, output: str):
        runner = FakeRunner(output, None)

        result = asyncio.run(_make_loop(project, runner, config).run())

        assert result.success is True
        assert result.attempts == 2
        assert [e.message for e in result.resolved_errors] == ["Cannot find module 'rxjs/operators'"]
        assert result.applied_fixes[0].source == "ImportFixStrategy"
        content = (project / "src" / "app" / "app.component.ts").read_text()
        assert "import 'rxjs/operators';" in content

    def test_build_passing_first_time(self, project: Path, config: BuildMendConfig):
        result = asyncio.run(_make_loop(project, FakeRunner(None), config).run())
        assert result.success
        assert result.attempts == 1
        assert result.applied_fixes == []

    def test_unclassifiable_failure_stops(self, project: Path, config: BuildMendConfig):
        result = asyncio.run(_make_loop(project, FakeRunner("Segmentation fault"), config).run())

        assert not result.success
        assert result.attempts == 1
        assert "inspect the build output" in result.manual_actions[0]

    def test_attempt_budget(self, project: Path, config: BuildMendConfig):
        config.loop.max_attempts = 3
        runner = FakeRunner("1")
        registry = RecordingRegistry()

        result = asyncio.run(
            _make_loop(project, runner, config, classifier=CountingClassifier(), registry=registry).run()
        )

        assert not result.success
        assert result.attempts == 3
        assert runner.builds == 3
        assert len(registry.calls) == 3


class TestRegression:
    def test_rollback_after_repeated_regressions(self, project: Path, config: BuildMendConfig):
        runner = FakeRunner("5", "7", "9", "5")
        registry = RecordingRegistry()
        loop = _make_loop(project, runner, config, classifier=CountingClassifier(), registry=registry)

        result = asyncio.run(loop.run())

        assert result.rolled_back is True
        assert result.attempts == 3
        # attempts 1 and 2 only; nothing is fixed once the rollback triggers
        assert len(registry.calls) == 5 + 7
        assert runner.builds == 4
        assert len(result.unresolved_errors) == 5
        assert all(u.suggestion == "Rolled back after repeated regressions" for u in result.unresolved_errors)
        assert result.resolved_errors == []
        assert result.applied_fixes == []
        assert not any((project / "src" / "app" / f"f{i}.ts").exists() for i in range(7))

    def test_improvement_resets_the_streak(self, project: Path, config: BuildMendConfig):
        config.loop.max_attempts = 5
        runner = FakeRunner("3", "4", "2", "3", None)
        loop = _make_loop(project, runner, config, classifier=CountingClassifier(), registry=RecordingRegistry())

        result = asyncio.run(loop.run())

        assert result.success
        assert not result.rolled_back


class TestDependencyErrors:
    def test_dependency_dir_errors_skip_the_fix_chain(self, project: Path, config: BuildMendConfig):
        runner = FakeRunner(
            "./node_modules/whatwg-url/lib/URL.js:10:3 - Error: Cannot convert undefined or null to object"
        )
        registry = RecordingRegistry()

        result = asyncio.run(_make_loop(project, runner, config, registry=registry).run())

        assert registry.calls == []
        assert result.attempts == 1
        [unresolved] = result.unresolved_errors
        assert "upgrade whatwg-url to a version compatible with Angular 17.0.0" in unresolved.suggestion


class TestFixChain:
    def test_dependency_dir_errors_reach_no_fixer(self, project: Path, config: BuildMendConfig):
        runner = FakeRunner(
            "./node_modules/whatwg-url/lib/URL.js:10:3 - Error: Cannot convert undefined or null to object"
        )
        registry, generators, agent = RecordingRegistry(), SpyGenerators(), FakeAgent()

        result = asyncio.run(
            _make_loop(project, runner, config, registry=registry, generators=generators, agent=agent).run()
        )

        assert registry.calls == []
        assert generators.seen == []
        assert agent.calls == []
        assert result.resolved_errors == []
        assert result.applied_fixes == []
        [unresolved] = result.unresolved_errors
        assert unresolved.error.in_dependency_dir

    def test_generator_runs_once_per_session_before_the_agent(self, project: Path, config: BuildMendConfig):
        for name in ("a", "b"):
            (project / "src" / "app" / f"{name}.component.html").write_text('<p *ngIf="x">x</p>\n')
        first, second = (
            BuildError(ErrorCategory.TEMPLATE, "*ngIf is deprecated, use @if", file=f"src/app/{name}.component.html")
            for name in ("a", "b")
        )

        class FixedClassifier:
            def classify_errors(self, output):
                return [first, second]

            def group_by_category(self, errors):
                return group_by_category(errors)

        command = FakeGeneratorCommand("UPDATE src/app/a.component.html (10 bytes)\n")
        agent = FakeAgent(succeed=False)
        loop = _make_loop(
            project,
            FakeRunner("template errors"),
            config,
            classifier=FixedClassifier(),
            registry=NullRegistry(),
            generators=GeneratorRunner(project, "17.0.0", run=command),
            agent=agent,
        )

        result = asyncio.run(loop.run())

        assert command.commands == [f"npx @angular/cli@17 generate {CONTROL_FLOW} --defaults"]
        assert result.attempts == 2
        [fix] = result.applied_fixes
        assert fix.source == CONTROL_FLOW
        assert result.resolved_errors == [first]
        # the first error went to the generator; the agent only sees errors it left
        assert agent.calls == [second, first, second]

    def test_cached_agent_fix_is_reused_by_the_next_session(self, project: Path, config: BuildMendConfig):
        config.cache.enabled = True
        target = project / "src" / "app" / "a.ts"
        original = target.read_text()

        first_agent = FakeAgent()
        first = asyncio.run(
            _make_loop(project, FakeRunner(NOT_ASSIGNABLE, None), config, agent=first_agent).run()
        )
        assert first.success
        assert len(first_agent.calls) == 1
        assert first.cache_stats == CacheStats(hits=0, misses=1)

        target.write_text(original)
        second_agent = FakeAgent()
        second = asyncio.run(
            _make_loop(project, FakeRunner(NOT_ASSIGNABLE, None), config, agent=second_agent).run()
        )

        assert second.success
        assert second_agent.calls == []
        assert second.cache_stats == CacheStats(hits=1, misses=0)
        assert second.applied_fixes[0].from_cache
        assert target.read_text() == "// agent fix 1\n"

    def test_agent_edits_are_restored_on_rollback(self, project: Path, config: BuildMendConfig):
        target = project / "src" / "app" / "a.ts"
        original = target.read_text()
        runner = FakeRunner("1", "2", "3", "1")
        agent = FakeAgent()
        loop = _make_loop(
            project, runner, config, classifier=LineClassifier("src/app/a.ts"), registry=NullRegistry(), agent=agent
        )

        result = asyncio.run(loop.run())

        assert result.rolled_back
        assert len(agent.calls) == 1 + 2
        assert target.read_text() == original
        assert result.resolved_errors == []
        assert result.applied_fixes == []
        assert len(result.unresolved_errors) == 1

    def test_unrestored_generator_files_are_reported(self, project: Path, config: BuildMendConfig):
        template = project / "src" / "app" / "a.component.html"
        template.write_text('<p *ngIf="x">x</p>\n')
        command = FakeGeneratorCommand(
            "UPDATE src/app/a.component.html (10 bytes)\nUPDATE src/app/shared.ts (20 bytes)\n"
        )
        loop = _make_loop(
            project,
            FakeRunner("1", "2", "3", "1"),
            config,
            classifier=LineClassifier(
                "src/app/a.component.html", "*ngIf is deprecated, use @if", ErrorCategory.TEMPLATE
            ),
            registry=NullRegistry(),
            generators=GeneratorRunner(project, "17.0.0", run=command),
            agent=FakeAgent(),
        )

        result = asyncio.run(loop.run())

        assert result.rolled_back
        assert template.read_text() == '<p *ngIf="x">x</p>\n'
        [note] = [a for a in result.manual_actions if "not rolled back" in a]
        assert note.endswith(": src/app/shared.ts")


class TestReasoningBackend:
    def test_single_shot_fix_is_applied_and_cached(self, project: Path, config: BuildMendConfig):
        config.cache.enabled = True
        llm = FakeLLM(ReasoningResponse(
            success=True,
            changes=[FileChange(
                file="",
                search_replace=[SearchReplace("const a: B = makeA();", "const a: B = makeA() as B;")],
            )],
            reasoning="cast",
            confidence=0.6,
        ))
        config.loop.use_agent = False

        result = asyncio.run(_make_loop(project, FakeRunner(NOT_ASSIGNABLE, None), config, llm=llm).run())

        assert result.success
        assert result.applied_fixes[0].source == "llm"
        assert (project / "src" / "app" / "a.ts").read_text() == "const a: B = makeA() as B;\n"
        [request] = llm.requests
        assert request.constraints == DEFAULT_CONSTRAINTS
        assert result.cache_stats.misses == 1
        assert list((project / ".buildmend" / "cache").glob("*.json"))

    def test_manifest_edits_are_refused(self, project: Path, config: BuildMendConfig):
        (project / "package.json").write_text("{}")
        llm = FakeLLM(ReasoningResponse(
            success=True,
            changes=[FileChange(file="package.json", content='{"dependencies": {}}', full_replacement=True)],
        ))
        config.loop.use_agent = False

        result = asyncio.run(_make_loop(project, FakeRunner(NOT_ASSIGNABLE), config, llm=llm).run())

        assert not result.success
        assert (project / "package.json").read_text() == "{}"
        assert "rejected" in result.unresolved_errors[0].suggestion

    def test_no_backend_leaves_error_unresolved(self, project: Path, config: BuildMendConfig):
        result = asyncio.run(_make_loop(project, FakeRunner(NOT_ASSIGNABLE), config).run())

        assert not result.success
        assert result.attempts == 1
        assert result.unresolved_errors[0].error.code == "TS2322"


class TestHelpers:
    def test_find_relevant_context(self, project: Path, config: BuildMendConfig):
        (project / "src" / "app" / "legacy.ts").write_text("import x from 'legacy-lib';\n")
        loop = _make_loop(project, FakeRunner(None), config)

        context = loop.find_relevant_context(BuildError(ErrorCategory.IMPORT, "Cannot find module 'legacy-lib'"))

        assert context.files == [project / "src" / "app" / "legacy.ts"]
        assert "legacy-lib" in context.search_info

    def test_verify_build_and_tests(self, project: Path, config: BuildMendConfig):
        loop = _make_loop(project, FakeRunner(None, tests_pass=False), config)
        verification = asyncio.run(loop.verify_build_and_tests())
        assert verification.build_passed
        assert not verification.tests_passed
