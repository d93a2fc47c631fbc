"""Tests for the code-migration generator wrapper."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from buildmend.build.generators import (
    CONTROL_FLOW,
    ROUTE_LAZY_LOADING,
    STANDALONE,
    GeneratorRunner,
    determine_generator,
    extract_migration_info,
    is_generator_fixable,
)
from buildmend.core.errors import BuildToolError
from buildmend.core.models import BuildError, BuildResult, ErrorCategory


class FakeRun:
    """Records commands and answers by the first matching prefix."""

    def __init__(self, answers: dict[str, str] | None = None, raises: bool = False):
        self.answers = answers or {}
        self.raises = raises
        self.commands: list[str] = []

    async def __call__(self, command: str, cwd: Path, timeout: float | None = None) -> BuildResult:
        self.commands.append(command)
        if self.raises:
            raise BuildToolError(command, "npx: not found")
        for prefix, output in self.answers.items():
            if command.startswith(prefix):
                return BuildResult(success=True, output=output, exit_code=0)
        return BuildResult(success=True, output="Nothing to be done.\n", exit_code=0)


def _error(message: str) -> BuildError:
    return BuildError(ErrorCategory.TEMPLATE, message, file="src/app/a.component.html")


GENERATE = "npx @angular/cli@17 generate"
UPDATE = "npx @angular/cli@17 update"


class TestHelpers:
    def test_extract_migration_info(self):
        output = (
            "UPDATE src/app/a.component.html (1234 bytes)\n"
            "UPDATE src/app/b.ts\n"
            "UPDATE src/app/a.component.html (1234 bytes)\n"
            '  Running migration "control-flow"\n'
        )
        files, migrations = extract_migration_info(output)

        assert files == ["src/app/a.component.html", "src/app/b.ts"]
        assert migrations == ["control-flow"]

    @pytest.mark.parametrize("message, expected", [
        ("Can't bind to 'ngIf': use *ngIf with CommonModule", CONTROL_FLOW),
        ("Component AppComponent is standalone", STANDALONE),
        ("loadChildren string syntax is no longer supported", ROUTE_LAZY_LOADING),
        ("Object is possibly 'undefined'.", None),
    ])
    def test_determine_generator(self, message: str, expected):
        assert determine_generator(_error(message)) == expected

    def test_fixable_patterns(self):
        assert is_generator_fixable(_error("HttpClientModule is deprecated"))
        assert not is_generator_fixable(_error("Object is possibly 'undefined'."))


class TestGeneratorRunner:
    def test_generator_changes_are_reported(self, tmp_path: Path):
        run = FakeRun({GENERATE: "UPDATE src/app/a.component.html (10 bytes)\n"})
        runner = GeneratorRunner(tmp_path, "17.1.0", run=run)

        result = asyncio.run(runner.try_fix(_error("*ngIf is deprecated")))

        assert result.success
        assert result.source == CONTROL_FLOW
        assert [c.file for c in result.changes] == ["src/app/a.component.html"]
        assert result.changes[0].content is None
        assert run.commands == [f"{GENERATE} {CONTROL_FLOW} --defaults"]

    def test_each_generator_runs_once(self, tmp_path: Path):
        run = FakeRun({GENERATE: "UPDATE src/app/a.component.html (10 bytes)\n"})
        runner = GeneratorRunner(tmp_path, "17.1.0", run=run)

        asyncio.run(runner.try_fix(_error("*ngIf is deprecated")))
        again = asyncio.run(runner.try_fix(_error("*ngFor is deprecated")))

        assert not again.success
        assert again.suggestion == "Generator already attempted"
        assert len(run.commands) == 1
        assert runner.has_run(CONTROL_FLOW)

    def test_falls_back_to_package_migrations(self, tmp_path: Path):
        run = FakeRun({UPDATE: 'Running migration "standalone"\nUPDATE src/main.ts (5 bytes)\n'})
        runner = GeneratorRunner(tmp_path, "17.1.0", run=run)

        outcome = asyncio.run(runner.run_generator(STANDALONE))

        assert outcome.success
        assert outcome.files_modified == ["src/main.ts"]
        assert outcome.migrations_applied == ["standalone"]
        assert run.commands[1] == f"{UPDATE} @angular/core --migrate-only --allow-dirty --force"

    def test_tool_errors_become_no_change(self, tmp_path: Path):
        runner = GeneratorRunner(tmp_path, "17.1.0", run=FakeRun(raises=True))

        result = asyncio.run(runner.try_fix(_error("Component AppComponent is standalone")))

        assert not result.success
        assert result.suggestion == "Generator ran but made no changes"

    def test_no_applicable_generator(self, tmp_path: Path):
        run = FakeRun()
        result = asyncio.run(GeneratorRunner(tmp_path, "17", run=run).try_fix(_error("HttpClientModule")))

        assert result.suggestion == "No applicable generator found"
        assert run.commands == []
