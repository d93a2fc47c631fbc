"""Wrapper around the framework CLI's official code-migration generators."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

from buildmend.build.runner import run_shell
from buildmend.core.errors import BuildToolError
from buildmend.core.models import BuildError, BuildResult, ChangeKind, FileChange, FixResult

logger = logging.getLogger(__name__)

CommandRunner = Callable[[str, Path, "float | None"], Awaitable[BuildResult]]

GENERATOR_FIXABLE_PATTERNS = (
    re.compile(r"HttpClientModule", re.IGNORECASE),
    re.compile(r"provideHttpClient", re.IGNORECASE),
    re.compile(r"RouterModule\.forRoot", re.IGNORECASE),
    re.compile(r"provideRouter", re.IGNORECASE),
    re.compile(r"standalone.*component", re.IGNORECASE),
    re.compile(r"imports.*array", re.IGNORECASE),
    re.compile(r"@if|@for|@switch|@defer"),
    re.compile(r"\*ngIf|\*ngFor|\*ngSwitch"),
    re.compile(r"signal\(|computed\(|effect\("),
    re.compile(r"input\(|output\(|model\("),
    re.compile(r"provideZoneChangeDetection", re.IGNORECASE),
    re.compile(r"provideClientHydration", re.IGNORECASE),
    re.compile(r"@angular/material|@angular/cdk"),
)

CONTROL_FLOW = "@angular/core:control-flow-migration"
STANDALONE = "@angular/core:standalone-migration"
SIGNALS = "@angular/core:signal-migration"
ROUTE_LAZY_LOADING = "@angular/core:route-lazy-loading"
INJECT = "@angular/core:inject-migration"

_UPDATED_FILE = re.compile(r"^UPDATE (.+?)(?: \(\d+ bytes\))?\s*$", re.MULTILINE)
_MIGRATION_NAME = re.compile(r'Running migration "(.+?)"')


@dataclass
class GeneratorOutcome:
    files_modified: list[str] = field(default_factory=list)
    migrations_applied: list[str] = field(default_factory=list)
    output: str = ""
    success: bool = False


def extract_migration_info(output: str) -> tuple[list[str], list[str]]:
    """Return ``(files_modified, migrations_applied)`` parsed from CLI output."""
    files: list[str] = []
    for m in _UPDATED_FILE.finditer(output):
        name = m.group(1).strip()
        if name not in files:
            files.append(name)
    migrations: list[str] = []
    for m in _MIGRATION_NAME.finditer(output):
        if m.group(1) not in migrations:
            migrations.append(m.group(1))
    return files, migrations


def determine_generator(error: BuildError) -> str | None:
    msg = error.message.lower()
    if "*ngif" in msg or "*ngfor" in msg or "*ngswitch" in msg:
        return CONTROL_FLOW
    if "standalone" in msg or "imports array" in msg:
        return STANDALONE
    if "signal" in msg or "computed" in msg or "effect" in msg:
        return SIGNALS
    if "loadchildren" in msg and "string" in msg:
        return ROUTE_LAZY_LOADING
    if "inject(" in msg or "injection context" in msg:
        return INJECT
    return None


def package_for_generator(name: str) -> str | None:
    for prefix, package in (
        ("@angular/core", "@angular/core"),
        ("@angular/material", "@angular/material"),
        ("@angular/cdk", "@angular/cdk"),
        ("@ngrx", "@ngrx/store"),
    ):
        if name.startswith(prefix):
            return package
    return None


def is_generator_fixable(error: BuildError) -> bool:
    return any(p.search(error.message) for p in GENERATOR_FIXABLE_PATTERNS)


class GeneratorRunner:
    """Runs each generator at most once per session."""

    def __init__(
        self,
        project_path: Path,
        target_version: str,
        run: CommandRunner = run_shell,
        timeout: float | None = 600.0,
    ):
        self.project_path = Path(project_path)
        self.target_version = target_version
        self.major = target_version.split(".")[0]
        self._run = run
        self.timeout = timeout
        self._ran: set[str] = set()

    def is_generator_fixable(self, error: BuildError) -> bool:
        return is_generator_fixable(error)

    def determine_generator(self, error: BuildError) -> str | None:
        return determine_generator(error)

    def has_run(self, name: str) -> bool:
        return name in self._ran

    async def _invoke(self, command: str) -> BuildResult:
        try:
            return await self._run(command, self.project_path, self.timeout)
        except BuildToolError as e:
            return BuildResult(success=False, output=str(e))

    async def run_generator(self, name: str) -> GeneratorOutcome:
        """Run generator *name*, falling back to ``ng update --migrate-only`` for its package."""
        if name in self._ran:
            return GeneratorOutcome(output=f"{name} already ran this session")
        self._ran.add(name)

        cli = f"npx @angular/cli@{self.major}"
        result = await self._invoke(f"{cli} generate {name} --defaults")
        files, migrations = extract_migration_info(result.output)
        if files:
            return GeneratorOutcome(files, migrations, result.output, success=True)

        output = result.output
        package = package_for_generator(name)
        if package:
            logger.info("%s changed nothing; trying ng update migrations for %s", name, package)
            update = await self._invoke(f"{cli} update {package} --migrate-only --allow-dirty --force")
            output += update.output
            files, migrations = extract_migration_info(update.output)
            if files or migrations:
                return GeneratorOutcome(files, migrations, output, success=True)

        return GeneratorOutcome(output=output)

    async def try_fix(self, error: BuildError) -> FixResult:
        """Pick and run the generator for *error*, reporting failure as data."""
        name = self.determine_generator(error)
        if name is None:
            return FixResult(success=False, suggestion="No applicable generator found", source="generator")
        if self.has_run(name):
            return FixResult(success=False, suggestion="Generator already attempted", source="generator")

        outcome = await self.run_generator(name)
        if not outcome.success:
            return FixResult(success=False, suggestion="Generator ran but made no changes", source=name)
        return FixResult(
            success=True,
            # already written by the generator; recorded for the report only
            changes=[FileChange(file=f, kind=ChangeKind.MODIFY) for f in outcome.files_modified],
            reasoning=f"Applied generator: {name}",
            source=name,
        )
