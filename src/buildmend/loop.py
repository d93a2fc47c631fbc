"""The build-fix loop: build, classify, fix, rebuild.

Attempts run strictly one after another. Within an attempt every error
goes through the fix chain (deterministic strategies, then framework
generators, then the reasoning backend) and the first successful result
is written through the PatchApplier. The loop stops on a passing build,
after a regression rollback, when the attempt budget is spent, or when an
attempt fixes nothing.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from buildmend.agent.engine import AgentFixEngine
from buildmend.agent.state import packages_in
from buildmend.build.generators import GeneratorRunner
from buildmend.build.runner import BuildRunner
from buildmend.classify.classifier import ErrorClassifier
from buildmend.core.config import BuildMendConfig
from buildmend.core.models import (
    BuildError,
    CacheStats,
    FixResult,
    LoopResult,
    UnresolvedError,
)
from buildmend.core.output import Reporter
from buildmend.fix.applier import PatchApplier
from buildmend.fix.backups import FileBackupSet
from buildmend.fix.base import FixContext
from buildmend.fix.strategies import FixStrategyRegistry
from buildmend.llm.cache import ResponseCache
from buildmend.llm.client import LLMClient, ReasoningRequest
from buildmend.llm.guardrails import Guardrails
from buildmend.llm.prompts import DEFAULT_CONSTRAINTS

logger = logging.getLogger(__name__)

MAX_CONTEXT_FILES = 3
MAX_SEARCH_DEPTH = 4
_SEARCH_DIRS = ("src", "projects")
_SKIP_DIRS = {"node_modules", "dist", ".git", ".angular"}


@dataclass
class RelevantContext:
    files: list[Path] = field(default_factory=list)
    search_info: str = ""


@dataclass
class VerificationResult:
    build_passed: bool
    tests_passed: bool


class BuildFixLoop:
    """Drives repeated build attempts for one project session."""

    def __init__(
        self,
        project_path: Path,
        target_version: str,
        runner: BuildRunner,
        config: BuildMendConfig | None = None,
        llm: LLMClient | None = None,
        reporter: Reporter | None = None,
        classifier: ErrorClassifier | None = None,
        registry: FixStrategyRegistry | None = None,
        generators: GeneratorRunner | None = None,
        agent: AgentFixEngine | None = None,
        cache: ResponseCache | None = None,
        backups: FileBackupSet | None = None,
    ):
        self.project_path = Path(project_path)
        self.target_version = target_version
        self.runner = runner
        self.config = config or BuildMendConfig()
        self.llm = llm
        self.reporter = reporter or Reporter()
        self.classifier = classifier or ErrorClassifier()
        self.registry = registry or FixStrategyRegistry()

        if generators is None and self.config.loop.use_generators:
            generators = GeneratorRunner(
                self.project_path, target_version, timeout=self.config.build.timeout_seconds
            )
        self.generators = generators

        if agent is None and llm is not None and self.config.loop.use_agent:
            agent_cfg = self.config.agent
            agent = AgentFixEngine(
                llm,
                self.project_path,
                target_version,
                max_iterations=agent_cfg.max_iterations,
                max_token_budget=agent_cfg.max_token_budget,
                fast_path_threshold=agent_cfg.fast_path_threshold,
                record_threshold=agent_cfg.record_threshold,
                reporter=self.reporter,
            )
        self.agent = agent

        if cache is None and self.config.cache.enabled:
            cache = ResponseCache(
                self.project_path, max_age_seconds=self.config.cache.max_age_hours * 3600
            )
        self.cache = cache

        self.backups = backups if backups is not None else FileBackupSet(self.project_path)
        self.applier = PatchApplier(self.project_path, self.reporter, self.backups)
        self.cache_stats = CacheStats()
        self.generated_files: list[str] = []
        self.fix_context = FixContext(self.project_path, target_version, llm)

    async def run(self) -> LoopResult:
        """Run the session. Only BuildToolError escapes."""
        max_attempts = self.config.loop.max_attempts
        threshold = self.config.loop.regression_threshold

        attempts = 0
        resolved: list[BuildError] = []
        applied: list[FixResult] = []
        unresolved: list[UnresolvedError] = []
        manual_actions: list[str] = []
        previous_count: int | None = None
        worse_streak = 0
        rolled_back = False

        try:
            while attempts < max_attempts:
                attempts += 1
                self.reporter.attempt_header(attempts, max_attempts)

                build = await self.runner.run_build()
                if build.success:
                    self.reporter.success("Build successful")
                    return self._result(True, attempts, resolved, [], applied, manual_actions)

                errors = self.classifier.classify_errors(build.output)
                self.reporter.info(f"Found {len(errors)} error(s)")
                if not errors:
                    manual_actions.append(
                        "The build failed without classifiable errors; inspect the build output"
                    )
                    unresolved = []
                    break
                self.reporter.print_errors(errors)

                if previous_count is not None and len(errors) > previous_count:
                    worse_streak += 1
                    self.reporter.warning(
                        f"Error count increased from {previous_count} to {len(errors)} "
                        f"({worse_streak}/{threshold})"
                    )
                    if worse_streak >= threshold:
                        unresolved, kept = await self._rollback()
                        rolled_back = True
                        # restored files no longer carry these fixes
                        resolved, applied = [], []
                        if kept:
                            manual_actions.append(
                                "Generator changes were not rolled back; review them in version control: "
                                + ", ".join(kept)
                            )
                        break
                elif previous_count is not None and len(errors) < previous_count:
                    worse_streak = 0
                    self.reporter.success(f"Progress: {previous_count} -> {len(errors)} errors")
                previous_count = len(errors)

                unresolved = []
                fixed_any = False
                for category, group in self.classifier.group_by_category(errors).items():
                    logger.debug("Processing %d %s error(s)", len(group), category.value)
                    for error in group:
                        if error.in_dependency_dir:
                            unresolved.append(UnresolvedError(error, self._dependency_suggestion(error)))
                            self.reporter.detail(
                                f"Skipping {error.location}: package compatibility issue, not a code error"
                            )
                            continue

                        result = await self.fix_error(error, build.output)
                        if result.success:
                            resolved.append(error)
                            applied.append(result)
                            fixed_any = True
                            self.reporter.print_fix(error, result)
                        else:
                            unresolved.append(UnresolvedError(error, result.suggestion or result.error))
                            if result.requires_manual_intervention and result.suggestion:
                                if result.suggestion not in manual_actions:
                                    manual_actions.append(result.suggestion)
                            self.reporter.error(f"Could not fix {error.location}")

                if not fixed_any:
                    self.reporter.warning("No fixes could be applied automatically")
                    break
        finally:
            self.backups.clear()

        return self._result(False, attempts, resolved, unresolved, applied, manual_actions, rolled_back)

    async def fix_error(self, error: BuildError, build_output: str) -> FixResult:
        """Run the fix chain for one error; the first result that changes something wins."""
        result = await self.registry.apply_fix(error, self.fix_context)
        if result.success and result.changes:
            if self._write(result):
                return result
            result = FixResult.manual(
                "The proposed change did not match the file contents", source=result.source
            )
        elif result.success:
            logger.debug("%s reported success without changes for %s", result.source, error.location)

        if self.generators is not None and self.generators.is_generator_fixable(error):
            name = self.generators.determine_generator(error)
            if name is not None and not self.generators.has_run(name):
                self.reporter.detail(f"Trying generator {name}")
                if error.file:
                    self.backups.backup(error.file)
                generated = await self.generators.try_fix(error)
                if generated.success:
                    for change in generated.changes:
                        if change.file not in self.generated_files:
                            self.generated_files.append(change.file)
                    return generated

        if self.agent is None and self.llm is None:
            return result

        if error.file:
            self.backups.backup(error.file)
        ai_result = await self._try_ai_fix(error, build_output)
        if ai_result.success:
            if self._write(ai_result):
                return ai_result
            return FixResult.manual(
                "The suggested change did not match the file contents", source=ai_result.source
            )
        return ai_result

    def _write(self, result: FixResult) -> bool:
        return bool(self.applier.apply(result.changes))

    async def _try_ai_fix(self, error: BuildError, build_output: str) -> FixResult:
        if not error.file:
            return await self._try_ai_fix_without_file(error, build_output)

        path = self.fix_context.resolve(error.file)
        try:
            content = path.read_text()
        except (OSError, UnicodeDecodeError):
            return FixResult.manual(
                f"File not found or unreadable: {error.file}. Check the build output for the actual location."
            )

        if self.cache is not None:
            cached = self.cache.get(error, content)
            if cached is not None:
                self.cache_stats.hits += 1
                self.reporter.detail("Using cached fix")
                return cached
            self.cache_stats.misses += 1

        result: FixResult | None = None
        if self.agent is not None:
            result = await self.agent.request_fix(
                error, f"File: {error.file}\n{content[:2000]}", build_output
            )
            if result.success:
                self._remember(error, content, result)
                return result

        if self.llm is None:
            return result or FixResult.manual("No reasoning backend configured")

        result = await self._single_shot(error, error.file, content)
        if result.success:
            self._remember(error, content, result)
        return result

    async def _try_ai_fix_without_file(self, error: BuildError, build_output: str) -> FixResult:
        if self.agent is not None and build_output:
            result = await self.agent.request_fix(
                error,
                f"Project: {self.project_path}, Target: Angular {self.target_version}",
                build_output,
            )
            if result.success:
                return result

        context = self.find_relevant_context(error)
        if context.files and self.llm is not None:
            target = context.files[0]
            self.backups.backup(target)
            try:
                content = target.read_text()
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("Could not read %s: %s", target, e)
            else:
                return await self._single_shot(error, self.fix_context.relative(target), content)

        return FixResult.manual(
            f"No file specified. Error: {error.message}. "
            "Check tsconfig.json or angular.json for configuration issues."
        )

    async def _single_shot(self, error: BuildError, file: str, content: str) -> FixResult:
        request = ReasoningRequest(
            kind="refactor",
            error=error,
            file_content=content,
            target_version=self.target_version,
            constraints=list(DEFAULT_CONSTRAINTS),
        )
        ok, reason = Guardrails.validate_request(request)
        if not ok:
            return FixResult.manual(reason or "Request rejected", error=reason, source="llm")

        try:
            response = await self.llm.request_fix(request)
        except Exception as e:
            logger.warning("Reasoning backend failed for %s: %s", error.location, e)
            return FixResult.manual(
                f"Reasoning backend failed: {e}. Check the API key, network and service availability.",
                error=str(e),
                source="llm",
            )

        ok, reason = Guardrails.validate_response(response)
        if not ok:
            return FixResult.manual(f"Reasoning backend response rejected: {reason}", error=reason, source="llm")
        if not response.success:
            return FixResult.manual(response.reasoning or "Reasoning backend could not suggest a fix", source="llm")

        for change in response.changes:
            if not change.file:
                change.file = file
        return FixResult(
            success=True,
            changes=response.changes,
            reasoning=response.reasoning,
            confidence=response.confidence,
            source="llm",
        )

    def _remember(self, error: BuildError, content: str, result: FixResult) -> None:
        if self.cache is not None:
            self.cache.set(error, content, result)

    async def _rollback(self) -> tuple[list[UnresolvedError], list[str]]:
        """Restore every backup and rebuild once.

        Returns the post-rollback errors and the generator-written files that
        had no backup and so still hold generated code.
        """
        self.reporter.warning("Rolling back changes: fixes made the build worse")
        kept = [f for f in self.generated_files if f not in self.backups]
        restored = self.backups.restore_all()
        self.reporter.info(f"Restored {restored} file(s)")
        if kept:
            self.reporter.warning(
                f"{len(kept)} file(s) rewritten by generators were not rolled back: {', '.join(kept)}"
            )

        rebuild = await self.runner.run_build()
        errors = [] if rebuild.success else self.classifier.classify_errors(rebuild.output)
        self.reporter.info(f"Rolled back to original code with {len(errors)} error(s)")
        return [UnresolvedError(e, "Rolled back after repeated regressions") for e in errors], kept

    def _dependency_suggestion(self, error: BuildError) -> str:
        packages = packages_in(error.file or "")
        name = packages[0] if packages else "the package"
        return (
            f"Package compatibility issue, not a code error: upgrade {name} "
            f"to a version compatible with Angular {self.target_version}"
        )

    def _result(
        self,
        success: bool,
        attempts: int,
        resolved: list[BuildError],
        unresolved: list[UnresolvedError],
        applied: list[FixResult],
        manual_actions: list[str],
        rolled_back: bool = False,
    ) -> LoopResult:
        return LoopResult(
            success=success,
            attempts=attempts,
            resolved_errors=resolved,
            unresolved_errors=unresolved,
            applied_fixes=applied,
            cache_stats=self.cache_stats if self.cache is not None else None,
            rolled_back=rolled_back,
            manual_actions=manual_actions,
        )

    def find_relevant_context(self, error: BuildError) -> RelevantContext:
        """Source files mentioning names quoted in an error that carries no file."""
        terms: list[str] = []
        m = re.search(r"Cannot find module ['\"](.+?)['\"]", error.message)
        if m:
            terms.append(m.group(1))
        for quoted in re.findall(r"['\"]([A-Za-z0-9_-]+)['\"]", error.message):
            if quoted not in terms:
                terms.append(quoted)
        if not terms:
            return RelevantContext(search_info="No search terms extracted from error")

        files: list[Path] = []
        for name in _SEARCH_DIRS:
            root = self.project_path / name
            if not root.is_dir():
                continue
            for dirpath, dirnames, filenames in os.walk(root):
                depth = len(Path(dirpath).relative_to(root).parts)
                dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS and depth < MAX_SEARCH_DEPTH)
                for filename in sorted(filenames):
                    if not filename.endswith((".ts", ".js")):
                        continue
                    path = Path(dirpath) / filename
                    try:
                        text = path.read_text()
                    except (OSError, UnicodeDecodeError):
                        continue
                    if any(term in text for term in terms):
                        files.append(path)
                        if len(files) >= MAX_CONTEXT_FILES:
                            return RelevantContext(files, f"Searched for: {', '.join(terms)}")

        return RelevantContext(files, f"Searched for: {', '.join(terms)}")

    async def verify_build_and_tests(self) -> VerificationResult:
        build = await self.runner.run_build()
        tests = await self.runner.run_tests()
        return VerificationResult(build_passed=build.success, tests_passed=tests.success)
