"""Ordered chain of narrow fix strategies.

Each strategy recognises one error shape via ``can_handle`` and proposes
FileChanges from ``apply``. Strategies never write to disk; the driver
applies their changes through the PatchApplier. The registry asks only
the first strategy whose predicate matches.
"""

from __future__ import annotations

import logging
import re

from buildmend.core.models import (
    BuildError,
    ChangeKind,
    ErrorCategory,
    FileChange,
    FixResult,
    SearchReplace,
)
from buildmend.fix.base import FixContext, FixStrategy, insert_after_last_import
from buildmend.fix.migrations import (
    HttpClientMigrationStrategy,
    RouterMigrationStrategy,
    RxJSImportStrategy,
)

logger = logging.getLogger(__name__)


class DependencyFixStrategy(FixStrategy):
    """Module-not-found: suggests an install, never edits the manifest."""

    name = "DependencyFixStrategy"
    category = ErrorCategory.DEPENDENCY

    _RESOLVE = re.compile(r"Can't resolve ['\"](.+?)['\"]")

    def can_handle(self, error: BuildError) -> bool:
        return error.category is ErrorCategory.DEPENDENCY and (
            "Module not found" in error.message or "Can't resolve" in error.message
        )

    async def apply(self, error: BuildError, context: FixContext) -> FixResult:
        m = self._RESOLVE.search(error.message)
        if m is None:
            return self._manual("Unable to extract module name from error")

        module = m.group(1)
        if module.startswith((".", "/")):
            return self._manual(f"Fix relative import path: {module}")

        return self._manual(f"Install or upgrade package: npm install {package_name(module)}")


def package_name(module: str) -> str:
    """``@scope/pkg/sub`` -> ``@scope/pkg``; ``pkg/sub`` -> ``pkg``."""
    parts = module.split("/")
    if module.startswith("@"):
        return "/".join(parts[:2])
    return parts[0]


class ImportFixStrategy(FixStrategy):
    """Adds a minimal import for ``Cannot find module`` errors."""

    name = "ImportFixStrategy"
    category = ErrorCategory.IMPORT

    _MISSING = re.compile(r"Cannot find module ['\"](.+?)['\"]")

    def can_handle(self, error: BuildError) -> bool:
        return error.category is ErrorCategory.IMPORT

    async def apply(self, error: BuildError, context: FixContext) -> FixResult:
        if not error.file:
            return FixResult(success=False, error="No file specified", source=self.name)

        try:
            content = context.resolve(error.file).read_text()
        except OSError as e:
            return self._manual(f"Cannot read {error.file}", error=str(e))

        m = self._MISSING.search(error.message)
        module = m.group(1) if m else None
        if module:
            fixed = insert_after_last_import(content, f"import '{module}';")
            if fixed is not None:
                return self._modified(error.file, fixed, f"Added import for '{module}'")

        if context.llm is not None:
            return await self._generate(error, context, content)

        return self._manual(f"Add missing import or install package: {module}")

    async def _generate(self, error: BuildError, context: FixContext, content: str) -> FixResult:
        try:
            generated = await context.llm.generate_code(
                "Fix a missing module import error.",
                error,
                content,
                [
                    "Add the missing import statement or remove the stale one",
                    "Preserve existing code structure",
                ],
            )
        except Exception as e:
            logger.warning("Code generation failed for %s: %s", error.location, e)
            return self._manual("Install missing package or add import", error=str(e))

        if generated.code:
            result = self._modified(error.file, generated.code)
            result.reasoning = generated.reasoning
            return result
        return self._manual(generated.reasoning or "Could not generate a fix")


class StandaloneComponentFixStrategy(FixStrategy):
    name = "StandaloneComponentFixStrategy"
    category = ErrorCategory.STANDALONE

    _DECORATOR = re.compile(r"@Component\s*\(\s*\{")

    def can_handle(self, error: BuildError) -> bool:
        return error.category is ErrorCategory.STANDALONE

    async def apply(self, error: BuildError, context: FixContext) -> FixResult:
        if not error.file:
            return FixResult(success=False, error="No file specified", source=self.name)

        try:
            content = context.resolve(error.file).read_text()
        except OSError as e:
            return self._manual(f"Cannot read {error.file}", error=str(e))

        if "imports array" in error.message:
            m = self._DECORATOR.search(content)
            if m is not None:
                fixed = content[: m.end()] + "\n  imports: []," + content[m.end():]
                return self._modified(error.file, fixed, "Added an imports array to the component")

        return self._manual("Manually add required imports to standalone component")


class RxJSOperatorFixStrategy(FixStrategy):
    name = "RxJSOperatorFixStrategy"
    category = ErrorCategory.RXJS

    def can_handle(self, error: BuildError) -> bool:
        return error.category is ErrorCategory.RXJS

    async def apply(self, error: BuildError, context: FixContext) -> FixResult:
        return self._manual("RxJS operator changes may require AI assistance")


class TypeScriptStrictFixStrategy(FixStrategy):
    """Rewrites member access on the flagged line to optional chaining."""

    name = "TypeScriptStrictFixStrategy"
    category = ErrorCategory.TYPESCRIPT
    deterministic = False

    _MEMBER = re.compile(r"(?<![?.])\.(?=[A-Za-z_$])")
    _NULLABLE = re.compile(r"possibly '?(?:undefined|null)'?")

    def can_handle(self, error: BuildError) -> bool:
        return error.category is ErrorCategory.TYPESCRIPT and self._NULLABLE.search(error.message) is not None

    async def apply(self, error: BuildError, context: FixContext) -> FixResult:
        if not error.file or not error.line:
            return FixResult(success=False, error="Missing file or line information", source=self.name)

        try:
            content = context.resolve(error.file).read_text()
        except OSError as e:
            return self._manual(f"Cannot read {error.file}", error=str(e))

        lines = content.split("\n")
        if error.line > len(lines):
            return self._manual(f"Line {error.line} is past the end of {error.file}")

        target = lines[error.line - 1]
        fixed = self._MEMBER.sub("?.", target)
        if fixed == target:
            return self._manual("Add null/undefined check or use non-null assertion operator")

        if content.count(target) == 1:
            change = FileChange(
                file=error.file,
                kind=ChangeKind.MODIFY,
                search_replace=[SearchReplace(search=target, replace=fixed)],
            )
            return FixResult(success=True, changes=[change], source=self.name)

        lines[error.line - 1] = fixed
        return self._modified(error.file, "\n".join(lines))


class CompilationModeFixStrategy(FixStrategy):
    """Partial-compilation notices are informational."""

    name = "CompilationModeFixStrategy"
    category = ErrorCategory.COMPILATION

    def can_handle(self, error: BuildError) -> bool:
        return error.category is ErrorCategory.COMPILATION and "partial compilation mode" in error.message

    async def apply(self, error: BuildError, context: FixContext) -> FixResult:
        return FixResult(
            success=False,
            requires_manual_intervention=False,
            suggestion=(
                'Set "compilationMode": "full" under angularCompilerOptions in tsconfig.json '
                "if needed. This notice is usually safe to ignore."
            ),
            source=self.name,
        )


class UnknownErrorAIFixStrategy(FixStrategy):
    """Catch-all: asks for a rewrite of the lines around the error."""

    name = "UnknownErrorAIFixStrategy"
    category = ErrorCategory.UNKNOWN
    deterministic = False

    window = 10

    def can_handle(self, error: BuildError) -> bool:
        return error.category is ErrorCategory.UNKNOWN

    async def apply(self, error: BuildError, context: FixContext) -> FixResult:
        if context.llm is None or not error.file or error.line is None:
            return self._manual("Unknown error - manual inspection required")

        try:
            lines = context.resolve(error.file).read_text().split("\n")
            start = max(0, error.line - self.window)
            end = min(len(lines), error.line + self.window)
            generated = await context.llm.generate_code(
                "Fix this build error in an Angular project upgrade.",
                error,
                "\n".join(lines[start:end]),
                [
                    "Preserve existing functionality",
                    "Follow Angular best practices",
                    "Minimal changes only",
                ],
            )
        except Exception as e:
            logger.warning("AI fix failed for %s: %s", error.location, e)
            return self._manual(f"AI fix failed: {e}", error=str(e))

        if not generated.code:
            return self._manual(generated.reasoning or "AI could not suggest a fix")

        fixed = lines[:start] + generated.code.split("\n") + lines[end:]
        result = self._modified(error.file, "\n".join(fixed))
        result.reasoning = generated.reasoning
        return result


def default_strategies() -> list[FixStrategy]:
    """The fixed registration order: framework migrations first, catch-all last."""
    return [
        HttpClientMigrationStrategy(),
        RouterMigrationStrategy(),
        RxJSImportStrategy(),
        DependencyFixStrategy(),
        ImportFixStrategy(),
        StandaloneComponentFixStrategy(),
        RxJSOperatorFixStrategy(),
        TypeScriptStrictFixStrategy(),
        CompilationModeFixStrategy(),
        UnknownErrorAIFixStrategy(),
    ]


class FixStrategyRegistry:
    """Routes an error to the first strategy that claims it."""

    def __init__(self, strategies: list[FixStrategy] | None = None):
        self.strategies = strategies if strategies is not None else default_strategies()

    async def apply_fix(self, error: BuildError, context: FixContext) -> FixResult:
        for strategy in self.strategies:
            if not strategy.can_handle(error):
                continue
            logger.debug("%s handling %s", strategy.name, error.location)
            try:
                return await strategy.apply(error, context)
            except Exception as e:
                logger.exception("%s raised on %s", strategy.name, error.location)
                return FixResult.manual(
                    f"{strategy.name} failed; fix manually", error=str(e), source=strategy.name
                )

        return FixResult.manual("No automatic fix available for this error")

    def get_strategy(self, category: ErrorCategory) -> FixStrategy | None:
        return next((s for s in self.strategies if s.category is category), None)
