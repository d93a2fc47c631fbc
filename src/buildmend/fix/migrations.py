"""Framework-specific migrations for the module-to-provider API changes."""

from __future__ import annotations

import logging
import re

from buildmend.core.models import BuildError, ChangeKind, ErrorCategory, FileChange, FixResult
from buildmend.fix.base import FixContext, FixStrategy, insert_after_last_import

logger = logging.getLogger(__name__)

_ANGULAR_IMPORT = re.compile(r"import .+ from ['\"]@angular/[^'\"]+['\"];?\n")
_PROVIDERS = re.compile(r"providers:\s*\[(.*?)\]", re.DOTALL)


def add_provider(content: str, provider: str) -> str:
    """Append *provider* to the first ``providers: [...]`` array, if present."""
    m = _PROVIDERS.search(content)
    if m is None or provider.split("(")[0] in m.group(1):
        return content
    existing = m.group(1).strip()
    if existing:
        body = f"{existing},\n    {provider}"
    else:
        body = f"\n    {provider}\n  "
    return content[: m.start()] + f"providers: [{body}]" + content[m.end():]


def insert_after_first_angular_import(content: str, statement: str) -> str:
    m = _ANGULAR_IMPORT.search(content)
    if m is None:
        return content
    return content[: m.end()] + statement + content[m.end():]


class HttpClientMigrationStrategy(FixStrategy):
    """``HttpClientModule`` -> ``provideHttpClient(withInterceptorsFromDi())``."""

    name = "HttpClientMigrationStrategy"
    category = ErrorCategory.IMPORT

    def can_handle(self, error: BuildError) -> bool:
        msg = error.message
        return (
            "HttpClientModule" in msg
            or "provideHttpClient" in msg
            or ("HttpClient" in msg and "provider" in msg)
        )

    async def apply(self, error: BuildError, context: FixContext) -> FixResult:
        candidates = [
            context.project_path / "src" / "app" / "app.config.ts",
            context.project_path / "src" / "main.ts",
        ]
        config_file = next((p for p in candidates if p.exists()), None)
        if config_file is None:
            return self._manual("Create app.config.ts with provideHttpClient in the providers array")

        try:
            content = config_file.read_text()
        except OSError as e:
            return self._manual(f"Manual HttpClient migration needed: {e}", error=str(e))

        if "provideHttpClient" in content:
            return FixResult(
                success=True, suggestion="HttpClient already uses provideHttpClient", source=self.name
            )

        if "@angular/common/http" not in content:
            updated = insert_after_first_angular_import(
                content,
                "import { provideHttpClient, withInterceptorsFromDi } from '@angular/common/http';\n",
            )
        else:
            updated = re.sub(
                r"import\s*\{([^}]+)\}\s*from\s*['\"]@angular/common/http['\"]",
                _merge_http_imports,
                content,
                count=1,
            )
        updated = add_provider(updated, "provideHttpClient(withInterceptorsFromDi())")

        changes = [FileChange(
            file=context.relative(config_file),
            kind=ChangeKind.MODIFY,
            content=updated,
            full_replacement=True,
        )]

        app_module = context.project_path / "src" / "app" / "app.module.ts"
        if app_module.exists():
            try:
                module_content = app_module.read_text()
            except OSError as e:
                logger.warning("Could not read %s: %s", app_module, e)
            else:
                module_content = re.sub(
                    r"import\s*\{\s*HttpClientModule\s*\}\s*from\s*['\"]@angular/common/http['\"];?\n",
                    "",
                    module_content,
                )
                module_content = re.sub(r"HttpClientModule,?\s*", "", module_content)
                changes.append(FileChange(
                    file=context.relative(app_module),
                    kind=ChangeKind.MODIFY,
                    content=module_content,
                    full_replacement=True,
                ))

        return FixResult(
            success=True,
            changes=changes,
            suggestion="Migrated from HttpClientModule to provideHttpClient",
            source=self.name,
        )


def _merge_http_imports(m: re.Match[str]) -> str:
    names = [n.strip() for n in m.group(1).split(",") if n.strip()]
    for wanted in ("provideHttpClient", "withInterceptorsFromDi"):
        if wanted not in names:
            names.append(wanted)
    return f"import {{ {', '.join(names)} }} from '@angular/common/http'"


class RouterMigrationStrategy(FixStrategy):
    """``RouterModule.forRoot`` -> ``provideRouter(routes)``."""

    name = "RouterMigrationStrategy"
    category = ErrorCategory.IMPORT

    def can_handle(self, error: BuildError) -> bool:
        msg = error.message
        return (
            "RouterModule" in msg
            or "provideRouter" in msg
            or ("Router" in msg and "provider" in msg)
        )

    async def apply(self, error: BuildError, context: FixContext) -> FixResult:
        config_file = context.project_path / "src" / "app" / "app.config.ts"
        if not config_file.exists():
            return self._manual("Create app.config.ts with provideRouter in the providers array")

        try:
            content = config_file.read_text()
        except OSError as e:
            return self._manual(f"Manual Router migration needed: {e}", error=str(e))

        if "provideRouter" in content:
            return FixResult(success=True, suggestion="Router already uses provideRouter", source=self.name)

        updated = content
        if "@angular/router" not in content:
            updated = insert_after_first_angular_import(
                content,
                "import { provideRouter } from '@angular/router';\nimport { routes } from './app.routes';\n",
            )
        updated = add_provider(updated, "provideRouter(routes)")

        return FixResult(
            success=True,
            changes=[FileChange(
                file=context.relative(config_file),
                kind=ChangeKind.MODIFY,
                content=updated,
                full_replacement=True,
            )],
            suggestion="Migrated from RouterModule to provideRouter",
            source=self.name,
        )


RXJS_OPERATORS = (
    "map", "filter", "switchMap", "mergeMap", "concatMap", "exhaustMap",
    "tap", "catchError", "retry", "take", "takeUntil", "debounceTime",
    "distinctUntilChanged", "share", "shareReplay", "combineLatest",
    "forkJoin", "merge", "concat", "zip", "race", "of", "from", "throwError",
    "interval", "timer", "defer", "EMPTY", "NEVER",
)
# creation and combination functions live at the package root
_RXJS_ROOT = {
    "of", "from", "throwError", "interval", "timer", "defer", "EMPTY", "NEVER",
    "combineLatest", "forkJoin", "merge", "concat", "zip", "race",
}


def rxjs_import_path(operator: str) -> str:
    return "rxjs" if operator in _RXJS_ROOT else "rxjs/operators"


class RxJSImportStrategy(FixStrategy):
    """Adds the import for an operator reported as an unknown name."""

    name = "RxJSImportStrategy"
    category = ErrorCategory.IMPORT

    def _operator(self, message: str) -> str | None:
        return next(
            (op for op in RXJS_OPERATORS if f"'{op}'" in message or f'"{op}"' in message),
            None,
        )

    def can_handle(self, error: BuildError) -> bool:
        return self._operator(error.message) is not None and (
            "Cannot find name" in error.message or "is not defined" in error.message
        )

    async def apply(self, error: BuildError, context: FixContext) -> FixResult:
        if not error.file:
            return self._manual("Add RxJS operator imports manually")

        operator = self._operator(error.message)
        if operator is None:
            return FixResult(success=False, suggestion="Could not determine missing operator", source=self.name)

        try:
            content = context.resolve(error.file).read_text()
        except OSError as e:
            return self._manual(f"Could not add RxJS import: {e}", error=str(e))

        statement = f"import {{ {operator} }} from '{rxjs_import_path(operator)}';\n"
        if statement.strip() in content:
            return FixResult(success=True, suggestion=f"{operator} already imported", source=self.name)

        updated = insert_after_last_import(content, statement.rstrip("\n"))
        if updated is None:
            updated = statement + content

        return self._modified(error.file, updated, f"Added import for {operator}")
