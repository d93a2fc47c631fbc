"""Rich terminal formatting for buildmend output."""

from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from buildmend.core.models import BuildError, ErrorCategory, FixResult, LoopResult

CATEGORY_COLORS = {
    ErrorCategory.COMPILATION: "red",
    ErrorCategory.TYPESCRIPT: "red",
    ErrorCategory.TEMPLATE: "magenta",
    ErrorCategory.IMPORT: "yellow",
    ErrorCategory.DEPENDENCY: "yellow",
    ErrorCategory.ROUTER: "cyan",
    ErrorCategory.RXJS: "cyan",
    ErrorCategory.STANDALONE: "blue",
    ErrorCategory.SSR: "blue",
    ErrorCategory.UNKNOWN: "white",
}


class Reporter:
    """User-facing progress output.

    One instance is built per session and handed to the components that
    talk to the user, so tests can pass a recording console.
    """

    def __init__(self, console: Console | None = None, verbose: bool = False):
        self.console = console or Console()
        self.verbose = verbose

    def info(self, message: str) -> None:
        self.console.print(f"  {message}")

    def detail(self, message: str) -> None:
        if self.verbose:
            self.console.print(f"  [dim]{message}[/dim]")

    def success(self, message: str) -> None:
        self.console.print(f"  [green]✓[/green] {message}")

    def warning(self, message: str) -> None:
        self.console.print(f"  [yellow]⚠[/yellow] {message}")

    def error(self, message: str) -> None:
        self.console.print(f"  [red]✗[/red] {message}")

    def attempt_header(self, attempt: int, max_attempts: int) -> None:
        self.console.rule(f"Attempt {attempt}/{max_attempts}")

    def print_errors(self, errors: list[BuildError]) -> None:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Category")
        table.add_column("Location")
        table.add_column("Message", overflow="fold")
        for err in errors:
            color = CATEGORY_COLORS.get(err.category, "white")
            table.add_row(
                f"[{color}]{err.category.value}[/{color}]",
                err.location,
                err.message,
            )
        self.console.print(table)

    def print_fix(self, error: BuildError, result: FixResult) -> None:
        files = ", ".join(c.file for c in result.changes) or "no files"
        source = f" via {result.source}" if result.source else ""
        cached = " (cached)" if result.from_cache else ""
        self.success(f"Fixed {error.location}{source}{cached}: {files}")
        if result.reasoning:
            self.detail(result.reasoning)

    def print_summary(self, result: LoopResult) -> None:
        if result.success:
            title = "[green]Build passing[/green]"
        elif result.rolled_back:
            title = "[red]Rolled back after regressions[/red]"
        else:
            title = "[yellow]Build still failing[/yellow]"

        lines = [
            f"Attempts: {result.attempts}",
            f"Fixes applied: {len(result.applied_fixes)}",
            f"Errors resolved: {len(result.resolved_errors)}",
            f"Errors unresolved: {len(result.unresolved_errors)}",
        ]
        if result.cache_stats is not None:
            lines.append(
                f"Cache: {result.cache_stats.hits} hits, {result.cache_stats.misses} misses"
            )
        self.console.print(Panel("\n".join(lines), title=title, expand=False))

        for item in result.unresolved_errors:
            self.error(f"{item.error.location}: {item.error.message}")
            if item.suggestion:
                self.console.print(f"      [dim]{item.suggestion}[/dim]")
        for action in result.manual_actions:
            self.warning(action)
