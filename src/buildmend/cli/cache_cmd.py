"""buildmend cache command group."""

from __future__ import annotations

from pathlib import Path

import click

from buildmend.core.output import Reporter
from buildmend.llm.cache import ResponseCache


@click.group()
def cache():
    """Inspect or clear the reasoning-backend response cache."""
    pass


@cache.command()
@click.option("--project", "-p", "project", default=".", help="Project directory (default: current dir)")
def stats(project: str):
    """Show cache size and age."""
    reporter = Reporter()
    info = ResponseCache(Path(project).resolve()).stats()
    if info.entries == 0:
        reporter.info("Cache is empty.")
        return
    reporter.info(f"Entries: {info.entries}")
    reporter.info(f"Size: {info.size / 1024:.1f} KiB")
    if info.oldest and info.newest:
        reporter.info(f"Oldest: {info.oldest:%Y-%m-%d %H:%M} UTC")
        reporter.info(f"Newest: {info.newest:%Y-%m-%d %H:%M} UTC")


@cache.command()
@click.option("--project", "-p", "project", default=".", help="Project directory (default: current dir)")
def clear(project: str):
    """Delete every cached response."""
    removed = ResponseCache(Path(project).resolve()).clear()
    Reporter().success(f"Removed {removed} cache entr{'y' if removed == 1 else 'ies'}")
