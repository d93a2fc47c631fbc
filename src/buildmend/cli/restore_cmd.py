"""buildmend restore command."""

from __future__ import annotations

from pathlib import Path

import click

from buildmend.core.output import Reporter
from buildmend.fix.backups import latest_session, restore_session


@click.command()
@click.option("--project", "-p", "project", default=".", help="Project directory (default: current dir)")
def restore(project: str):
    """Restore the files backed up by the most recent run."""
    reporter = Reporter()
    session = latest_session(Path(project).resolve())
    if session is None:
        reporter.info("No backup session found.")
        return

    restored = restore_session(session)
    for path in restored:
        reporter.success(f"Restored {path}")
    reporter.info(f"Restored {len(restored)} file(s) from {session.name}")
