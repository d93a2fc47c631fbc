"""Click CLI entry point for buildmend."""

from __future__ import annotations

import click

from buildmend._version import __version__


@click.group()
@click.version_option(version=__version__, prog_name="buildmend")
def cli():
    """buildmend - build, diagnose and patch an upgraded Angular project until it compiles."""
    pass


# Import and register subcommands
from buildmend.cli.run_cmd import run  # noqa: E402
from buildmend.cli.classify_cmd import classify  # noqa: E402
from buildmend.cli.cache_cmd import cache  # noqa: E402
from buildmend.cli.restore_cmd import restore  # noqa: E402

cli.add_command(run)
cli.add_command(classify)
cli.add_command(cache)
cli.add_command(restore)


if __name__ == "__main__":
    cli()
