"""buildmend classify command."""

from __future__ import annotations

import json

import click

from buildmend.classify.classifier import ErrorClassifier
from buildmend.core.output import Reporter


@click.command()
@click.argument("log_file", type=click.File("r"))
@click.option("--json", "as_json", is_flag=True, help="Print errors as JSON")
def classify(log_file, as_json: bool):
    """Classify the errors in a saved build log (use - for stdin)."""
    errors = ErrorClassifier().classify_errors(log_file.read())
    reporter = Reporter()

    if as_json:
        reporter.console.print_json(json.dumps([e.to_dict() for e in errors]))
        return

    if not errors:
        reporter.info("No classifiable errors found.")
        return

    reporter.print_errors(errors)
    counts: dict[str, int] = {}
    for err in errors:
        counts[err.category.value] = counts.get(err.category.value, 0) + 1
    summary = ", ".join(f"{name}: {n}" for name, n in sorted(counts.items()))
    reporter.info(f"{len(errors)} error(s) ({summary})")
