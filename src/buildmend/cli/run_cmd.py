"""buildmend run command."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from buildmend.build.runner import BuildRunner
from buildmend.core.config import ensure_gitignore, get_buildmend_dir, load_config
from buildmend.core.errors import BuildMendError
from buildmend.core.output import Reporter
from buildmend.llm.client import LLMClient
from buildmend.loop import BuildFixLoop


@click.command()
@click.option("--project", "-p", "project", default=".", help="Project directory (default: current dir)")
@click.option("--target-version", "-t", required=True, help="Angular version being upgraded to, e.g. 19.0.0")
@click.option("--provider", type=click.Choice(["anthropic", "gemini"]), help="Reasoning backend provider")
@click.option("--model", help="Model name for the reasoning backend")
@click.option("--max-attempts", type=int, help="Maximum build attempts")
@click.option("--no-cache", is_flag=True, help="Disable the response cache")
@click.option("--no-agent", is_flag=True, help="Disable the investigating agent")
@click.option("--no-generators", is_flag=True, help="Do not run framework migration generators")
@click.option("--no-ai", is_flag=True, help="Only use deterministic fixes")
@click.option("--verify", is_flag=True, help="Run build and tests once more after a passing build")
@click.option("--verbose", "-v", is_flag=True, help="Show detailed progress and debug logs")
def run(
    project: str,
    target_version: str,
    provider: str | None,
    model: str | None,
    max_attempts: int | None,
    no_cache: bool,
    no_agent: bool,
    no_generators: bool,
    no_ai: bool,
    verify: bool,
    verbose: bool,
):
    """Build the project and fix errors until it compiles."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    reporter = Reporter(verbose=verbose)
    project_path = Path(project).resolve()
    if not project_path.is_dir():
        reporter.error(f"Project directory not found: {project_path}")
        sys.exit(2)

    try:
        config = load_config(project_path)
    except BuildMendError as e:
        reporter.error(str(e))
        sys.exit(2)

    if provider:
        config.llm.provider = provider
    if model:
        config.llm.model = model
    if max_attempts:
        config.loop.max_attempts = max_attempts
    if no_cache:
        config.cache.enabled = False
    if no_agent:
        config.loop.use_agent = False
    if no_generators:
        config.loop.use_generators = False

    get_buildmend_dir(project_path)
    ensure_gitignore(project_path)

    llm = None
    if not no_ai:
        if config.llm.api_key:
            llm = LLMClient(
                provider=config.llm.provider,
                api_key=config.llm.api_key,
                model=config.llm.model,
                max_tokens=config.llm.max_tokens,
                max_retries=config.llm.max_retries,
                backoff_base=config.llm.backoff_base,
                backoff_max=config.llm.backoff_max,
            )
        else:
            reporter.warning(
                f"No API key for {config.llm.provider}; continuing with deterministic fixes only"
            )

    runner = BuildRunner(
        project_path,
        build_command=config.build.build_command,
        test_command=config.build.test_command,
        timeout=config.build.timeout_seconds,
    )
    loop = BuildFixLoop(project_path, target_version, runner, config, llm=llm, reporter=reporter)

    try:
        result = asyncio.run(loop.run())
    except BuildMendError as e:
        reporter.error(str(e))
        sys.exit(2)

    reporter.print_summary(result)

    if result.success and verify:
        verification = asyncio.run(loop.verify_build_and_tests())
        if verification.tests_passed:
            reporter.success("Build and tests pass")
        else:
            reporter.error("Build passes but tests fail")
            sys.exit(1)

    if not result.success:
        sys.exit(1)
