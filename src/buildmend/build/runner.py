"""Run the project's build and test commands as subprocesses."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from buildmend.core.errors import BuildToolError
from buildmend.core.models import BuildResult

logger = logging.getLogger(__name__)

COMMAND_NOT_FOUND = 127


async def run_shell(command: str, cwd: Path, timeout: float | None = None) -> BuildResult:
    """Run *command* through the shell and capture combined stdout/stderr.

    Raises BuildToolError when the process cannot be started or the shell
    cannot find the command. A timeout is reported as a failed result.
    """
    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        raise BuildToolError(command, str(e)) from e

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.warning("%s timed out after %.0fs", command, timeout)
        return BuildResult(success=False, output=f"`{command}` timed out after {timeout:.0f}s", exit_code=None)

    output = stdout.decode(errors="replace") if stdout else ""
    if proc.returncode == COMMAND_NOT_FOUND:
        raise BuildToolError(command, output.strip() or "command not found")
    return BuildResult(success=proc.returncode == 0, output=output, exit_code=proc.returncode)


class BuildRunner:
    """Invokes the configured build/test commands in the project directory."""

    def __init__(
        self,
        project_path: Path,
        build_command: str = "npx ng build",
        test_command: str = "npx ng test --watch=false",
        timeout: float | None = 600.0,
    ):
        self.project_path = Path(project_path)
        self.build_command = build_command
        self.test_command = test_command
        self.timeout = timeout

    async def run_build(self) -> BuildResult:
        logger.debug("Running build: %s", self.build_command)
        return await run_shell(self.build_command, self.project_path, self.timeout)

    async def run_tests(self) -> BuildResult:
        logger.debug("Running tests: %s", self.test_command)
        return await run_shell(self.test_command, self.project_path, self.timeout)
