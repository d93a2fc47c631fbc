"""Tests for build command execution."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from buildmend.build.runner import BuildRunner, run_shell
from buildmend.core.errors import BuildToolError


class TestRunShell:
    def test_success(self, tmp_path: Path):
        result = asyncio.run(run_shell("echo built", tmp_path))
        assert result.success
        assert result.exit_code == 0
        assert result.output == "built\n"

    def test_failure_merges_stderr(self, tmp_path: Path):
        result = asyncio.run(run_shell("echo oops 1>&2; exit 2", tmp_path))
        assert not result.success
        assert result.exit_code == 2
        assert "oops" in result.output

    def test_missing_command_raises(self, tmp_path: Path):
        with pytest.raises(BuildToolError):
            asyncio.run(run_shell("definitely-not-a-build-tool-xyz", tmp_path))

    def test_timeout_is_a_failed_result(self, tmp_path: Path):
        result = asyncio.run(run_shell("sleep 5", tmp_path, timeout=0.2))
        assert not result.success
        assert result.exit_code is None
        assert "timed out" in result.output

    def test_runs_in_project_directory(self, tmp_path: Path):
        (tmp_path / "marker.txt").write_text("here")
        result = asyncio.run(run_shell("cat marker.txt", tmp_path))
        assert result.output == "here"


class TestBuildRunner:
    def test_configured_commands(self, tmp_path: Path):
        runner = BuildRunner(tmp_path, build_command="echo build", test_command="echo test")

        assert asyncio.run(runner.run_build()).output == "build\n"
        assert asyncio.run(runner.run_tests()).output == "test\n"
