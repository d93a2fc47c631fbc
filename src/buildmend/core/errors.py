"""Exception hierarchy for conditions that abort a session.

Fix failures are never raised; they travel as ``FixResult`` data.
"""

from __future__ import annotations


class BuildMendError(Exception):
    """Base class for fatal buildmend errors."""


class ConfigError(BuildMendError):
    """The configuration file exists but cannot be used."""


class BuildToolError(BuildMendError):
    """The build tool could not be started at all."""

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Could not run `{command}`: {reason}")
