"""Configuration management for buildmend (buildmend.toml parsing + defaults)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore[no-redef]

from buildmend.core.errors import ConfigError

CONFIG_FILENAME = "buildmend.toml"
WORKDIR_NAME = ".buildmend"


@dataclass
class LoopConfig:
    max_attempts: int = 10
    regression_threshold: int = 2
    use_generators: bool = True
    use_agent: bool = True


@dataclass
class AgentConfig:
    max_iterations: int = 10
    max_token_budget: int = 500_000
    fast_path_threshold: float = 0.9
    record_threshold: float = 0.7


@dataclass
class LLMConfig:
    provider: str = "anthropic"
    model: str | None = None
    max_tokens: int = 4096
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0

    @property
    def api_key(self) -> str | None:
        if self.provider == "gemini":
            return os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")
        return os.environ.get("ANTHROPIC_API_KEY")


@dataclass
class CacheConfig:
    enabled: bool = True
    max_age_hours: float = 24.0


@dataclass
class BuildConfig:
    build_command: str = "npx ng build"
    test_command: str = "npx ng test --watch=false"
    timeout_seconds: float = 600.0


@dataclass
class BuildMendConfig:
    """Complete buildmend configuration."""

    loop: LoopConfig = field(default_factory=LoopConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    build: BuildConfig = field(default_factory=BuildConfig)


_SECTIONS = {
    "loop": ("max_attempts", "regression_threshold", "use_generators", "use_agent"),
    "agent": ("max_iterations", "max_token_budget", "fast_path_threshold", "record_threshold"),
    "llm": ("provider", "model", "max_tokens", "max_retries", "backoff_base", "backoff_max"),
    "cache": ("enabled", "max_age_hours"),
    "build": ("build_command", "test_command", "timeout_seconds"),
}


def load_config(project_path: Path | None = None) -> BuildMendConfig:
    """Load configuration from buildmend.toml if present, otherwise return defaults."""
    config = BuildMendConfig()

    if project_path is None:
        project_path = Path.cwd()

    config_file = project_path / CONFIG_FILENAME
    if not config_file.exists():
        return config

    try:
        with open(config_file, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{config_file}: {e}") from e

    for section, attrs in _SECTIONS.items():
        if section not in data:
            continue
        values = data[section]
        target = getattr(config, section)
        for attr in attrs:
            if attr in values:
                setattr(target, attr, values[attr])

    if config.llm.provider not in ("anthropic", "gemini"):
        raise ConfigError(f"Unknown llm.provider {config.llm.provider!r}")

    return config


def get_buildmend_dir(project_path: Path | None = None) -> Path:
    """Get or create the .buildmend directory."""
    if project_path is None:
        project_path = Path.cwd()
    workdir = project_path / WORKDIR_NAME
    workdir.mkdir(exist_ok=True)
    return workdir


def ensure_gitignore(project_path: Path | None = None) -> None:
    """Add .buildmend/ to .gitignore if not already present."""
    if project_path is None:
        project_path = Path.cwd()
    gitignore = project_path / ".gitignore"
    entry = f"{WORKDIR_NAME}/"

    if gitignore.exists():
        content = gitignore.read_text()
        if entry in content:
            return
        if not content.endswith("\n"):
            content += "\n"
        content += f"{entry}\n"
        gitignore.write_text(content)
    else:
        gitignore.write_text(f"{entry}\n")
