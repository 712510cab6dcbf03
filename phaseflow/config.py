"""
Configuration loading and validation for phaseflow.

This module handles:
- Loading config.yaml from the project root
- Environment variable resolution (${VAR} syntax)
- Validation of numeric limits and gate commands
- Default values for every optional section
- Caching of the loaded configuration
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


@dataclass
class AnthropicConfig:
    """Anthropic Messages API configuration."""
    api_key_env_var: str = "ANTHROPIC_API_KEY"     # Environment variable containing API key
    base_url: str = "https://api.anthropic.com"
    api_version: str = "2023-06-01"
    orchestrator_model: str = "claude-sonnet-4-5"  # Phase orchestrators
    judge_model: str = "claude-sonnet-4-5"
    explorer_model: str = "claude-haiku-4-5"
    coder_model: str = "claude-sonnet-4-5"
    max_tokens: int = 8192
    timeout_seconds: int = 300

    def get_api_key(self) -> str:
        """Get the Anthropic API key from environment."""
        api_key = os.environ.get(self.api_key_env_var, "")
        if not api_key:
            raise ConfigError(f"Environment variable {self.api_key_env_var} is not set")
        return api_key


@dataclass
class GitHubConfig:
    """GitHub REST API configuration used for pull request creation."""
    token_env_var: str = "GITHUB_TOKEN"        # Token needs repo scope (push + PR)
    api_url: str = "https://api.github.com"
    timeout_seconds: int = 30

    def get_token(self) -> str:
        """Get the GitHub token from environment."""
        token = os.environ.get(self.token_env_var, "")
        if not token:
            raise ConfigError(f"Environment variable {self.token_env_var} is not set")
        return token


@dataclass
class RetryConfig:
    """Retry strategy for recoverable LLM API errors."""
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    exponential_backoff: bool = True


@dataclass
class GatesConfig:
    """Quality gate commands, run in the fixed order typecheck, test, lint, build."""
    typecheck: str = "bun typecheck"
    test: str = "bun test"
    lint: str = "bun lint"
    build: str = "bun build"
    timeout_seconds: int = 900

    def commands(self) -> list[tuple[str, str]]:
        """Return (gate, command) pairs in execution order."""
        return [
            ("typecheck", self.typecheck),
            ("test", self.test),
            ("lint", self.lint),
            ("build", self.build),
        ]


@dataclass
class EnvironmentConfig:
    """Execution environment configuration."""
    workspaces_dir: str = "workspaces"         # Relative to the data directory
    command_timeout_seconds: int = 600
    default_runtime: str = "node22"


@dataclass
class PipelineConfig:
    """Limits for the phase pipeline."""
    cta_timeout_days: int = 30                 # How long a human gate may stay pending
    max_coder_attempts: int = 5
    orchestrator_max_steps: int = 50
    judge_max_steps: int = 20
    explorer_max_steps: int = 50
    coder_max_steps: int = 50


@dataclass
class PhaseflowConfig:
    """
    Main configuration for phaseflow.

    This is the top-level config loaded from config.yaml.
    """
    # Paths
    repo_root: str = "."
    data_dir: str = ".phaseflow"

    # Nested configurations
    anthropic: AnthropicConfig = field(default_factory=AnthropicConfig)
    github: GitHubConfig = field(default_factory=GitHubConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    gates: GatesConfig = field(default_factory=GatesConfig)
    environment: EnvironmentConfig = field(default_factory=EnvironmentConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    def __post_init__(self) -> None:
        """Convert paths to absolute paths based on repo_root."""
        self.repo_root = str(Path(self.repo_root).absolute())

    @property
    def data_path(self) -> Path:
        """Absolute path to the data directory."""
        return Path(self.repo_root) / self.data_dir

    @property
    def db_path(self) -> Path:
        """Absolute path to the sqlite database holding runs and the step journal."""
        return self.data_path / "phaseflow.db"

    @property
    def logs_path(self) -> Path:
        """Absolute path to logs directory."""
        return self.data_path / "logs"

    @property
    def events_path(self) -> Path:
        """Absolute path to events directory."""
        return self.data_path / "events"

    @property
    def workspaces_path(self) -> Path:
        """Absolute path to the directory holding environment workspaces."""
        return self.data_path / self.environment.workspaces_dir


# Module-level cache for the loaded configuration
_config_cache: Optional[PhaseflowConfig] = None


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax for environment variable substitution.
    Returns the original value if it's not a string.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _require_positive(section: str, name: str, value: Any) -> int:
    """Validate that a limit is a positive integer."""
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise ConfigError(f"{section}.{name} must be a positive integer, got {value!r}")
    return value


def _parse_anthropic_config(data: dict[str, Any]) -> AnthropicConfig:
    """Parse Anthropic configuration from dict."""
    defaults = AnthropicConfig()
    return AnthropicConfig(
        api_key_env_var=data.get("api_key_env_var", defaults.api_key_env_var),
        base_url=data.get("base_url", defaults.base_url).rstrip("/"),
        api_version=data.get("api_version", defaults.api_version),
        orchestrator_model=data.get("orchestrator_model", defaults.orchestrator_model),
        judge_model=data.get("judge_model", defaults.judge_model),
        explorer_model=data.get("explorer_model", defaults.explorer_model),
        coder_model=data.get("coder_model", defaults.coder_model),
        max_tokens=_require_positive(
            "anthropic", "max_tokens", data.get("max_tokens", defaults.max_tokens)
        ),
        timeout_seconds=_require_positive(
            "anthropic", "timeout_seconds", data.get("timeout_seconds", defaults.timeout_seconds)
        ),
    )


def _parse_github_config(data: dict[str, Any]) -> GitHubConfig:
    """Parse GitHub configuration from dict."""
    return GitHubConfig(
        token_env_var=data.get("token_env_var", "GITHUB_TOKEN"),
        api_url=data.get("api_url", "https://api.github.com").rstrip("/"),
        timeout_seconds=data.get("timeout_seconds", 30),
    )


def _parse_retry_config(data: dict[str, Any]) -> RetryConfig:
    """Parse retry configuration from dict."""
    return RetryConfig(
        max_retries=data.get("max_retries", 3),
        base_delay_seconds=data.get("base_delay_seconds", 1.0),
        max_delay_seconds=data.get("max_delay_seconds", 60.0),
        exponential_backoff=data.get("exponential_backoff", True),
    )


def _parse_gates_config(data: dict[str, Any]) -> GatesConfig:
    """Parse quality gate configuration from dict."""
    defaults = GatesConfig()
    commands = {}
    for gate in ("typecheck", "test", "lint", "build"):
        command = data.get(gate, getattr(defaults, gate))
        if not isinstance(command, str) or not command.strip():
            raise ConfigError(f"gates.{gate} must be a non-empty command string")
        commands[gate] = command
    return GatesConfig(
        timeout_seconds=data.get("timeout_seconds", defaults.timeout_seconds),
        **commands,
    )


def _parse_environment_config(data: dict[str, Any]) -> EnvironmentConfig:
    """Parse execution environment configuration from dict."""
    return EnvironmentConfig(
        workspaces_dir=data.get("workspaces_dir", "workspaces"),
        command_timeout_seconds=data.get("command_timeout_seconds", 600),
        default_runtime=data.get("default_runtime", "node22"),
    )


def _parse_pipeline_config(data: dict[str, Any]) -> PipelineConfig:
    """Parse pipeline limits from dict."""
    defaults = PipelineConfig()
    values = {}
    for name in (
        "cta_timeout_days",
        "max_coder_attempts",
        "orchestrator_max_steps",
        "judge_max_steps",
        "explorer_max_steps",
        "coder_max_steps",
    ):
        values[name] = _require_positive("pipeline", name, data.get(name, getattr(defaults, name)))
    return PipelineConfig(**values)


def load_config(config_path: Optional[str] = None) -> PhaseflowConfig:
    """
    Load configuration from config.yaml.

    Args:
        config_path: Optional path to config file. If not provided,
                     looks for config.yaml in current directory.

    Returns:
        PhaseflowConfig: Loaded and validated configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    if config_path is None:
        config_path = "config.yaml"

    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if not raw_data:
        raise ConfigError("Configuration file is empty")

    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    data = _resolve_env_vars(raw_data)

    return PhaseflowConfig(
        repo_root=data.get("repo_root", str(path.absolute().parent)),
        data_dir=data.get("data_dir", ".phaseflow"),
        anthropic=_parse_anthropic_config(data.get("anthropic", {})),
        github=_parse_github_config(data.get("github", {})),
        retry=_parse_retry_config(data.get("retry", {})),
        gates=_parse_gates_config(data.get("gates", {})),
        environment=_parse_environment_config(data.get("environment", {})),
        pipeline=_parse_pipeline_config(data.get("pipeline", {})),
    )


def get_config(config_path: Optional[str] = None, force_reload: bool = False) -> PhaseflowConfig:
    """
    Get the cached configuration, loading it if necessary.

    Args:
        config_path: Optional path to config file.
        force_reload: If True, reload configuration even if cached.

    Returns:
        PhaseflowConfig: The loaded configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        _config_cache = load_config(config_path)

    return _config_cache


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None
