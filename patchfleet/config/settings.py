"""
Configuration system using Pydantic for type-safe settings management.

Every option the orchestrator recognizes is declared here with its default;
nothing is read from loosely-typed option dictionaries elsewhere.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from patchfleet.enums import BranchStrategy, ConflictPolicy, VCSProviderType
from patchfleet.exceptions import ConfigurationError


class BudgetConfig(BaseModel):
    """Spending ceilings in USD."""

    daily_limit_usd: float = Field(default=50.0, ge=0.0, description="Maximum spend per calendar day (UTC)")
    monthly_limit_usd: float = Field(default=500.0, ge=0.0, description="Maximum spend per calendar month (UTC)")
    per_issue_limit_usd: float = Field(default=5.0, ge=0.0, description="Maximum spend on a single work item")

    @model_validator(mode="after")
    def validate_limits(self) -> BudgetConfig:
        """Monthly ceiling can never be tighter than the daily one."""
        if self.monthly_limit_usd < self.daily_limit_usd:
            raise ValueError("monthly_limit_usd must be greater than or equal to daily_limit_usd")
        return self


class GitConfig(BaseModel):
    """Git workspace configuration."""

    default_branch: str = Field(default="main", description="Base branch for new work branches")
    branch_prefix: str = Field(default="patchfleet", description="Prefix for generated branch names")
    existing_branch_strategy: BranchStrategy = Field(
        default=BranchStrategy.AUTO_CLEAN, description="How to resolve branch name collisions"
    )
    suffix_probe_limit: int = Field(default=100, ge=2, description="Highest suffix tried by the suffix strategy")
    network_timeout: float = Field(default=300.0, gt=0, description="Hard timeout for remote git commands (seconds)")
    kill_grace_period: float = Field(default=5.0, ge=0, description="Seconds between SIGTERM and SIGKILL")
    clone_url_template: str = Field(
        default="https://{host}/{owner}/{repo}.git",
        description="Clone URL pattern; {host}, {owner} and {repo} are substituted",
    )
    fork_workflow: bool = Field(default=True, description="Work through a fork when push access is missing")


class ParallelConfig(BaseModel):
    """Parallel run configuration."""

    max_concurrent_agents: int = Field(default=3, ge=1, le=32, description="Default worker pool size")
    max_worktrees: int = Field(default=10, ge=1, description="Maximum live worktrees across all repositories")
    max_worktrees_per_project: int = Field(default=5, ge=1, description="Maximum live worktrees per repository")
    auto_cleanup_hours: float = Field(default=24.0, ge=0, description="Age after which idle worktrees are removed")
    enable_conflict_detection: bool = Field(default=True, description="Monitor active workspaces for overlap")
    conflict_policy: ConflictPolicy = Field(default=ConflictPolicy.WARN, description="Reaction to detected overlap")
    conflict_poll_interval: float = Field(default=5.0, gt=0, description="Seconds between conflict checks")
    keep_worktrees: bool = Field(default=False, description="Leave worktrees on disk after a unit finishes")
    scheduler_poll_interval: float = Field(
        default=1.0, gt=0, description="Seconds between checks of the persisted run status"
    )


class RetryConfig(BaseModel):
    """Retry with exponential backoff."""

    max_retries: int = Field(default=3, ge=0, le=20, description="Retries after the first attempt")
    base_delay_ms: int = Field(default=1000, ge=0, description="Delay before the first retry")
    max_delay_ms: int = Field(default=30000, ge=0, description="Cap on any single delay")
    jitter: bool = Field(default=True, description="Add up to 25% random jitter to each delay")


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker thresholds, applied per operation class."""

    failure_threshold: int = Field(default=5, ge=1, description="Consecutive failures that open the circuit")
    success_threshold: int = Field(default=2, ge=1, description="Consecutive probe successes that close it")
    open_duration_ms: int = Field(default=60000, ge=0, description="Time the circuit stays open before probing")


class WatchdogConfig(BaseModel):
    """Inactivity timeouts (seconds) per operation class."""

    git_timeout: float = Field(default=300.0, gt=0)
    api_timeout: float = Field(default=60.0, gt=0)
    processor_timeout: float = Field(default=3600.0, gt=0)


class HardeningConfig(BaseModel):
    """Resilience settings for network-touching operations."""

    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)


class VCSConfig(BaseModel):
    """VCS hosting API configuration."""

    provider_type: VCSProviderType = Field(default=VCSProviderType.GITHUB, description="Hosting API flavor")
    api_url: str = Field(default="https://api.github.com", description="REST API base URL")
    token: SecretStr | None = Field(default=None, description="API token (use ${ENV_VAR} in YAML)")
    timeout: float = Field(default=30.0, gt=0, description="HTTP request timeout in seconds")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", description="Minimum log level")
    json_output: bool = Field(default=True, alias="json", description="Emit JSON lines instead of console output")

    model_config = ConfigDict(populate_by_name=True)


class FleetSettings(BaseSettings):
    """Main patchfleet settings.

    Combines all configuration sections and supports loading from a YAML file
    with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="PATCHFLEET_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    data_dir: str = Field(default=".patchfleet", description="Directory for the database, clones and worktrees")
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    parallel: ParallelConfig = Field(default_factory=ParallelConfig)
    hardening: HardeningConfig = Field(default_factory=HardeningConfig)
    vcs: VCSConfig = Field(default_factory=VCSConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def database_path(self) -> Path:
        return Path(self.data_dir) / "state.db"

    @property
    def repos_dir(self) -> Path:
        return Path(self.data_dir) / "repos"

    @property
    def worktrees_dir(self) -> Path:
        return Path(self.data_dir) / "worktrees"

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> FleetSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            FleetSettings instance

        Raises:
            ConfigurationError: If the file is missing, unreadable, or invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            yaml_content = config_file.read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML mapping, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Replace ${VAR} and ${VAR:-default} placeholders, leaving comment lines alone.

        Raises:
            ValueError: If a variable without a default is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name, default_value = match.group(1), match.group(2)
            value = os.getenv(var_name)
            if value is not None:
                return value
            if default_value is not None:
                return default_value
            raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
