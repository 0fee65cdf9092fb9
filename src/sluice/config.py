"""Pipeline configuration for sluice.

This module defines the Pydantic v2 configuration schema, YAML loading, and
target-override resolution. Environment and target selection is a pure
configuration merge kept entirely outside the state machine:
``resolve_config(base, overrides)`` deep-merges with overrides winning on
conflict.

Key Components:
    RetryConfig: Exponential backoff for infrastructure errors
    CheckConfig: One check registered for a stage
    StageConfig: Ordered checks plus mandatory flag for a stage
    PipelineConfig: Top-level configuration
    load_config: Load and validate a YAML configuration file
    resolve_config: Deep merge with override-wins semantics

Example:
    >>> base = {"timeouts": {"check_seconds": 300}, "project": "shop"}
    >>> resolve_config(base, {"timeouts": {"check_seconds": 60}})
    {'timeouts': {'check_seconds': 60}, 'project': 'shop'}
"""

from __future__ import annotations

from copy import deepcopy
from enum import Enum
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from sluice.errors import ConfigurationError
from sluice.schemas.environment import Environment
from sluice.schemas.gates import GateStage

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_FILENAME = "sluice.yaml"


class RetryConfig(BaseModel):
    """Retry policy configuration for infrastructure errors.

    Uses exponential backoff with optional jitter to prevent thundering herd.

    Examples:
        >>> config = RetryConfig(max_attempts=5, initial_delay_ms=500)
        >>> config.initial_delay_ms
        500
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum number of attempts (including the first)",
    )
    initial_delay_ms: int = Field(
        default=1000,
        ge=0,
        description="Initial delay between retries in milliseconds",
    )
    backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        le=5.0,
        description="Multiplier for exponential backoff",
    )
    max_delay_ms: int = Field(
        default=30000,
        ge=0,
        description="Maximum delay cap in milliseconds",
    )
    jitter: bool = Field(
        default=True,
        description="Add random jitter to delays",
    )


class CheckKind(str, Enum):
    """How a configured check is executed.

    Attributes:
        COMMAND: Run a command; exit code 0 passes.
        THRESHOLD: Run a command that prints a number; passes when <= max_value.
        SIGNATURE: Command check that verifies the artifact signature.
    """

    COMMAND = "command"
    THRESHOLD = "threshold"
    SIGNATURE = "signature"


class CheckConfig(BaseModel):
    """One check registered for a stage.

    Commands may reference ``${CHANGE_ID}``, ``${STAGE}``, ``${ARTIFACT_REF}``
    and ``${ROUTE}``.

    Examples:
        >>> CheckConfig(name="ruff", command="ruff check .").blocking
        True
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, description="Check name")
    kind: CheckKind = Field(default=CheckKind.COMMAND, description="Check kind")
    command: str = Field(..., min_length=1, description="Command template")
    blocking: bool = Field(default=True, description="Failure fails the gate")
    max_value: float | None = Field(
        default=None,
        description="Upper bound for threshold checks",
    )
    timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Per-check timeout override",
    )

    @model_validator(mode="after")
    def validate_threshold(self) -> CheckConfig:
        """Threshold checks need a max_value."""
        if self.kind == CheckKind.THRESHOLD and self.max_value is None:
            raise ValueError(f"Threshold check '{self.name}' requires max_value")
        return self


class StageConfig(BaseModel):
    """Checks for one gate stage."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    mandatory: bool = Field(default=True, description="Failure blocks promotion")
    checks: list[CheckConfig] = Field(default_factory=list, description="Ordered checks")


class TimeoutConfig(BaseModel):
    """Timeouts for operations that wait on external parties."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    check_seconds: float = Field(default=600.0, gt=0, description="Per-check timeout")
    deployment_confirmation_seconds: float = Field(
        default=1800.0,
        gt=0,
        description="Production deployment confirmation window",
    )
    lane_wait_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Maximum production lane wait (None waits indefinitely)",
    )
    poll_interval_seconds: float = Field(
        default=0.5,
        gt=0,
        description="Store polling interval for lane and confirmation waits",
    )


class NamespaceConfig(BaseModel):
    """Ephemeral namespace settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    prefix: str = Field(
        default="pr",
        pattern=r"^[a-z][a-z0-9-]{0,15}$",
        description="Namespace key prefix",
    )
    base_domain: str = Field(default="preview.local", description="Route base domain")
    create_command: str | None = Field(default=None, description="Provision command")
    destroy_command: str | None = Field(default=None, description="Teardown command")


class EnvironmentCommands(BaseModel):
    """Deploy and rollback commands for a shared environment.

    Commands may reference ``${CHANGE_ID}``, ``${ARTIFACT_REF}`` and ``${VERSION}``.
    When ``deploy_command`` is unset for production, confirmation is expected
    as a ``deploy_result`` event.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    deploy_command: str | None = None
    rollback_command: str | None = None


class FastTrackConfig(BaseModel):
    """Chat command words."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    commands: list[str] = Field(
        default_factory=lambda: ["fast-track", "/fast-track", "/ship"],
        min_length=1,
        description="Chat commands that trigger a fast-track run",
    )
    retry_commands: list[str] = Field(
        default_factory=lambda: ["retry", "/retry"],
        description="Chat commands that retry a blocked staging deployment",
    )

    def is_fast_track(self, command: str) -> bool:
        return command.strip().lower() in {c.lower() for c in self.commands}

    def is_retry(self, command: str) -> bool:
        return command.strip().lower() in {c.lower() for c in self.retry_commands}


class WebhookConfig(BaseModel):
    """Webhook delivery of notification records.

    Examples:
        >>> WebhookConfig(url="https://hooks.example.com/sluice").timeout_seconds
        10
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str = Field(..., min_length=1, description="Webhook endpoint URL")
    headers: dict[str, str] | None = Field(default=None, description="Custom headers")
    timeout_seconds: int = Field(default=10, ge=1, le=300, description="Request timeout")
    retry_count: int = Field(default=3, ge=0, le=10, description="Retries on failure")
    statuses: list[str] = Field(
        default_factory=lambda: ["started", "success", "failure"],
        description="Notification statuses to deliver",
    )


class PipelineConfig(BaseModel):
    """Top-level sluice configuration.

    Examples:
        >>> config = PipelineConfig(project="shop")
        >>> config.stage(GateStage.LINT).mandatory
        True
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    project: str = Field(default="default", min_length=1, description="Project name")
    initial_version: str = Field(
        default="0.0.0",
        description="Version the first release is bumped from",
    )
    database_url: str = Field(
        default="sqlite:///sluice.db",
        description="SQLAlchemy URL of the promotion store",
    )
    stages: dict[GateStage, StageConfig] = Field(
        default_factory=dict,
        description="Checks per gate stage",
    )
    retry: RetryConfig = Field(default_factory=RetryConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    namespaces: NamespaceConfig = Field(default_factory=NamespaceConfig)
    environments: dict[Environment, EnvironmentCommands] = Field(default_factory=dict)
    fast_track: FastTrackConfig = Field(default_factory=FastTrackConfig)
    webhooks: list[WebhookConfig] = Field(default_factory=list)
    targets: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Named override sets applied with resolve_config",
    )

    @model_validator(mode="after")
    def validate_production_signature(self) -> PipelineConfig:
        """A configured production stage must verify signatures."""
        production = self.stages.get(GateStage.PRODUCTION)
        if production is not None and production.checks:
            if not any(c.kind == CheckKind.SIGNATURE for c in production.checks):
                raise ValueError(
                    "production stage must include a check of kind 'signature'"
                )
        return self

    def stage(self, stage: GateStage) -> StageConfig:
        """Return the configuration for a stage (empty and mandatory when absent)."""
        return self.stages.get(stage, StageConfig())

    def commands_for(self, environment: Environment) -> EnvironmentCommands:
        return self.environments.get(environment, EnvironmentCommands())

    def for_target(self, target: str) -> PipelineConfig:
        """Return the effective configuration for a named target.

        Raises:
            ConfigurationError: If the target is unknown or the merge is invalid.
        """
        if target not in self.targets:
            raise ConfigurationError(
                f"Unknown target '{target}'. Known targets: {sorted(self.targets)}"
            )
        base = self.model_dump(mode="json", exclude={"targets"})
        effective = resolve_config(base, self.targets[target])
        try:
            return PipelineConfig.model_validate(effective)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration for target '{target}': {e}") from e


def resolve_config(
    base_config: dict[str, Any],
    target_overrides: dict[str, Any],
) -> dict[str, Any]:
    """Recursively merge target overrides into a base configuration.

    Overrides win on conflict. Nested dictionaries are merged recursively;
    lists and scalars are replaced. Inputs are never modified.

    Args:
        base_config: Base configuration (lower priority).
        target_overrides: Target-specific overrides (higher priority).

    Returns:
        New dictionary with the effective configuration.

    Examples:
        >>> resolve_config({"a": 1, "b": {"c": 2}}, {"b": {"d": 3}})
        {'a': 1, 'b': {'c': 2, 'd': 3}}
        >>> resolve_config({"items": [1, 2]}, {"items": [3]})
        {'items': [3]}
    """
    result = deepcopy(base_config)

    for key, override_value in target_overrides.items():
        if isinstance(result.get(key), dict) and isinstance(override_value, dict):
            result[key] = resolve_config(result[key], override_value)
        else:
            # Override wins for scalars, lists and type mismatches
            result[key] = deepcopy(override_value)

    return result


def load_config(path: Path, *, target: str | None = None) -> PipelineConfig:
    """Load a PipelineConfig from a YAML file.

    Args:
        path: Path to the YAML configuration.
        target: Optional target whose overrides are applied.

    Returns:
        Validated configuration.

    Raises:
        ConfigurationError: If the file cannot be read, parsed or validated.
    """
    try:
        with open(path) as f:
            data: dict[str, Any] = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration {path} must be a mapping")

    try:
        config = PipelineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration {path}: {e}") from e

    logger.debug("config_loaded", path=str(path), project=config.project, target=target)
    return config.for_target(target) if target else config


__all__ = [
    "DEFAULT_CONFIG_FILENAME",
    "CheckConfig",
    "CheckKind",
    "EnvironmentCommands",
    "FastTrackConfig",
    "NamespaceConfig",
    "PipelineConfig",
    "RetryConfig",
    "StageConfig",
    "TimeoutConfig",
    "WebhookConfig",
    "load_config",
    "resolve_config",
]
