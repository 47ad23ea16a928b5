"""Configuration loading and validation for freshtable projects.

Configuration is loaded from freshtable.yaml and validated using Pydantic.
Supports environment-specific registry and backend settings.
"""

from __future__ import annotations

from functools import cache
from pathlib import Path

import omegaconf as oc
import pydantic as pdt
import pydantic_settings as pdts

import freshtable.backends as backends
import freshtable.errors as errors


class Settings(pdts.BaseSettings, strict=True, frozen=True, extra="forbid"):
    """Base settings class with strict validation."""

    pass


class SchedulerSettings(Settings):
    """Background refresh behaviour.

    A dynamic table is refreshed once its staleness reaches
    ``refresh_fraction`` of its target lag, leaving headroom for the
    refresh itself.
    """

    tick_interval_seconds: float = 5.0
    refresh_fraction: float = pdt.Field(default=0.5, gt=0, le=1)
    max_retries: int = pdt.Field(default=2, ge=0)
    retry_backoff_seconds: float = pdt.Field(default=1.0, ge=0)
    max_consecutive_failures: int = pdt.Field(default=5, ge=1)


class EnvironmentSettings(Settings):
    """Configuration for a single environment (dev, stg, prd)."""

    registry: backends.RegistryKind = pdt.Field(..., discriminator="kind")
    backend: backends.BackendKind = pdt.Field(..., discriminator="kind")


class FreshtableSettings(Settings):
    """Root configuration loaded from freshtable.yaml.

    Example freshtable.yaml:
        name: fraud-demo
        default_env: dev
        definitions:
          - tables.py
        scheduler:
          tick_interval_seconds: 5
          refresh_fraction: 0.5
        environments:
          dev:
            registry:
              kind: sqlite
              path: .freshtable/registry.db
            backend:
              kind: duckdb
              path: .freshtable/data
              catalog: fraud_demo
    """

    name: str
    default_env: str
    definitions: list[str] = pdt.Field(default_factory=lambda: ["tables/"])
    scheduler: SchedulerSettings = pdt.Field(default_factory=SchedulerSettings)
    environments: dict[str, EnvironmentSettings]

    # Internal: tracks which env is currently active (set via resolve_environment)
    _active_env: str | None = pdt.PrivateAttr(default=None)
    _config_path: Path | None = pdt.PrivateAttr(default=None)

    @pdt.model_validator(mode="after")
    def validate_default_env_exists(self) -> FreshtableSettings:
        """Ensure default_env references a defined environment."""
        if self.default_env not in self.environments:
            raise ValueError(
                f"default_env '{self.default_env}' not found in environments: "
                f"{list(self.environments.keys())}"
            )
        return self

    @property
    def active_env(self) -> str:
        """Get the currently active environment name."""
        return self._active_env or self.default_env

    @property
    def active_environment(self) -> EnvironmentSettings:
        """Get the environment config for the currently active environment."""
        return self.environments[self.active_env]

    def resolve_environment(self, env: str | None = None) -> FreshtableSettings:
        """Set the active environment, validating it exists.

        Raises:
            EnvironmentNotFoundError: If env is not defined.
        """
        target = env or self.default_env
        if target not in self.environments:
            raise errors.EnvironmentNotFoundError(
                env=target,
                available=list(self.environments.keys()),
            )
        object.__setattr__(self, "_active_env", target)
        return self


def load_freshtable_settings(
    path: Path | str = Path("freshtable.yaml"),
    env: str | None = None,
) -> FreshtableSettings:
    """Load and validate freshtable configuration from a YAML file.

    Args:
        path: Path to freshtable.yaml file.
        env: Environment to activate. If None, uses default_env from config.

    Raises:
        ConfigNotFoundError: If config file doesn't exist.
        ConfigValidationError: If config fails validation.
    """
    path = Path(path)

    if not path.exists():
        raise errors.ConfigNotFoundError(str(path))

    try:
        config = oc.OmegaConf.load(path)
        config_dict = oc.OmegaConf.to_container(config, resolve=True)
        settings = FreshtableSettings.model_validate(config_dict)
        object.__setattr__(settings, "_config_path", path)
        settings.resolve_environment(env)
        return settings
    except pdt.ValidationError as e:
        raise errors.ConfigValidationError(
            path=str(path),
            details=_format_validation_errors(e),
        ) from e
    except oc.errors.OmegaConfBaseException as e:
        raise errors.ConfigValidationError(
            path=str(path),
            details=str(e),
        ) from e


def _format_validation_errors(error: pdt.ValidationError) -> str:
    """Format Pydantic validation errors into readable messages."""
    messages = []
    for err in error.errors():
        loc = ".".join(str(x) for x in err["loc"])
        msg = err["msg"]
        messages.append(f"  - {loc}: {msg}")
    return "\n".join(messages)


@cache
def get_settings() -> FreshtableSettings:
    """Get cached settings instance for CLI commands."""
    return load_freshtable_settings()
