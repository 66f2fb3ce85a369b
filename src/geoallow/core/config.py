"""Configuration management using Pydantic.

Provides:
- Typed configuration model with validation
- YAML file loading with defaults
- Environment variable overrides
"""

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from geoallow.core.exceptions import ConfigurationError, ValidationError
from geoallow.core.validation import validate_registry_url, validate_subnet


# Default configuration paths
DEFAULT_CONFIG_PATH = Path("/etc/geoallow/config.yaml")
DEFAULT_REGISTRY_PATH = Path("/etc/geoallow/registry.yaml")
DEFAULT_DATA_DIR = Path("/var/lib/geoallow")
DEFAULT_LOCK_PATH = Path("/run/geoallow.lock")
DEFAULT_LOG_PATH = Path("/var/log/geoallow/audit.log")

DEFAULT_REGISTRY_URL = (
    "https://stat.ripe.net/data/country-resource-list/data.json"
    "?v4_format=prefix&resource={cc}"
)


class GeoAllowConfig(BaseModel):
    """Root configuration model.

    Loaded from /etc/geoallow/config.yaml. Which countries are managed is
    not configured here; that lives in the country registry.
    """

    # Registry fetch
    registry_url: str = DEFAULT_REGISTRY_URL
    fetch_timeout: int = 30
    fetch_retries: int = 2
    fetch_workers: int = 4

    # Anomaly guards
    min_prefixes: int = 100
    regression_ratio: float = 0.9

    # Firewall
    command_timeout: int = 120
    local_subnet: Optional[str] = None  # Auto-detected when unset

    # Scheduler units disabled by the minimal teardown
    scheduler_units: list[str] = Field(
        default_factory=lambda: ["geoallow-update.timer", "geoallow-boot.service"]
    )

    # Paths
    data_dir: Path = DEFAULT_DATA_DIR
    registry_path: Path = DEFAULT_REGISTRY_PATH
    lock_path: Path = DEFAULT_LOCK_PATH
    log_path: Path = DEFAULT_LOG_PATH

    @field_validator("registry_url")
    @classmethod
    def check_registry_url(cls, v: str) -> str:
        try:
            return validate_registry_url(v)
        except ValidationError as e:
            raise ValueError(e.message) from e

    @field_validator("local_subnet")
    @classmethod
    def check_local_subnet(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            return validate_subnet(v)
        except ValidationError as e:
            raise ValueError(e.message) from e

    @field_validator("fetch_timeout", "command_timeout", "fetch_workers")
    @classmethod
    def check_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("fetch_retries", "min_prefixes")
    @classmethod
    def check_not_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("regression_ratio")
    @classmethod
    def check_ratio(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("regression_ratio must be in (0, 1]")
        return v

    @classmethod
    def load(cls, path: Path) -> "GeoAllowConfig":
        """Load configuration from YAML file.

        Args:
            path: Path to configuration file

        Returns:
            Loaded configuration

        Raises:
            ConfigurationError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}",
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file: {path}",
                details=[str(e)],
            ) from e
        except PermissionError:
            raise ConfigurationError(
                f"Cannot read configuration file: {path}",
                hint="Check file permissions or run with sudo",
            )

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration file must contain a mapping: {path}",
            )

        try:
            return cls(**data)
        except Exception as e:
            raise ConfigurationError(
                f"Invalid configuration: {e}",
                details=[str(e)],
            ) from e

    @classmethod
    def load_or_default(cls, path: Optional[Path] = None) -> "GeoAllowConfig":
        """Load configuration, falling back to defaults if file doesn't exist."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        if path.exists():
            return cls.load(path)
        return cls()


class EnvironmentOverrides(BaseSettings):
    """Overrides loaded from GEOALLOW_* environment variables.

    Useful for tests and for pointing a host at a registry mirror.
    """

    model_config = SettingsConfigDict(env_prefix="GEOALLOW_", extra="ignore")

    registry_url: Optional[str] = None
    data_dir: Optional[Path] = None
    registry_path: Optional[Path] = None


class AppConfig:
    """Application configuration combining the config file and environment.

    This is the main interface for accessing configuration throughout the app.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[GeoAllowConfig] = None,
    ) -> None:
        """Initialize application configuration.

        Args:
            config_path: Path to config file (uses default if None)
            config: Pre-loaded config (skips file loading if provided)
        """
        self.config_path = config_path or DEFAULT_CONFIG_PATH
        base = config or GeoAllowConfig.load_or_default(self.config_path)
        self._config = self._apply_overrides(base, EnvironmentOverrides())

    @staticmethod
    def _apply_overrides(
        config: GeoAllowConfig,
        overrides: EnvironmentOverrides,
    ) -> GeoAllowConfig:
        updates = overrides.model_dump(exclude_none=True)
        if not updates:
            return config
        try:
            return GeoAllowConfig(**{**config.model_dump(), **updates})
        except Exception as e:
            raise ConfigurationError(
                f"Invalid GEOALLOW_* environment override: {e}",
                details=[str(e)],
            ) from e

    @property
    def config(self) -> GeoAllowConfig:
        """Get the loaded configuration."""
        return self._config

    @property
    def lists_dir(self) -> Path:
        """Directory holding one stored prefix list per country."""
        return self._config.data_dir / "lists"

    @property
    def snapshot_path(self) -> Path:
        """Path of the single known-good snapshot."""
        return self._config.data_dir / "snapshot.dump"

    @property
    def registry_path(self) -> Path:
        return self._config.registry_path

    @property
    def lock_path(self) -> Path:
        return self._config.lock_path

    @property
    def log_path(self) -> Path:
        return self._config.log_path
