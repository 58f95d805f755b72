"""Configuration management for hooplatent."""

from enum import Enum
from pathlib import Path

from platformdirs import user_data_dir
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Log levels accepted by the command line entrypoint."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class HooplatentConfig(BaseSettings):
    """Configuration settings for hooplatent."""

    # Storage settings
    data_dir: Path = Field(
        default_factory=lambda: Path(user_data_dir("hooplatent")),
        description="Directory holding posteriors, encoder and outcome model weights",
        alias="HOOPLATENT_DATA_DIR",
    )

    store_path: Path | None = Field(
        default=None,
        description="SQLite file for team posteriors (defaults to <data_dir>/posteriors.sqlite3)",
        alias="HOOPLATENT_STORE_PATH",
    )

    # Engine tunables
    engine_config_path: Path = Field(
        default=Path("config/engine.yaml"),
        description="Base YAML file for engine tunables",
        alias="HOOPLATENT_ENGINE_CONFIG_PATH",
    )

    # Logging
    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Root log level: 'DEBUG', 'INFO', 'WARNING' or 'ERROR'",
        alias="HOOPLATENT_LOG_LEVEL",
    )

    # Reproducibility
    seed: int | None = Field(
        default=None,
        description="Global seed applied to simulation when none is configured",
        alias="HOOPLATENT_SEED",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    def resolved_store_path(self) -> Path:
        """Return the posterior database path, falling back to the data dir."""
        if self.store_path is not None:
            return self.store_path
        return self.data_dir / "posteriors.sqlite3"


# Global configuration instance
config = HooplatentConfig()


def get_config() -> HooplatentConfig:
    """Get the current configuration."""
    return config


def update_config(**kwargs) -> None:
    """Update configuration settings."""
    global config
    for key, value in kwargs.items():
        if hasattr(config, key):
            setattr(config, key, value)
        else:
            raise ValueError(f"Unknown configuration option: {key}")


def reset_config() -> None:
    """Reset configuration to defaults."""
    global config
    config = HooplatentConfig()
