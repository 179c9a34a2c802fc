"""
PoolForge configuration management.

Provides centralized configuration with validation using Pydantic.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

DEFAULT_HOME = Path.home() / ".poolforge"


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    file_enabled: bool = True
    console_enabled: bool = True
    json_format: bool = False
    log_directory: Path = Field(default_factory=lambda: DEFAULT_HOME / "logs")

    @field_validator("log_directory", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()


class BackendConfig(BaseModel):
    """Connection settings for the NAS backend."""

    base_url: str = "http://localhost:3001"
    session_id: str | None = None
    csrf_token: str | None = None
    timeout_seconds: float | None = Field(default=None, gt=0)
    verify_tls: bool = True

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def api_base(self) -> str:
        return f"{self.base_url}/api"


class PollingConfig(BaseModel):
    """Cadence of the background pollers."""

    sync_interval_seconds: float = Field(default=1.0, ge=0)
    sync_safety_timeout_polls: int = Field(default=150, ge=1)
    sync_max_fetch_failures: int = Field(default=5, ge=0)
    sync_ui_wait_seconds: float = Field(default=2.0, ge=0)
    detection_initial_delay_seconds: float = Field(default=5.0, ge=0)
    detection_interval_seconds: float = Field(default=30.0, gt=0)
    stats_interval_seconds: float = Field(default=2.0, gt=0)
    public_ip_interval_seconds: float = Field(default=600.0, gt=0)


class WizardConfig(BaseModel):
    """Configuration for the pool setup wizard."""

    state_file: Path = Field(default_factory=lambda: DEFAULT_HOME / "wizard_state.json")
    pool_mount_path: str = "/mnt/storage"
    cache_requires_fast_disk: bool = False
    format_new_disks: bool = True

    @field_validator("state_file", mode="before")
    @classmethod
    def expand_state_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()


class PoolForgeConfig(BaseModel):
    """Main PoolForge configuration."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    wizard: WizardConfig = Field(default_factory=WizardConfig)

    @classmethod
    def load(cls, config_path: Path | None = None) -> PoolForgeConfig:
        """Load configuration from file or create default."""
        if config_path is None:
            config_path = DEFAULT_HOME / "config.json"

        if config_path.exists():
            with open(config_path) as f:
                data = json.load(f)
            return cls.model_validate(data)

        return cls()

    def save(self, config_path: Path | None = None) -> None:
        """Save configuration to file."""
        if config_path is None:
            config_path = DEFAULT_HOME / "config.json"

        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)

    def ensure_directories(self) -> None:
        """Create all required directories."""
        if self.logging.file_enabled:
            self.logging.log_directory.mkdir(parents=True, exist_ok=True)
        self.wizard.state_file.parent.mkdir(parents=True, exist_ok=True)


def get_default_config() -> PoolForgeConfig:
    """Get the default configuration."""
    return PoolForgeConfig()


def load_config(config_path: Path | None = None) -> PoolForgeConfig:
    """Load or create configuration."""
    config = PoolForgeConfig.load(config_path)
    config.ensure_directories()
    return config
