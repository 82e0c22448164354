"""
Configuration management for MeterForge.

Handles loading, validating, and persisting configuration from YAML files.
Default location: ~/.meterforge/config.yaml
"""

from pathlib import Path
from typing import Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings

from meterforge.models import StorageMode


def get_default_storage_path() -> Path:
    """Get the default storage path for MeterForge."""
    return Path.home() / ".meterforge"


class Config(BaseSettings):
    """MeterForge configuration settings."""

    # Storage settings
    storage_path: Path = Field(default_factory=get_default_storage_path)
    storage_mode: StorageMode = Field(default=StorageMode.LOCAL)

    # Data file used by the filesystem backend
    data_file: Optional[Path] = None

    # WebDAV settings (the password lives in the credential store)
    webdav_server_url: Optional[str] = None
    webdav_username: Optional[str] = None
    webdav_file_path: str = Field(default="/MeterForge/meterforge-data.json")
    webdav_max_retries: int = Field(default=3, ge=0, le=10)
    webdav_retry_delay: float = Field(default=1.0, ge=0.0)

    # Cloud sync gateway
    cloud_api_base_url: Optional[str] = None
    cloud_access_token: Optional[str] = None

    # Persistence
    autosave_delay: float = Field(default=0.1, ge=0.0)

    # Secret for encrypting stored credentials; a built-in value is used if unset
    credential_passphrase: Optional[str] = None

    log_level: str = Field(default="WARNING")

    class Config:
        env_prefix = "METERFORGE_"
        env_file = ".env"

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """Load configuration from YAML file."""
        if config_path is None:
            config_path = get_default_storage_path() / "config.yaml"

        if config_path.exists():
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
            return cls(**data)

        return cls()

    def save(self, config_path: Optional[Path] = None) -> None:
        """Save configuration to YAML file."""
        if config_path is None:
            config_path = self.storage_path / "config.yaml"

        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "storage_path": str(self.storage_path),
            "storage_mode": self.storage_mode.value,
            "data_file": str(self.data_file) if self.data_file else None,
            "webdav_server_url": self.webdav_server_url,
            "webdav_username": self.webdav_username,
            "webdav_file_path": self.webdav_file_path,
            "webdav_max_retries": self.webdav_max_retries,
            "webdav_retry_delay": self.webdav_retry_delay,
            "cloud_api_base_url": self.cloud_api_base_url,
            # Access token and passphrase are never written to disk
            "autosave_delay": self.autosave_delay,
            "log_level": self.log_level,
        }

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False)

    @property
    def sqlite_path(self) -> Path:
        """Get the SQLite database path."""
        return self.storage_path / "sqlite" / "meterforge.db"

    @property
    def logs_path(self) -> Path:
        """Get the logs directory path."""
        return self.storage_path / "logs"

    def ensure_directories(self) -> None:
        """Create all necessary directories."""
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
        self.logs_path.mkdir(parents=True, exist_ok=True)
