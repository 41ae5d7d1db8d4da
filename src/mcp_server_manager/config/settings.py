"""Application configuration settings."""

import os
import sys
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings

APP_DIR_NAME = "mcp-server-manager"


def default_data_dir() -> str:
    """Return the per-user application data directory for this platform."""
    appdata = os.environ.get("APPDATA")
    if appdata:
        return str(Path(appdata) / APP_DIR_NAME)
    if sys.platform == "darwin":
        return str(Path.home() / "Library" / "Application Support" / APP_DIR_NAME)
    return str(Path.home() / ".local" / "share" / APP_DIR_NAME)


class LoggingConfig(BaseSettings):
    """Logging configuration settings."""

    level: str = Field(default="INFO", description="Log level")
    file_path: Optional[str] = Field(default=None, description="Log file path")
    json_format: bool = Field(default=False, description="Use JSON log format")

    class Config:
        env_prefix = "MCP_MANAGER_LOG_"


class HealthCheckConfig(BaseSettings):
    """Health check and stop verification settings."""

    sse_timeout: float = Field(
        default=3.0, description="SSE probe timeout in seconds"
    )
    sse_stop_timeout: float = Field(
        default=1.0, description="SSE probe timeout while verifying a stop"
    )
    port_timeout: float = Field(
        default=1.0, description="TCP connect timeout in seconds"
    )
    stop_attempts: int = Field(
        default=3, description="Polls before giving up on a closing resource"
    )
    stop_backoff: float = Field(
        default=0.5, description="Seconds between stop verification polls"
    )
    status_interval: float = Field(
        default=5.0, description="Seconds between periodic status updates"
    )

    class Config:
        env_prefix = "MCP_MANAGER_HEALTH_"


class InstallerConfig(BaseSettings):
    """Installer and toolchain probe settings."""

    probe_timeout: float = Field(
        default=15.0, description="Toolchain probe timeout in seconds"
    )
    command_timeout: float = Field(
        default=900.0, description="Install step timeout in seconds"
    )

    class Config:
        env_prefix = "MCP_MANAGER_INSTALL_"


class Settings(BaseSettings):
    """Main application settings."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    health: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    installer: InstallerConfig = Field(default_factory=InstallerConfig)

    data_dir: str = Field(
        default_factory=default_data_dir, description="User data directory"
    )
    catalog_dir: Optional[str] = Field(
        default=None, description="Directory holding base server definitions"
    )
    user_config_name: str = Field(
        default="userServers.json", description="User overlay file name"
    )

    class Config:
        env_prefix = "MCP_MANAGER_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    def get_data_dir(self) -> Path:
        """Get the data directory path."""
        return Path(self.data_dir).expanduser()

    def get_catalog_dir(self) -> Path:
        """Get the base catalog directory (defaults to <data_dir>/catalog)."""
        if self.catalog_dir:
            return Path(self.catalog_dir).expanduser()
        return self.get_data_dir() / "catalog"

    def get_user_config_path(self) -> Path:
        """Get the persisted user overlay path."""
        return self.get_data_dir() / self.user_config_name

    def get_servers_dir(self) -> Path:
        """Get the directory installations are materialized into."""
        return self.get_data_dir() / "servers"

    def get_log_file_path(self) -> Optional[Path]:
        """Get the log file path if configured."""
        if self.logging.file_path:
            return Path(self.logging.file_path)
        return None
