"""
Environment-based settings for the S3 portal.

Process-level settings (server bind, logging, background worker bounds,
streaming and upload limits) come from environment variables. The set of
backing stores lives in the YAML config file handled by ``config.py``.
"""

import os
from pathlib import Path
from typing import Optional
from dataclasses import dataclass, field
from dotenv import load_dotenv
import logging

logger = logging.getLogger(__name__)

# Load environment variables from .env file
env_file = Path(__file__).parent.parent.parent / ".env"
if env_file.exists():
    load_dotenv(env_file, override=True)
    logger.info(f"Loaded environment variables from: {env_file}")


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(key, "").lower()
    return value in ("true", "1", "yes", "on") if value else default


def get_env_int(key: str, default: int = 0) -> int:
    """Get integer value from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def get_env_float(key: str, default: float = 0.0) -> float:
    """Get float value from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def get_env_list(key: str, default: Optional[list] = None, separator: str = ",") -> list:
    """Get list value from environment variable."""
    if default is None:
        default = []
    value = os.getenv(key, "")
    return [item.strip() for item in value.split(separator) if item.strip()] if value else default


@dataclass
class AppSettings:
    """Application settings from environment variables."""

    # Environment
    environment: str = field(default_factory=lambda: os.getenv("ENVIRONMENT", "development"))
    debug: bool = field(default_factory=lambda: get_env_bool("DEBUG", False))

    app_name: str = "S3 Portal"
    app_version: str = "0.1.0"

    # Server
    config_path: str = field(default_factory=lambda: os.getenv("PORTAL_CONFIG_PATH", "config.yaml"))
    host: str = field(default_factory=lambda: os.getenv("PORTAL_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: get_env_int("PORTAL_PORT", 8081))
    cors_origins: list = field(default_factory=lambda: get_env_list("CORS_ORIGINS", ["*"]))

    # Store clients
    storage_max_pool_connections: int = field(default_factory=lambda: get_env_int("STORAGE_MAX_POOL_CONNECTIONS", 10))
    storage_max_attempts: int = field(default_factory=lambda: get_env_int("STORAGE_MAX_ATTEMPTS", 3))

    # Prefix stats
    stats_max_concurrency: int = field(default_factory=lambda: get_env_int("STATS_MAX_CONCURRENCY", 4))
    stats_cleanup_interval: int = field(default_factory=lambda: get_env_int("STATS_CLEANUP_INTERVAL", 300))
    stats_poll_interval: float = field(default_factory=lambda: get_env_float("STATS_POLL_INTERVAL", 1.0))
    stats_poll_max_attempts: int = field(default_factory=lambda: get_env_int("STATS_POLL_MAX_ATTEMPTS", 30))

    # Archive streaming and uploads
    archive_chunk_size: int = field(default_factory=lambda: get_env_int("ARCHIVE_CHUNK_SIZE", 1048576))  # 1MB
    upload_max_size: int = field(default_factory=lambda: get_env_int("UPLOAD_MAX_SIZE", 5368709120))  # 5GB
    upload_temp_dir: Optional[str] = field(default_factory=lambda: os.getenv("UPLOAD_TEMP_DIR"))

    # Logging
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_json_format: bool = field(default_factory=lambda: get_env_bool("LOG_JSON_FORMAT", False))

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.environment == "development" and not os.getenv("DEBUG"):
            self.debug = True

        if self.stats_max_concurrency < 1:
            logger.warning("STATS_MAX_CONCURRENCY must be at least 1, using 1")
            self.stats_max_concurrency = 1
        if self.archive_chunk_size < 1024:
            logger.warning("ARCHIVE_CHUNK_SIZE below 1KB, using 64KB")
            self.archive_chunk_size = 64 * 1024
        if self.upload_max_size < 0:
            self.upload_max_size = 0

    def get_client_config(self) -> dict:
        """Get store client configuration as a dictionary."""
        return {
            "max_pool_connections": self.storage_max_pool_connections,
            "max_attempts": self.storage_max_attempts,
        }

    def get_poll_config(self) -> dict:
        """Get prefix stats polling configuration as a dictionary."""
        return {
            "interval": self.stats_poll_interval,
            "max_attempts": self.stats_poll_max_attempts,
        }


# Global settings instance
_settings: Optional[AppSettings] = None


def get_settings() -> AppSettings:
    """Get the global application settings instance."""
    global _settings
    if _settings is None:
        _settings = AppSettings()
        logger.info(f"Loaded settings for environment: {_settings.environment}")
    return _settings


def reload_settings() -> AppSettings:
    """Reload the global application settings."""
    global _settings
    if env_file.exists():
        load_dotenv(env_file, override=True)
    _settings = AppSettings()
    logger.info(f"Reloaded settings for environment: {_settings.environment}")
    return _settings
