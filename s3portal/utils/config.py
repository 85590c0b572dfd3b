"""
Store configuration file management.

This module loads and persists the YAML file that lists the backing stores:
- A ``regions`` list of store definitions
- An optional legacy single-store ``aws`` block
- Environment variable overrides for the legacy block
- Pydantic validation
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from s3portal.storage.models import StoreConfig

logger = logging.getLogger(__name__)

LEGACY_STORE_NAME = "default"

# Environment variables applied to the legacy ``aws`` block
ENV_OVERRIDES = {
    "AWS_REGION": "region",
    "AWS_ACCESS_KEY_ID": "access_key",
    "AWS_SECRET_ACCESS_KEY": "secret_key",
    "AWS_ENDPOINT": "endpoint",
}


class LegacyAwsConfig(BaseModel):
    """Single-store block kept for older config files."""

    region: str = Field(default="", description="Store region")
    access_key: str = Field(default="", description="Access key ID")
    secret_key: str = Field(default="", description="Secret access key")
    endpoint: str | None = Field(default=None, description="Custom endpoint URL")

    def has_credentials(self) -> bool:
        return bool(self.access_key and self.secret_key)

    def to_store(self, name: str = LEGACY_STORE_NAME) -> StoreConfig:
        return StoreConfig(
            name=name,
            region=self.region,
            access_key=self.access_key,
            secret_key=self.secret_key,
            endpoint=self.endpoint,
        )


class PortalConfig(BaseModel):
    """Contents of the config file."""

    regions: list[StoreConfig] = Field(default_factory=list)
    aws: LegacyAwsConfig | None = Field(default=None)

    def legacy_store(self) -> StoreConfig | None:
        """Store derived from the legacy block, unless a region already uses its name."""
        if self.aws is None or not self.aws.has_credentials():
            return None
        if any(store.name == LEGACY_STORE_NAME for store in self.regions):
            return None
        return self.aws.to_store()

    def effective_stores(self) -> list[StoreConfig]:
        """Stores to register: the legacy store, then the listed regions."""
        legacy = self.legacy_store()
        stores = [legacy] if legacy is not None else []
        return stores + list(self.regions)


class ConfigManager:
    """Loads, validates and writes the store config file."""

    def __init__(self, config_path: str | Path):
        self.config_path = Path(config_path)
        self._file_aws: dict[str, Any] | None = None
        self._legacy_store: StoreConfig | None = None

    def load_config(self) -> PortalConfig:
        """Load the config file and apply environment overrides."""
        config_data = self._load_yaml_config()
        self._file_aws = config_data.get("aws")
        config_data = self._apply_env_overrides(config_data)

        try:
            config = PortalConfig(**config_data)
        except ValidationError as e:
            logger.error(f"Invalid store configuration in {self.config_path}: {e}")
            raise ValueError(f"Invalid store configuration: {e}") from e

        self._legacy_store = config.legacy_store()

        logger.info(f"Loaded {len(config.effective_stores())} store(s) from: {self.config_path}")
        return config

    def save_config(self, config: PortalConfig) -> None:
        """Write the config back to disk atomically.

        The legacy block is written as it was read from the file, so values
        that came from environment overrides never land on disk.
        """
        # The legacy store is rebuilt from the aws block on load
        regions = [store for store in config.regions if store != self._legacy_store]
        data = {"regions": [store.model_dump(exclude_none=True) for store in regions]}
        if self._file_aws:
            data["aws"] = self._file_aws
        tmp_path = self.config_path.with_name(self.config_path.name + ".tmp")
        if self.config_path.parent and not self.config_path.parent.exists():
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, sort_keys=False)
        os.replace(tmp_path, self.config_path)
        logger.info(f"Persisted store configuration to: {self.config_path}")

    def _load_yaml_config(self) -> dict[str, Any]:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            logger.warning(f"Configuration file not found: {self.config_path}")
            return {}

        try:
            with open(self.config_path, encoding="utf-8") as f:
                config_data = yaml.safe_load(f) or {}
            if not isinstance(config_data, dict):
                raise ValueError("Configuration root must be a mapping")
            return config_data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML configuration: {e}")
            raise ValueError(f"Invalid YAML configuration: {e}") from e

    def _apply_env_overrides(self, config_data: dict[str, Any]) -> dict[str, Any]:
        """Apply AWS_* environment variables to the legacy block."""
        overrides = {
            attr: os.environ[env_key]
            for env_key, attr in ENV_OVERRIDES.items()
            if os.environ.get(env_key)
        }
        if not overrides:
            return config_data

        legacy = dict(config_data.get("aws") or {})
        legacy.update(overrides)
        config_data["aws"] = legacy
        return config_data


def load_config(config_path: str | Path) -> PortalConfig:
    """Load the store configuration from ``config_path``."""
    return ConfigManager(config_path).load_config()
