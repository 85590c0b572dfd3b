"""
Registry of configured backing stores.

Lookups are lock-free reads of an immutable snapshot. Additions and removals
are serialized under a lock and persisted to the config file before the new
snapshot is published, so memory and disk never disagree after a mutation.
"""

import logging
import threading

from s3portal.utils.config import ConfigManager, PortalConfig
from s3portal.utils.validators import StoreValidator

from .models import ConfigPersistenceError, DuplicateStoreError, StoreConfig, StoreNotFoundError

logger = logging.getLogger(__name__)


class StoreRegistry:
    """Holds the configured stores and resolves names to store configs."""

    def __init__(
        self,
        stores: list[StoreConfig] | None = None,
        config_manager: ConfigManager | None = None,
    ):
        self._stores: tuple[StoreConfig, ...] = tuple(stores or ())
        self._config_manager = config_manager
        self._lock = threading.Lock()

    @classmethod
    def from_config_file(cls, config_manager: ConfigManager) -> "StoreRegistry":
        """Build a registry from the stores listed in the config file."""
        config = config_manager.load_config()
        return cls(config.effective_stores(), config_manager)

    def list(self) -> list[StoreConfig]:
        return list(self._stores)

    def __len__(self) -> int:
        return len(self._stores)

    @property
    def default_name(self) -> str | None:
        stores = self._stores
        return stores[0].name if stores else None

    def find(self, name: str | None) -> StoreConfig | None:
        """Find a store by exact name; an empty name selects the first store."""
        stores = self._stores
        if not name:
            return stores[0] if stores else None
        for store in stores:
            if store.name == name:
                return store
        return None

    def get(self, name: str | None) -> StoreConfig:
        store = self.find(name)
        if store is None:
            raise StoreNotFoundError(f"region not found: {name or '<default>'}", error_code="STORE_NOT_FOUND")
        return store

    def add(self, store: StoreConfig) -> StoreConfig:
        """Register a new store and persist the config."""
        StoreValidator.validate_new_store(store)

        with self._lock:
            if any(existing.name == store.name for existing in self._stores):
                raise DuplicateStoreError(
                    "region with this name already exists",
                    error_code="STORE_EXISTS",
                    details={"name": store.name},
                )
            updated = self._stores + (store,)
            self._persist(updated)
            self._stores = updated

        logger.info(f"Added store '{store.name}' (region={store.region}, endpoint={store.endpoint})")
        return store

    def remove(self, name: str) -> StoreConfig:
        """Remove a store by exact name and persist the config."""
        with self._lock:
            for index, existing in enumerate(self._stores):
                if existing.name == name:
                    break
            else:
                raise StoreNotFoundError("region not found", error_code="STORE_NOT_FOUND", details={"name": name})

            updated = self._stores[:index] + self._stores[index + 1 :]
            self._persist(updated)
            self._stores = updated

        logger.info(f"Removed store '{name}'")
        return existing

    def _persist(self, stores: tuple[StoreConfig, ...]) -> None:
        if self._config_manager is None:
            return
        try:
            self._config_manager.save_config(PortalConfig(regions=list(stores)))
        except OSError as e:
            logger.error(f"Failed to persist store configuration: {e}")
            raise ConfigPersistenceError(f"failed to persist config: {e}", error_code="CONFIG_WRITE") from e
