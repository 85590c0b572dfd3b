from pathlib import Path

import structlog

from s3portal.core.prefix_stats import PrefixStatsCache, PrefixStatsKey, PrefixStatsService
from s3portal.core.task_manager import TaskManager
from s3portal.storage.client_resolver import ClientResolver, ResolvedClient
from s3portal.storage.registry import StoreRegistry
from s3portal.storage.s3_storage import S3Storage
from s3portal.utils.config import ConfigManager
from s3portal.utils.env_config import AppSettings, get_settings

logger = structlog.get_logger(__name__)


class PortalApp:
    """Main application object wiring registry, resolver and stats service."""

    def __init__(
        self,
        settings: AppSettings | None = None,
        registry: StoreRegistry | None = None,
        resolver: ClientResolver | None = None,
    ) -> None:
        """Initialize the application."""
        self.settings: AppSettings = settings or get_settings()

        if registry is None:
            config_manager = ConfigManager(Path(self.settings.config_path))
            registry = StoreRegistry.from_config_file(config_manager)
        self.registry = registry

        self.resolver = resolver or ClientResolver(self.registry, **self.settings.get_client_config())

        self.task_manager = TaskManager(
            max_concurrent_tasks=self.settings.stats_max_concurrency,
            cleanup_interval=self.settings.stats_cleanup_interval,
        )
        self.stats_cache = PrefixStatsCache()
        self.prefix_stats = PrefixStatsService(self.stats_cache, self.task_manager, self.resolver.resolve)

        self.is_initialized = False

    async def initialize(self) -> None:
        """Start background housekeeping. Must run inside the event loop."""
        if self.is_initialized:
            return

        self.task_manager.start_cleanup()
        self.is_initialized = True
        logger.info("Portal initialized", stores=len(self.registry), default_store=self.registry.default_name)

    def resolve(self, store_name: str | None) -> ResolvedClient:
        """Resolve a store selector to a fresh client."""
        return self.resolver.resolve(store_name)

    def storage(self, store_name: str | None) -> S3Storage:
        """Store operations for ``store_name`` on a fresh client."""
        return S3Storage(self.resolve(store_name))

    def stats_key(self, store_name: str | None, bucket: str, prefix: str) -> PrefixStatsKey:
        """Cache key using the resolved store name, so the default selector and
        the default store's explicit name share entries."""
        store = self.registry.get(store_name)
        return PrefixStatsKey(store.name, bucket, prefix)

    async def shutdown(self) -> None:
        """Shutdown the application and cancel background work."""
        logger.info("Shutting down portal")
        await self.task_manager.shutdown()
        self.is_initialized = False
        logger.info("Portal shutdown completed")
