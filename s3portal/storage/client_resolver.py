"""
Per-request S3 client resolution.

Given a store name, pick the matching store config and build a boto3 client
bound to its endpoint, credentials and signing region. Clients always use
path-style addressing so S3-compatible servers without wildcard DNS work.
Building a client performs no network I/O.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import boto3
from botocore.config import Config

from .models import StoreConfig

logger = logging.getLogger(__name__)

# Non-AWS servers usually ignore the region but still need one in the signature
DEFAULT_SIGNING_REGION = "us-east-1"

PATH_STYLE = "path"


class StoreLookup(Protocol):
    def get(self, name: str | None) -> StoreConfig: ...


def signing_region_for(store: StoreConfig) -> str:
    """Region string used to sign requests for ``store``."""
    if store.signing_region:
        return store.signing_region
    if store.endpoint:
        return DEFAULT_SIGNING_REGION
    return store.region


@dataclass(frozen=True)
class ResolvedClient:
    """A client built for one request, with the store it was built from."""

    client: Any
    store: StoreConfig
    signing_region: str
    endpoint_url: str | None
    addressing_style: str = PATH_STYLE

    @property
    def store_name(self) -> str:
        return self.store.name


class ClientResolver:
    """Builds S3 clients from the store registry."""

    def __init__(
        self,
        registry: StoreLookup,
        max_pool_connections: int = 10,
        max_attempts: int = 3,
        session_factory: Callable[..., Any] = boto3.session.Session,
    ):
        self.registry = registry
        self.max_pool_connections = max_pool_connections
        self.max_attempts = max_attempts
        self._session_factory = session_factory

    def resolve(self, store_name: str | None) -> ResolvedClient:
        """Resolve ``store_name`` (empty for the default store) to a client.

        Raises:
            StoreNotFoundError: no store matches and no default exists.
        """
        store = self.registry.get(store_name)
        return self.build_client(store)

    def build_client(self, store: StoreConfig) -> ResolvedClient:
        signing_region = signing_region_for(store)

        boto_config = Config(
            signature_version="s3v4",
            s3={"addressing_style": PATH_STYLE},
            max_pool_connections=self.max_pool_connections,
            retries={
                "max_attempts": self.max_attempts,
                "mode": "standard",
            },
        )

        session = self._session_factory(
            aws_access_key_id=store.access_key or None,
            aws_secret_access_key=store.secret_key or None,
            region_name=signing_region or None,
        )

        client_kwargs = {
            "config": boto_config,
            "region_name": signing_region or None,
        }
        if store.endpoint:
            client_kwargs["endpoint_url"] = store.endpoint

        client = session.client("s3", **client_kwargs)
        logger.debug(
            f"Built client for store '{store.name}' (signing_region={signing_region}, endpoint={store.endpoint})"
        )
        return ResolvedClient(
            client=client,
            store=store,
            signing_region=signing_region,
            endpoint_url=store.endpoint,
        )
