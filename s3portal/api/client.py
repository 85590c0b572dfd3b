"""
HTTP client for the portal API.

Folder sizes are computed in the background, so a caller that needs them
lists the folder and then polls the stats endpoint until the entry is ready
or has failed.
"""

import asyncio
from typing import Any, Optional

import httpx
import structlog

from s3portal.utils.env_config import AppSettings

logger = structlog.get_logger(__name__)


class PortalClientError(Exception):
    """Error returned by, or while reaching, the portal API."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_data: Optional[dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_data = response_data or {}
        self.original_exception = original_exception


class PortalClient:
    """Async client for the portal's listing and prefix stats endpoints."""

    def __init__(
        self,
        base_url: str = "http://localhost:8081",
        store: Optional[str] = None,
        timeout: float = 30.0,
        poll_interval: float = 1.0,
        poll_max_attempts: int = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.poll_interval = poll_interval
        self.poll_max_attempts = max(1, poll_max_attempts)
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings: AppSettings, base_url: Optional[str] = None, **kwargs: Any) -> "PortalClient":
        """Client for the portal described by ``settings``, using its polling bounds."""
        poll_config = settings.get_poll_config()
        if base_url is None:
            host = "localhost" if settings.host in ("0.0.0.0", "") else settings.host
            base_url = f"http://{host}:{settings.port}"
        return cls(
            base_url=base_url,
            poll_interval=poll_config["interval"],
            poll_max_attempts=poll_config["max_attempts"],
            **kwargs,
        )

    async def __aenter__(self) -> "PortalClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.aclose()

    async def list_objects(self, bucket: str, prefix: str = "", store: Optional[str] = None) -> list[dict[str, Any]]:
        """List one folder level; sub-folder sizes may still be missing."""
        params = self._params(store, prefix=prefix)
        return await self._get_json(f"/api/buckets/{bucket}/objects", params)

    async def get_prefix_stats(self, bucket: str, prefix: str, store: Optional[str] = None) -> dict[str, Any]:
        params = self._params(store, bucket=bucket, prefix=prefix)
        return await self._get_json("/api/prefix-stats", params)

    async def wait_for_prefix_stats(
        self,
        bucket: str,
        prefix: str,
        store: Optional[str] = None,
        interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> dict[str, Any]:
        """
        Poll the stats endpoint until the prefix is ready or failed.

        Args:
            bucket: Bucket name
            prefix: Folder prefix as returned by a listing (with trailing slash)
            store: Store name, the client's default store if None
            interval: Seconds between polls
            max_attempts: Number of requests before giving up

        Returns:
            The last stats state; ``ready`` is False if the attempts ran out
        """
        interval = self.poll_interval if interval is None else interval
        max_attempts = self.poll_max_attempts if max_attempts is None else max(1, max_attempts)

        state: dict[str, Any] = {"ready": False}
        for attempt in range(1, max_attempts + 1):
            state = await self.get_prefix_stats(bucket, prefix, store=store)
            if state.get("ready") or state.get("error"):
                return state
            if attempt < max_attempts:
                await asyncio.sleep(interval)

        logger.info("Gave up waiting for prefix stats", bucket=bucket, prefix=prefix, attempts=max_attempts)
        return state

    def _params(self, store: Optional[str], **params: str) -> dict[str, str]:
        store = store or self.store
        if store:
            params["store"] = store
        return params

    async def _get_json(self, path: str, params: dict[str, str]) -> Any:
        try:
            response = await self.client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise PortalClientError(f"Request to {path} timed out", original_exception=e) from e
        except httpx.RequestError as e:
            raise PortalClientError(f"Network error calling {path}: {e}", original_exception=e) from e

        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {"detail": response.text}
            raise PortalClientError(
                str(error_data.get("detail") or f"Portal API error: {response.status_code}"),
                status_code=response.status_code,
                response_data=error_data,
            )

        return response.json()
