"""
Store configuration, listing models and the storage error taxonomy.

This module defines the data passed between the registry, the client
resolver and the store operations, together with the exception hierarchy
the HTTP layer maps to status codes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StoreConfig(BaseModel):
    """One configured backing store (AWS region or S3-compatible server)."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(default="", description="Unique, user-chosen store name")
    region: str = Field(default="", description="Nominal region of the store")
    signing_region: str | None = Field(default=None, description="Region used for request signatures")
    access_key: str = Field(default="", description="Access key ID")
    secret_key: str = Field(default="", description="Secret access key")
    endpoint: str | None = Field(default=None, description="Custom endpoint URL for non-AWS servers")

    @field_validator("signing_region", "endpoint", mode="before")
    @classmethod
    def empty_as_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str | None) -> str | None:
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("Endpoint URL must start with http:// or https://")
        return v

    def public_dict(self) -> dict[str, Any]:
        """Serialize for API responses with the secret masked."""
        data = self.model_dump()
        if data.get("secret_key"):
            data["secret_key"] = "****"
        return data


@dataclass
class ObjectInfo:
    """One object as reported by a listing call."""

    key: str
    size: int | None
    last_modified: datetime | None
    etag: str | None = None
    storage_class: str | None = None

    @classmethod
    def from_listing(cls, obj: dict[str, Any]) -> "ObjectInfo":
        etag = obj.get("ETag")
        return cls(
            key=obj["Key"],
            size=obj.get("Size"),
            last_modified=obj.get("LastModified"),
            etag=etag.strip('"') if etag else None,
            storage_class=obj.get("StorageClass"),
        )


@dataclass
class ListPage:
    """A single page of a ListObjectsV2 response."""

    objects: list[ObjectInfo] = field(default_factory=list)
    common_prefixes: list[str] = field(default_factory=list)
    next_token: str | None = None
    is_truncated: bool = False


class StorageError(Exception):
    """Base exception for storage operations."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}


class ConfigurationError(StorageError):
    """Store configuration problem detected before any network call."""

    pass


class StoreNotFoundError(ConfigurationError):
    """No configured store matches the requested name."""

    pass


class DuplicateStoreError(ConfigurationError):
    """A store with the same name is already configured."""

    pass


class ConfigPersistenceError(ConfigurationError):
    """The config file could not be written."""

    pass


class UpstreamError(StorageError):
    """The backing store rejected or failed a call."""

    pass


class ObjectNotFoundError(UpstreamError):
    """Bucket or key does not exist in the backing store."""

    pass


class AccessDeniedError(UpstreamError):
    """The backing store denied access."""

    pass


class NetworkError(UpstreamError):
    """Network-related storage error."""

    pass


class ArchiveStreamError(StorageError):
    """Failure while a ZIP archive is already being streamed."""

    pass


class UploadTooLargeError(StorageError):
    """Upload body exceeded the configured maximum size."""

    pass


__all__ = [
    "StoreConfig",
    "ObjectInfo",
    "ListPage",
    "StorageError",
    "ConfigurationError",
    "StoreNotFoundError",
    "DuplicateStoreError",
    "ConfigPersistenceError",
    "UpstreamError",
    "ObjectNotFoundError",
    "AccessDeniedError",
    "NetworkError",
    "ArchiveStreamError",
    "UploadTooLargeError",
]
