"""
Store access for AWS S3 and S3-compatible servers.

This module resolves configured stores to boto3 clients and provides the
bucket, object, archive and upload operations the HTTP layer is built on.
The store registry lives in ``s3portal.storage.registry``.
"""

from .archive import ArchiveStreamer
from .client_resolver import ClientResolver, ResolvedClient, signing_region_for
from .models import (
    AccessDeniedError,
    ArchiveStreamError,
    ConfigPersistenceError,
    ConfigurationError,
    DuplicateStoreError,
    ListPage,
    NetworkError,
    ObjectInfo,
    ObjectNotFoundError,
    StorageError,
    StoreConfig,
    StoreNotFoundError,
    UploadTooLargeError,
    UpstreamError,
)
from .s3_storage import S3Storage
from .upload_buffer import BufferedUpload, buffer_upload

__all__ = [
    # Store access
    "ClientResolver",
    "ResolvedClient",
    "S3Storage",
    "signing_region_for",
    # Streaming
    "ArchiveStreamer",
    "BufferedUpload",
    "buffer_upload",
    # Models
    "StoreConfig",
    "ObjectInfo",
    "ListPage",
    # Exceptions
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
