"""
Input validation for bucket names, object keys and folder prefixes.

Keys and prefixes are S3 key strings, not filesystem paths, so cleaning is
done with ``posixpath`` and never touches the local filesystem.
"""

import posixpath
import re

from s3portal.storage.models import StoreConfig


class ValidationConfig:
    """Configuration for validation parameters."""

    MIN_BUCKET_NAME_LENGTH = 3
    MAX_BUCKET_NAME_LENGTH = 63
    MAX_KEY_LENGTH = 1024
    MAX_STORE_NAME_LENGTH = 64

    # Relaxed compared to AWS rules; S3-compatible servers accept more
    BUCKET_NAME_PATTERN = r"^[a-zA-Z0-9][a-zA-Z0-9._-]*[a-zA-Z0-9]$"


class ValidationException(Exception):
    """Base exception for validation errors."""

    def __init__(self, message: str, field: str | None = None, code: str | None = None):
        self.message = message
        self.field = field
        self.code = code
        super().__init__(message)


class KeyValidator:
    """Bucket, key and prefix validation."""

    @staticmethod
    def validate_bucket_name(name: str | None) -> str:
        if not name or not name.strip():
            raise ValidationException("Bucket name is required", field="bucketName", code="BUCKET_REQUIRED")

        name = name.strip()
        if not (ValidationConfig.MIN_BUCKET_NAME_LENGTH <= len(name) <= ValidationConfig.MAX_BUCKET_NAME_LENGTH):
            raise ValidationException(
                f"Bucket name must be between {ValidationConfig.MIN_BUCKET_NAME_LENGTH} and "
                f"{ValidationConfig.MAX_BUCKET_NAME_LENGTH} characters",
                field="bucketName",
                code="BUCKET_LENGTH",
            )
        if not re.match(ValidationConfig.BUCKET_NAME_PATTERN, name):
            raise ValidationException("Bucket name contains invalid characters", field="bucketName", code="BUCKET_CHARS")
        return name

    @staticmethod
    def normalize_prefix(prefix: str | None) -> str:
        """Return ``prefix`` with a trailing slash, or the empty string."""
        if not prefix:
            return ""
        return prefix if prefix.endswith("/") else prefix + "/"

    @staticmethod
    def clean_key(key: str) -> str:
        """Collapse duplicate slashes and dot segments, like ``path.Clean``."""
        if not key:
            raise ValidationException("Object key is required", field="key", code="KEY_REQUIRED")

        cleaned = posixpath.normpath(key)
        # normpath keeps a leading "//"
        cleaned = cleaned.lstrip("/") if cleaned.startswith("//") else cleaned
        if cleaned in (".", "/") or cleaned.startswith("../"):
            raise ValidationException(f"Invalid object key: {key}", field="key", code="KEY_INVALID")
        if len(cleaned.encode("utf-8")) > ValidationConfig.MAX_KEY_LENGTH:
            raise ValidationException("Object key is too long", field="key", code="KEY_LENGTH")
        return cleaned

    @staticmethod
    def build_upload_key(filename: str | None, prefix: str | None = None) -> str:
        """Object key for an uploaded file placed under ``prefix``."""
        if not filename:
            raise ValidationException("Uploaded file has no filename", field="file", code="FILENAME_REQUIRED")
        # Joined as path segments, so a rooted filename stays under the prefix
        filename = filename.lstrip("/")
        key = posixpath.join(prefix, filename) if prefix else filename
        return KeyValidator.clean_key(key)

    @staticmethod
    def archive_filename(prefix: str) -> str:
        """Download name for a folder archive: the cleaned prefix plus ``.zip``."""
        cleaned = posixpath.normpath(prefix) if prefix else "archive"
        if cleaned in (".", "/"):
            cleaned = "archive"
        return cleaned.replace('"', "") + ".zip"


class StoreValidator:
    """Validation of stores submitted through the management API."""

    @staticmethod
    def validate_new_store(store: StoreConfig) -> StoreConfig:
        if not store.name.strip() or not store.access_key or not store.secret_key:
            raise ValidationException("name, access_key and secret_key are required", code="STORE_FIELDS")
        if len(store.name) > ValidationConfig.MAX_STORE_NAME_LENGTH:
            raise ValidationException("Store name is too long", field="name", code="STORE_NAME_LENGTH")
        return store
