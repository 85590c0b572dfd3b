"""
S3-compatible store operations over a resolved client.

boto3 is synchronous, so every call runs in the default executor and the
event loop stays free for other requests and background stats tasks.
botocore errors are translated into the storage error taxonomy here, so the
HTTP layer only ever sees ``StorageError`` subclasses.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any, BinaryIO, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .client_resolver import ResolvedClient
from .models import (
    AccessDeniedError,
    ListPage,
    NetworkError,
    ObjectInfo,
    ObjectNotFoundError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

# DeleteObjects accepts at most this many keys per call
DELETE_BATCH_SIZE = 1000

NOT_FOUND_CODES = {"NoSuchKey", "NoSuchBucket", "NotFound", "404"}
ACCESS_DENIED_CODES = {"AccessDenied", "Forbidden", "403", "InvalidAccessKeyId", "SignatureDoesNotMatch"}
NETWORK_CODES = {"RequestTimeout", "ServiceUnavailable", "SlowDown", "503"}


def translate_client_error(error: Exception, operation: str) -> UpstreamError:
    """Map a botocore exception to the matching ``UpstreamError`` subclass."""
    if isinstance(error, ClientError):
        error_code = error.response.get("Error", {}).get("Code", "UNKNOWN")
        status_code = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        message = error.response.get("Error", {}).get("Message") or str(error)

        if error_code in NOT_FOUND_CODES:
            error_class = ObjectNotFoundError
        elif error_code in ACCESS_DENIED_CODES:
            error_class = AccessDeniedError
        elif error_code in NETWORK_CODES:
            error_class = NetworkError
        else:
            error_class = UpstreamError

        return error_class(
            f"Failed to {operation}: {error_code}: {message}",
            error_code=error_code,
            status_code=status_code,
        )

    return NetworkError(f"Failed to {operation}: {error}", error_code=type(error).__name__)


class S3Storage:
    """
    Store operations bound to one resolved client.

    Instances are cheap and owned by a single request or background task,
    like the client they wrap.
    """

    def __init__(self, resolved: ResolvedClient):
        self.resolved = resolved

    @property
    def client(self) -> Any:
        return self.resolved.client

    @property
    def store_name(self) -> str:
        return self.resolved.store.name

    # Buckets

    async def list_buckets(self) -> List[Dict[str, Any]]:
        """List buckets visible to the store credentials."""
        try:
            response = await self._run_sync(self.client.list_buckets)
        except (ClientError, BotoCoreError) as e:
            self._handle_client_error(e, "list buckets")
        return response.get("Buckets", [])

    async def create_bucket(self, bucket: str) -> None:
        """Create a bucket.

        AWS us-east-1 and most S3-compatible servers reject an explicit
        LocationConstraint, so it is only sent for other AWS regions.
        """
        store = self.resolved.store
        create_args: Dict[str, Any] = {"Bucket": bucket}
        if not store.endpoint and store.region and store.region != "us-east-1":
            create_args["CreateBucketConfiguration"] = {"LocationConstraint": store.region}

        try:
            await self._run_sync(self.client.create_bucket, **create_args)
        except (ClientError, BotoCoreError) as e:
            self._handle_client_error(e, f"create bucket {bucket}")
        logger.info(f"Created bucket {bucket} in store '{self.store_name}'")

    async def delete_bucket(self, bucket: str) -> int:
        """Empty and delete a bucket. Returns the number of objects removed."""
        removed = await self.delete_prefix(bucket, "")
        try:
            await self._run_sync(self.client.delete_bucket, Bucket=bucket)
        except (ClientError, BotoCoreError) as e:
            self._handle_client_error(e, f"delete bucket {bucket}")
        logger.info(f"Deleted bucket {bucket} in store '{self.store_name}' ({removed} objects)")
        return removed

    # Listing

    async def list_page(
        self,
        bucket: str,
        prefix: str = "",
        delimiter: Optional[str] = None,
        continuation_token: Optional[str] = None,
        max_keys: Optional[int] = None,
    ) -> ListPage:
        """Issue a single ListObjectsV2 call."""
        params: Dict[str, Any] = {"Bucket": bucket, "Prefix": prefix}
        if delimiter:
            params["Delimiter"] = delimiter
        if continuation_token:
            params["ContinuationToken"] = continuation_token
        if max_keys:
            params["MaxKeys"] = max_keys

        try:
            response = await self._run_sync(self.client.list_objects_v2, **params)
        except (ClientError, BotoCoreError) as e:
            self._handle_client_error(e, "list objects")

        return parse_list_response(response)

    async def list_folder(self, bucket: str, prefix: str) -> ListPage:
        """Shallow listing of the direct children of ``prefix``, all pages merged."""
        folder = ListPage()
        token: Optional[str] = None
        while True:
            page = await self.list_page(bucket, prefix, delimiter="/", continuation_token=token)
            folder.objects.extend(page.objects)
            folder.common_prefixes.extend(page.common_prefixes)
            if not page.is_truncated or not page.next_token:
                return folder
            token = page.next_token

    async def iter_objects(self, bucket: str, prefix: str = "") -> AsyncIterator[ObjectInfo]:
        """Yield every object under ``prefix``, following continuation tokens."""
        token: Optional[str] = None
        while True:
            page = await self.list_page(bucket, prefix, continuation_token=token)
            for obj in page.objects:
                yield obj
            if not page.is_truncated or not page.next_token:
                break
            token = page.next_token

    # Objects

    async def get_object(self, bucket: str, key: str) -> Dict[str, Any]:
        """Open an object for reading; the caller must close ``Body``."""
        try:
            return await self._run_sync(self.client.get_object, Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            self._handle_client_error(e, f"get object {key}")

    async def put_object(
        self,
        bucket: str,
        key: str,
        body: BinaryIO,
        content_length: int,
        content_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Write an object with an explicit, pre-declared content length."""
        upload_args: Dict[str, Any] = {
            "Bucket": bucket,
            "Key": key,
            "Body": body,
            "ContentLength": content_length,
        }
        if content_type:
            upload_args["ContentType"] = content_type

        try:
            response = await self._run_sync(self.client.put_object, **upload_args)
        except (ClientError, BotoCoreError) as e:
            self._handle_client_error(e, f"upload object {key}")

        logger.info(f"Uploaded {key} ({content_length} bytes) to {bucket} in store '{self.store_name}'")
        return response

    async def delete_object(self, bucket: str, key: str) -> None:
        try:
            await self._run_sync(self.client.delete_object, Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            self._handle_client_error(e, f"delete object {key}")

    async def delete_prefix(self, bucket: str, prefix: str) -> int:
        """Delete every object under ``prefix``. Returns the number removed."""
        removed = 0
        batch: List[Dict[str, str]] = []

        async for obj in self.iter_objects(bucket, prefix):
            batch.append({"Key": obj.key})
            if len(batch) >= DELETE_BATCH_SIZE:
                removed += await self._delete_batch(bucket, batch)
                batch = []

        if batch:
            removed += await self._delete_batch(bucket, batch)
        return removed

    # Private helper methods

    async def _delete_batch(self, bucket: str, objects: List[Dict[str, str]]) -> int:
        try:
            response = await self._run_sync(
                self.client.delete_objects,
                Bucket=bucket,
                Delete={"Objects": objects, "Quiet": True},
            )
        except (ClientError, BotoCoreError) as e:
            self._handle_client_error(e, "delete objects")

        errors = response.get("Errors", [])
        for error in errors:
            logger.error(f"Failed to delete {error.get('Key')}: {error.get('Message')}")
        if errors:
            first = errors[0]
            raise UpstreamError(
                f"Failed to delete objects: {first.get('Key')}: {first.get('Message')}",
                error_code=first.get("Code"),
                details={"failed": len(errors)},
            )
        return len(objects)

    async def _run_sync(self, func, *args, **kwargs):
        """Run a synchronous function in the async context."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: func(*args, **kwargs))

    def _handle_client_error(self, error: Exception, operation: str) -> None:
        """Convert a botocore error to a storage exception and raise it."""
        raise translate_client_error(error, operation) from error


def parse_list_response(response: Dict[str, Any]) -> ListPage:
    """Build a ``ListPage`` from a raw ListObjectsV2 response."""
    return ListPage(
        objects=[ObjectInfo.from_listing(obj) for obj in response.get("Contents", [])],
        common_prefixes=[p["Prefix"] for p in response.get("CommonPrefixes", []) if p.get("Prefix")],
        next_token=response.get("NextContinuationToken"),
        is_truncated=bool(response.get("IsTruncated")),
    )
