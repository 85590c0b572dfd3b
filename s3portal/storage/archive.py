"""
Streamed ZIP archives of a prefix.

``zipstream`` builds the archive lazily: each entry is queued with
``write_iter`` over the object body and ``flush`` yields its bytes, local
header, data and data descriptor, before the next object is fetched.
Memory stays bounded to one read chunk plus the compressor state.

Objects are fetched strictly one at a time. A failure after the first bytes
have been yielded cannot become an HTTP error status because the headers are
already sent; the generator raises ``ArchiveStreamError`` and the client sees
a truncated archive.
"""

import logging
import time
from collections.abc import Iterator
from datetime import datetime
from typing import Any, Optional

import zipstream
from botocore.exceptions import BotoCoreError, ClientError

from .models import ArchiveStreamError, ListPage, ObjectInfo
from .s3_storage import parse_list_response, translate_client_error

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024

# ZIP timestamps cannot predate 1980
ZIP_EPOCH = time.struct_time((1980, 1, 1, 0, 0, 0, 1, 1, -1))


def _zip_date_time(last_modified: Optional[datetime]) -> time.struct_time:
    if last_modified is None:
        return ZIP_EPOCH
    stamp = last_modified.timetuple()
    return stamp if stamp[:6] >= ZIP_EPOCH[:6] else ZIP_EPOCH


class ArchiveStreamer:
    """Produces the bytes of a ZIP archive holding every object under a prefix."""

    def __init__(
        self,
        client: Any,
        bucket: str,
        prefix: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        compression: int = zipstream.ZIP_DEFLATED,
    ):
        self.client = client
        self.bucket = bucket
        self.prefix = prefix
        self.chunk_size = chunk_size
        self.compression = compression
        self.entries_written = 0
        self.bytes_read = 0

    def iter_objects(self, first_page: Optional[ListPage] = None) -> Iterator[ObjectInfo]:
        """Recursive listing of the prefix, one page at a time."""
        page = first_page if first_page is not None else self._list_page(None)
        while True:
            yield from page.objects
            if not page.is_truncated or not page.next_token:
                return
            page = self._list_page(page.next_token)

    def stream(self, first_page: Optional[ListPage] = None) -> Iterator[bytes]:
        """Yield archive bytes. ``first_page`` is a pre-flighted listing page."""
        archive = zipstream.ZipFile(mode="w", compression=self.compression, allowZip64=True)
        current_key: Optional[str] = None
        body_reader: Optional[Iterator[bytes]] = None
        try:
            for obj in self.iter_objects(first_page):
                if obj.key.endswith("/"):
                    # Folder markers: the entries below them recreate the folder
                    logger.debug(f"Skipping folder marker {obj.key}")
                    continue
                current_key = obj.key
                body_reader = self._read_body(obj)
                archive.write_iter(obj.key, body_reader, date_time=_zip_date_time(obj.last_modified))
                for data in archive.flush():
                    if data:
                        yield data
                self.entries_written += 1
                current_key = None
            for data in archive:
                if data:
                    yield data
        except (ClientError, BotoCoreError) as e:
            error = translate_client_error(e, f"archive object {current_key}" if current_key else "list objects")
            logger.error(
                f"Archive of s3://{self.bucket}/{self.prefix} truncated after {self.entries_written} entries: "
                f"{error.message}"
            )
            raise ArchiveStreamError(error.message, error_code=error.error_code) from e
        except (OSError, RuntimeError) as e:
            logger.error(f"Archive of s3://{self.bucket}/{self.prefix} truncated: {e}")
            raise ArchiveStreamError(f"Failed to write archive: {e}") from e
        finally:
            # Releases the open body when the consumer stops early
            if body_reader is not None:
                body_reader.close()

        logger.info(
            f"Streamed archive of s3://{self.bucket}/{self.prefix}: "
            f"{self.entries_written} entries, {self.bytes_read} bytes read"
        )

    def _read_body(self, obj: ObjectInfo) -> Iterator[bytes]:
        response = self.client.get_object(Bucket=self.bucket, Key=obj.key)
        body = response["Body"]
        try:
            for chunk in body.iter_chunks(self.chunk_size):
                self.bytes_read += len(chunk)
                yield chunk
        finally:
            body.close()

    def _list_page(self, token: Optional[str]) -> ListPage:
        params = {"Bucket": self.bucket, "Prefix": self.prefix}
        if token:
            params["ContinuationToken"] = token
        return parse_list_response(self.client.list_objects_v2(**params))
