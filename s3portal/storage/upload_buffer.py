"""
Upload buffering to a temporary file.

Some S3-compatible servers (Ceph RGW, older MinIO) reject aws-chunked or
streamed uploads without a declared Content-Length. Spooling the body to a
temporary file first gives an exact length and a seekable body for the
store write. The temporary file is removed on every exit path.
"""

import inspect
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Optional

import aiofiles
import aiofiles.os
import aiofiles.tempfile

from .models import UploadTooLargeError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024
TEMP_PREFIX = "s3upload-"


@dataclass
class BufferedUpload:
    """A fully buffered upload with a known length."""

    path: Path
    size: int
    fileobj: BinaryIO


async def _read_chunk(source: Any, size: int) -> bytes:
    data = source.read(size)
    if inspect.isawaitable(data):
        data = await data
    return data or b""


@asynccontextmanager
async def buffer_upload(
    source: Any,
    temp_dir: Optional[str] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    max_bytes: Optional[int] = None,
) -> AsyncIterator[BufferedUpload]:
    """
    Copy ``source`` into a temporary file and yield it with its exact size.

    Args:
        source: Object with a sync or async ``read(n)`` (e.g. an UploadFile)
        temp_dir: Directory for the temporary file, system default if None
        chunk_size: Copy buffer size
        max_bytes: Reject bodies larger than this; None or 0 disables the check

    Raises:
        UploadTooLargeError: the body exceeds ``max_bytes``
    """
    path: Optional[Path] = None
    fileobj: Optional[BinaryIO] = None
    try:
        async with aiofiles.tempfile.NamedTemporaryFile(
            mode="wb", prefix=TEMP_PREFIX, dir=temp_dir, delete=False
        ) as tmp:
            path = Path(tmp.name)
            size = 0
            while True:
                chunk = await _read_chunk(source, chunk_size)
                if not chunk:
                    break
                size += len(chunk)
                if max_bytes and size > max_bytes:
                    raise UploadTooLargeError(
                        f"Upload exceeds maximum size of {max_bytes} bytes",
                        error_code="UPLOAD_TOO_LARGE",
                        details={"max_bytes": max_bytes},
                    )
                await tmp.write(chunk)
            await tmp.flush()

        stat = await aiofiles.os.stat(path)
        if stat.st_size != size:
            raise OSError(f"Buffered {size} bytes but temporary file holds {stat.st_size}")

        fileobj = open(path, "rb")
        logger.debug(f"Buffered upload of {size} bytes to {path}")
        yield BufferedUpload(path=path, size=size, fileobj=fileobj)
    finally:
        if fileobj is not None:
            fileobj.close()
        if path is not None:
            try:
                await aiofiles.os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to remove temporary upload file {path}: {e}")

