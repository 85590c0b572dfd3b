"""
HTTP routes of the portal API.

Every data route resolves its store client first, so an unknown store is
reported as a client error before any network call is made. Store errors
raised by the handlers are rendered by the exception handlers registered in
``s3portal.api.app``.
"""

import posixpath
from typing import Any, Optional
from urllib.parse import quote

import structlog
from fastapi import APIRouter, Body, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import Response, StreamingResponse
from starlette.background import BackgroundTask

from s3portal.core.app import PortalApp
from s3portal.core.prefix_stats import PrefixStatsKey, format_timestamp
from s3portal.storage.archive import ArchiveStreamer
from s3portal.storage.models import ObjectNotFoundError, StoreConfig, StoreNotFoundError
from s3portal.storage.s3_storage import S3Storage
from s3portal.storage.upload_buffer import buffer_upload
from s3portal.utils.validators import KeyValidator

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api")


def get_portal(request: Request) -> PortalApp:
    return request.app.state.portal


def store_selector(
    store: Optional[str] = Query(default=None, description="Configured store name"),
    region: Optional[str] = Query(default=None, description="Alias of store"),
) -> str:
    """Store selection; empty selects the first configured store."""
    return store or region or ""


def content_disposition(filename: str) -> str:
    """Attachment header value that survives non-ASCII names."""
    try:
        filename.encode("latin-1")
    except UnicodeEncodeError:
        fallback = filename.encode("ascii", "replace").decode("ascii").replace("?", "_")
        return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"
    return f'attachment; filename="{filename}"'


# Buckets


@router.get("/buckets")
async def list_buckets(store: str = Depends(store_selector), portal: PortalApp = Depends(get_portal)) -> list:
    buckets = await portal.storage(store).list_buckets()
    return [
        {"Name": bucket.get("Name"), "CreationDate": format_timestamp(bucket.get("CreationDate"))}
        for bucket in buckets
    ]


@router.post("/buckets", status_code=status.HTTP_201_CREATED)
async def create_bucket(
    payload: dict[str, Any] = Body(...),
    store: str = Depends(store_selector),
    portal: PortalApp = Depends(get_portal),
) -> dict:
    bucket = KeyValidator.validate_bucket_name(payload.get("bucketName"))
    await portal.storage(store).create_bucket(bucket)
    return {"Name": bucket}


@router.delete("/buckets/{bucket}")
async def delete_bucket(bucket: str, store: str = Depends(store_selector), portal: PortalApp = Depends(get_portal)) -> dict:
    storage = portal.storage(store)
    # Stop background walks of the bucket before emptying it
    portal.prefix_stats.invalidate(storage.store_name, bucket)
    removed = await storage.delete_bucket(bucket)
    portal.prefix_stats.invalidate(storage.store_name, bucket)
    return {"Name": bucket, "deletedObjects": removed}


# Objects


@router.get("/buckets/{bucket}/objects")
async def list_objects(
    bucket: str,
    prefix: str = Query(default=""),
    store: str = Depends(store_selector),
    portal: PortalApp = Depends(get_portal),
) -> list:
    """Shallow listing of a folder.

    Sub-folders carry Size/LastModified once their stats are ready; otherwise
    they are returned bare and a background computation is scheduled.
    """
    prefix = KeyValidator.normalize_prefix(prefix)
    storage = portal.storage(store)
    page = await storage.list_folder(bucket, prefix)

    items: list[dict[str, Any]] = []
    for obj in page.objects:
        # The folder marker object itself
        if obj.key == prefix:
            continue
        items.append(
            {
                "Key": obj.key,
                "Size": obj.size,
                "LastModified": format_timestamp(obj.last_modified),
                "IsFolder": False,
            }
        )

    scheduled = 0
    for folder in page.common_prefixes:
        key = PrefixStatsKey(storage.store_name, bucket, folder)
        entry = portal.prefix_stats.lookup(key)
        if entry is not None and entry.ready:
            items.append(
                {
                    "Key": folder,
                    "Size": entry.total_size,
                    "LastModified": format_timestamp(entry.last_modified),
                    "IsFolder": True,
                }
            )
            continue

        items.append({"Key": folder, "IsFolder": True})
        if entry is None and portal.prefix_stats.ensure_scheduled(key):
            scheduled += 1

    if scheduled:
        logger.debug("Listing scheduled folder stats", bucket=bucket, prefix=prefix, scheduled=scheduled)
    return items


@router.post("/buckets/{bucket}/objects")
async def upload_object(
    bucket: str,
    file: UploadFile = File(...),
    prefix: str = Form(default=""),
    store: str = Depends(store_selector),
    portal: PortalApp = Depends(get_portal),
) -> dict:
    key = KeyValidator.build_upload_key(file.filename, prefix)
    storage = portal.storage(store)
    settings = portal.settings

    try:
        async with buffer_upload(
            file,
            temp_dir=settings.upload_temp_dir,
            max_bytes=settings.upload_max_size,
        ) as upload:
            await storage.put_object(bucket, key, upload.fileobj, upload.size, content_type=file.content_type)
    finally:
        await file.close()

    portal.prefix_stats.invalidate_ancestors(storage.store_name, bucket, key)
    return {"Key": key, "Size": upload.size}


@router.get("/buckets/{bucket}/objects/{key:path}")
async def download_object(
    bucket: str,
    key: str,
    store: str = Depends(store_selector),
    portal: PortalApp = Depends(get_portal),
) -> StreamingResponse:
    storage = portal.storage(store)
    try:
        response = await storage.get_object(bucket, key)
    except ObjectNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message) from e

    body = response["Body"]
    headers = {"Content-Disposition": content_disposition(posixpath.basename(key) or key)}
    if response.get("ContentLength") is not None:
        headers["Content-Length"] = str(response["ContentLength"])
    return StreamingResponse(
        body.iter_chunks(portal.settings.archive_chunk_size),
        media_type="application/octet-stream",
        headers=headers,
        background=BackgroundTask(body.close),
    )


@router.delete("/buckets/{bucket}/objects/{key:path}")
async def delete_object(
    bucket: str,
    key: str,
    store: str = Depends(store_selector),
    portal: PortalApp = Depends(get_portal),
) -> Response:
    storage = portal.storage(store)
    await storage.delete_object(bucket, key)
    portal.prefix_stats.invalidate_ancestors(storage.store_name, bucket, key)
    return Response(status_code=status.HTTP_200_OK)


# Folders


@router.delete("/buckets/{bucket}/folders/{prefix:path}")
async def delete_folder(
    bucket: str,
    prefix: str,
    store: str = Depends(store_selector),
    portal: PortalApp = Depends(get_portal),
) -> dict:
    prefix = KeyValidator.normalize_prefix(prefix)
    storage = portal.storage(store)
    portal.prefix_stats.invalidate(storage.store_name, bucket, prefix)
    removed = await storage.delete_prefix(bucket, prefix)
    portal.prefix_stats.invalidate(storage.store_name, bucket, prefix)
    portal.prefix_stats.invalidate_ancestors(storage.store_name, bucket, prefix)
    return {"Prefix": prefix, "deletedObjects": removed}


@router.get("/buckets/{bucket}/folders/{prefix:path}")
async def download_folder(
    bucket: str,
    prefix: str,
    download: bool = Query(default=False),
    store: str = Depends(store_selector),
    portal: PortalApp = Depends(get_portal),
) -> StreamingResponse:
    """Stream every object under ``prefix`` as a ZIP archive.

    The first listing page is fetched before any header is sent so a missing
    bucket or denied access still gets a proper error status. Failures after
    that truncate the response.
    """
    if not download:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")

    filename = KeyValidator.archive_filename(prefix)
    prefix = KeyValidator.normalize_prefix(prefix)
    resolved = portal.resolve(store)
    first_page = await S3Storage(resolved).list_page(bucket, prefix)

    streamer = ArchiveStreamer(resolved.client, bucket, prefix, chunk_size=portal.settings.archive_chunk_size)
    return StreamingResponse(
        streamer.stream(first_page),
        media_type="application/zip",
        headers={"Content-Disposition": content_disposition(filename)},
    )


# Prefix stats


@router.get("/prefix-stats")
async def prefix_stats(
    bucket: str = Query(default=""),
    prefix: str = Query(default=""),
    store: str = Depends(store_selector),
    portal: PortalApp = Depends(get_portal),
) -> dict:
    if not bucket or not prefix:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="bucket and prefix query params are required",
        )
    key = portal.stats_key(store, bucket, prefix)
    return portal.prefix_stats.read(key)


# Stores


@router.get("/regions")
async def list_regions(portal: PortalApp = Depends(get_portal)) -> list:
    return [store.public_dict() for store in portal.registry.list()]


@router.post("/regions", status_code=status.HTTP_201_CREATED)
async def create_region(store: StoreConfig, portal: PortalApp = Depends(get_portal)) -> dict:
    portal.registry.add(store)
    return store.public_dict()


@router.delete("/regions/{name}")
async def delete_region(name: str, portal: PortalApp = Depends(get_portal)) -> Response:
    try:
        portal.registry.remove(name)
    except StoreNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message) from e
    portal.prefix_stats.invalidate_store(name)
    return Response(status_code=status.HTTP_200_OK)
