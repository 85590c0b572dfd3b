import io
import tempfile
import threading
from collections import Counter
from collections.abc import AsyncGenerator, Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import pytest
from botocore.exceptions import ClientError
from botocore.response import StreamingBody

from s3portal.core.app import PortalApp
from s3portal.core.task_manager import TaskManager
from s3portal.storage.client_resolver import ResolvedClient, signing_region_for
from s3portal.storage.models import StoreConfig
from s3portal.storage.registry import StoreRegistry
from s3portal.utils.config import ConfigManager
from s3portal.utils.env_config import AppSettings

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def client_error(code: str, message: str = "", status: int = 400, operation: str = "Operation") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": message or code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class FakeS3Client:
    """In-memory S3 client with ListObjectsV2 paging and call counters.

    Safe to call from executor threads. ``page_size`` caps every listing page
    so multi-page walks can be exercised with a handful of objects. A
    listing can be held back with ``list_gate`` and any operation can be
    made to fail through ``fail_on``.
    """

    def __init__(self, page_size: int = 1000):
        self.page_size = page_size
        self.buckets: dict[str, dict[str, dict[str, Any]]] = {}
        self.bucket_dates: dict[str, datetime] = {}
        self.calls: Counter = Counter()
        self.fail_on: dict[str, ClientError] = {}
        self.list_gate: Optional[threading.Event] = None
        self.uploads: list[dict[str, Any]] = []
        self.delete_batches: list[int] = []
        self.created: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    # Test setup helpers

    def add_bucket(self, name: str) -> None:
        with self._lock:
            self.buckets.setdefault(name, {})
            self.bucket_dates.setdefault(name, BASE_TIME)

    def add_object(
        self,
        bucket: str,
        key: str,
        data: bytes = b"",
        last_modified: Optional[datetime] = None,
        report_size: bool = True,
    ) -> None:
        self.add_bucket(bucket)
        with self._lock:
            self.buckets[bucket][key] = {
                "data": data,
                "last_modified": last_modified or BASE_TIME,
                "report_size": report_size,
            }

    def count(self, operation: str) -> int:
        with self._lock:
            return self.calls[operation]

    def _record(self, operation: str) -> None:
        with self._lock:
            self.calls[operation] += 1
            error = self.fail_on.get(operation)
        if error is not None:
            raise error

    def _objects(self, bucket: str) -> dict[str, dict[str, Any]]:
        objects = self.buckets.get(bucket)
        if objects is None:
            raise client_error("NoSuchBucket", "The specified bucket does not exist", 404)
        return objects

    # S3 API

    def list_buckets(self) -> dict[str, Any]:
        self._record("list_buckets")
        with self._lock:
            return {"Buckets": [{"Name": name, "CreationDate": self.bucket_dates[name]} for name in sorted(self.buckets)]}

    def create_bucket(self, **kwargs: Any) -> dict[str, Any]:
        self._record("create_bucket")
        with self._lock:
            if kwargs["Bucket"] in self.buckets:
                raise client_error("BucketAlreadyOwnedByYou", status=409)
            self.buckets[kwargs["Bucket"]] = {}
            self.bucket_dates[kwargs["Bucket"]] = BASE_TIME
            self.created.append(kwargs)
        return {}

    def delete_bucket(self, Bucket: str) -> dict[str, Any]:
        self._record("delete_bucket")
        with self._lock:
            if self._objects(Bucket):
                raise client_error("BucketNotEmpty", status=409)
            del self.buckets[Bucket]
        return {}

    def list_objects_v2(
        self,
        Bucket: str,
        Prefix: str = "",
        Delimiter: Optional[str] = None,
        ContinuationToken: Optional[str] = None,
        MaxKeys: Optional[int] = None,
    ) -> dict[str, Any]:
        self._record("list_objects_v2")
        gate = self.list_gate
        if gate is not None:
            gate.wait(timeout=5)

        with self._lock:
            objects = self._objects(Bucket)
            items: list[tuple[str, Optional[dict[str, Any]]]] = []
            seen_prefixes: set[str] = set()
            for key in sorted(objects):
                if not key.startswith(Prefix):
                    continue
                rest = key[len(Prefix) :]
                if Delimiter and Delimiter in rest:
                    common = Prefix + rest.split(Delimiter, 1)[0] + Delimiter
                    if common not in seen_prefixes:
                        seen_prefixes.add(common)
                        items.append((common, None))
                    continue
                items.append((key, objects[key]))

            # Tokens carry the last key returned so deletes between pages are safe
            if ContinuationToken:
                items = [item for item in items if item[0] > ContinuationToken]
            limit = min(MaxKeys or 1000, self.page_size)
            page = items[:limit]

        contents = []
        prefixes = []
        for key, obj in page:
            if obj is None:
                prefixes.append({"Prefix": key})
                continue
            entry = {"Key": key, "LastModified": obj["last_modified"], "ETag": '"etag"', "StorageClass": "STANDARD"}
            if obj["report_size"]:
                entry["Size"] = len(obj["data"])
            contents.append(entry)

        response: dict[str, Any] = {"KeyCount": len(page), "IsTruncated": limit < len(items)}
        if contents:
            response["Contents"] = contents
        if prefixes:
            response["CommonPrefixes"] = prefixes
        if response["IsTruncated"]:
            response["NextContinuationToken"] = page[-1][0]
        return response

    def get_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        self._record("get_object")
        with self._lock:
            obj = self._objects(Bucket).get(Key)
        if obj is None:
            raise client_error("NoSuchKey", "The specified key does not exist.", 404)
        data = obj["data"]
        return {
            "Body": StreamingBody(io.BytesIO(data), len(data)),
            "ContentLength": len(data),
            "LastModified": obj["last_modified"],
        }

    def put_object(self, **kwargs: Any) -> dict[str, Any]:
        self._record("put_object")
        data = kwargs["Body"].read()
        with self._lock:
            self._objects(kwargs["Bucket"])[kwargs["Key"]] = {
                "data": data,
                "last_modified": BASE_TIME,
                "report_size": True,
            }
            self.uploads.append(
                {
                    "Key": kwargs["Key"],
                    "ContentLength": kwargs.get("ContentLength"),
                    "ContentType": kwargs.get("ContentType"),
                    "received": len(data),
                }
            )
        return {"ETag": '"etag"'}

    def delete_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        self._record("delete_object")
        with self._lock:
            self._objects(Bucket).pop(Key, None)
        return {}

    def delete_objects(self, Bucket: str, Delete: dict[str, Any]) -> dict[str, Any]:
        self._record("delete_objects")
        with self._lock:
            objects = self._objects(Bucket)
            keys = [item["Key"] for item in Delete["Objects"]]
            for key in keys:
                objects.pop(key, None)
            self.delete_batches.append(len(keys))
        return {"Deleted": [{"Key": key} for key in keys]}


class FakeResolver:
    """Resolves registry stores to one shared ``FakeS3Client``."""

    def __init__(self, registry: StoreRegistry, client: FakeS3Client):
        self.registry = registry
        self.client = client
        self.resolved: list[str] = []

    def resolve(self, store_name: Optional[str]) -> ResolvedClient:
        store = self.registry.get(store_name)
        self.resolved.append(store.name)
        return ResolvedClient(
            client=self.client,
            store=store,
            signing_region=signing_region_for(store),
            endpoint_url=store.endpoint,
        )


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture
def fake_s3() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def minio_store() -> StoreConfig:
    return StoreConfig(
        name="minio",
        region="us-east-1",
        access_key="minio-access",
        secret_key="minio-secret",
        endpoint="http://localhost:9000",
    )


@pytest.fixture
def aws_store() -> StoreConfig:
    return StoreConfig(name="aws-eu", region="eu-west-1", access_key="aws-access", secret_key="aws-secret")


@pytest.fixture
def config_manager(temp_dir: Path) -> ConfigManager:
    return ConfigManager(temp_dir / "config.yaml")


@pytest.fixture
def registry(minio_store: StoreConfig, aws_store: StoreConfig, config_manager: ConfigManager) -> StoreRegistry:
    return StoreRegistry([minio_store, aws_store], config_manager)


@pytest.fixture
def resolver(registry: StoreRegistry, fake_s3: FakeS3Client) -> FakeResolver:
    return FakeResolver(registry, fake_s3)


@pytest.fixture
def settings(temp_dir: Path) -> AppSettings:
    upload_dir = temp_dir / "uploads"
    upload_dir.mkdir()
    return AppSettings(
        environment="test",
        debug=False,
        config_path=str(temp_dir / "config.yaml"),
        cors_origins=["*"],
        stats_max_concurrency=4,
        archive_chunk_size=64 * 1024,
        upload_max_size=1024 * 1024,
        upload_temp_dir=str(upload_dir),
    )


@pytest.fixture
def portal(settings: AppSettings, registry: StoreRegistry, resolver: FakeResolver) -> PortalApp:
    return PortalApp(settings=settings, registry=registry, resolver=resolver)


@pytest.fixture
def task_manager() -> TaskManager:
    return TaskManager(max_concurrent_tasks=2)


# Ensure async cleanup for task manager
@pytest.fixture(autouse=True)
async def cleanup_tasks(task_manager: TaskManager) -> AsyncGenerator[None, None]:
    yield
    await task_manager.shutdown()
