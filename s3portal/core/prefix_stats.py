"""
Aggregate statistics for virtual folders.

Listing a folder's direct children is one cheap call, but its total size and
latest modification time require walking the whole subtree. The cache below
lets the listing request return immediately while a background task pages
through the subtree; callers poll for the result.

Entry lifecycle per (store, bucket, prefix) key::

    absent -> pending -> ready
                      -> failed

The pending entry is the de-duplication guard: only the caller whose
``try_begin`` inserted it schedules a computation. Results are applied only
to pending entries, so a ready entry never goes back to not-ready unless it
is explicitly invalidated. Failed computations are not retried.

Objects whose listing carries no size are left out of ``total_size``. The
total is therefore a lower bound when a store omits sizes.
"""

import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, NamedTuple, Optional

import structlog

from s3portal.core.task_manager import TaskManager
from s3portal.storage.client_resolver import ResolvedClient
from s3portal.storage.s3_storage import S3Storage

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> str:
    """RFC 3339 text for a timestamp; empty for None."""
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class PrefixStatsKey(NamedTuple):
    store: str
    bucket: str
    prefix: str

    @property
    def task_id(self) -> str:
        return f"{self.store}|{self.bucket}|{self.prefix}"


@dataclass(frozen=True)
class PrefixStatsEntry:
    """Computed or pending statistics for one prefix."""

    total_size: int = 0
    last_modified: Optional[datetime] = None
    ready: bool = False
    error: Optional[str] = None
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def state(self) -> str:
        if self.ready:
            return "ready"
        if self.error is not None:
            return "failed"
        return "pending"

    @property
    def is_pending(self) -> bool:
        return self.state == "pending"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "ready": self.ready,
            "size": self.total_size,
            "updatedAt": format_timestamp(self.updated_at),
        }
        if self.last_modified is not None:
            data["lastModified"] = format_timestamp(self.last_modified)
        if self.error:
            data["error"] = self.error
        return data


class PrefixStatsCache:
    """Thread-safe map of prefix stats entries.

    Every method holds the lock only for the map access itself.
    """

    def __init__(self) -> None:
        self._entries: Dict[PrefixStatsKey, PrefixStatsEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: PrefixStatsKey) -> Optional[PrefixStatsEntry]:
        with self._lock:
            return self._entries.get(key)

    def try_begin(self, key: PrefixStatsKey) -> bool:
        """Insert a pending entry if the key is absent.

        Returns True only for the caller that inserted it.
        """
        with self._lock:
            if key in self._entries:
                return False
            self._entries[key] = PrefixStatsEntry()
            return True

    def complete(
        self,
        key: PrefixStatsKey,
        total_size: int,
        last_modified: Optional[datetime],
    ) -> Optional[PrefixStatsEntry]:
        """Mark a pending entry ready. Returns None if it is no longer pending."""
        return self._transition(
            key,
            lambda entry: replace(
                entry,
                total_size=total_size,
                last_modified=last_modified,
                ready=True,
                error=None,
                updated_at=_utcnow(),
            ),
        )

    def fail(self, key: PrefixStatsKey, message: str) -> Optional[PrefixStatsEntry]:
        """Mark a pending entry failed. Returns None if it is no longer pending."""
        return self._transition(
            key,
            lambda entry: replace(entry, ready=False, error=message or "unknown error", updated_at=_utcnow()),
        )

    def invalidate(self, key: PrefixStatsKey) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_matching(self, store: str, bucket: str, prefix: str = "") -> list[PrefixStatsKey]:
        """Drop every entry of ``store``/``bucket`` whose prefix starts with ``prefix``."""
        with self._lock:
            matched = [
                key
                for key in self._entries
                if key.store == store and key.bucket == bucket and key.prefix.startswith(prefix)
            ]
            for key in matched:
                del self._entries[key]
        return matched

    def invalidate_store(self, store: str) -> int:
        with self._lock:
            matched = [key for key in self._entries if key.store == store]
            for key in matched:
                del self._entries[key]
        return len(matched)

    def _transition(
        self,
        key: PrefixStatsKey,
        update: Callable[[PrefixStatsEntry], PrefixStatsEntry],
    ) -> Optional[PrefixStatsEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not entry.is_pending:
                return None
            new_entry = update(entry)
            self._entries[key] = new_entry
            return new_entry


async def compute_prefix_stats(storage: S3Storage, bucket: str, prefix: str) -> tuple[int, Optional[datetime]]:
    """Walk every page under ``prefix`` and return (total size, latest mtime).

    Pages are requested strictly in sequence; each continuation token gates
    the next call.
    """
    total = 0
    latest: Optional[datetime] = None
    skipped = 0
    pages = 0
    token: Optional[str] = None

    while True:
        page = await storage.list_page(bucket, prefix, continuation_token=token)
        pages += 1
        for obj in page.objects:
            if obj.size is not None:
                total += obj.size
            else:
                skipped += 1
            if obj.last_modified is not None and (latest is None or obj.last_modified > latest):
                latest = obj.last_modified
        if not page.is_truncated or not page.next_token:
            break
        token = page.next_token

    if skipped:
        logger.debug("Objects without size left out of total", bucket=bucket, prefix=prefix, skipped=skipped)
    logger.debug("Computed prefix stats", bucket=bucket, prefix=prefix, pages=pages, total_size=total)
    return total, latest


class PrefixStatsService:
    """Schedules, reads and invalidates prefix stats computations.

    Background walks are tracked by their cache key, so cancellation matches
    exactly the entries that invalidation drops.
    """

    def __init__(
        self,
        cache: PrefixStatsCache,
        task_manager: TaskManager,
        resolve_client: Callable[[str], ResolvedClient],
    ):
        self.cache = cache
        self.task_manager = task_manager
        self._resolve_client = resolve_client
        self._task_keys: Dict[str, PrefixStatsKey] = {}

    def lookup(self, key: PrefixStatsKey) -> Optional[PrefixStatsEntry]:
        return self.cache.get(key)

    def ensure_scheduled(self, key: PrefixStatsKey) -> bool:
        """Start a background computation for ``key`` unless one exists.

        Returns True if this call scheduled the computation.
        """
        if not self.cache.try_begin(key):
            return False
        # A cancelled task for the same key may still be unwinding
        task_id = f"{key.task_id}#{uuid.uuid4().hex[:8]}"
        self._task_keys[task_id] = key
        self.task_manager.create_task(self._compute(key, task_id), task_id=task_id)
        logger.debug("Scheduled prefix stats", store=key.store, bucket=key.bucket, prefix=key.prefix)
        return True

    def read(self, key: PrefixStatsKey) -> Dict[str, Any]:
        """Current state of ``key`` as response data."""
        entry = self.cache.get(key)
        if entry is None:
            return {"ready": False}
        return entry.to_dict()

    def invalidate(self, store: str, bucket: str, prefix: str = "") -> int:
        """Cancel in-flight computations under ``prefix`` and drop their entries."""
        self._cancel(lambda key: key.store == store and key.bucket == bucket and key.prefix.startswith(prefix))
        removed = self.cache.invalidate_matching(store, bucket, prefix)
        if removed:
            logger.info("Invalidated prefix stats", store=store, bucket=bucket, prefix=prefix, count=len(removed))
        return len(removed)

    def invalidate_ancestors(self, store: str, bucket: str, key: str) -> int:
        """Drop the entries of every folder containing ``key``.

        Used after writes so the enclosing folders are recomputed on the next
        listing. Sibling folders keep their entries.
        """
        parts = key.rstrip("/").split("/")[:-1]
        ancestors = {PrefixStatsKey(store, bucket, "/".join(parts[:depth]) + "/") for depth in range(1, len(parts) + 1)}
        if not ancestors:
            return 0
        self._cancel(lambda stats_key: stats_key in ancestors)
        return sum(1 for stats_key in ancestors if self.cache.invalidate(stats_key))

    def invalidate_store(self, store: str) -> int:
        """Cancel and drop everything computed for a removed store."""
        self._cancel(lambda key: key.store == store)
        removed = self.cache.invalidate_store(store)
        if removed:
            logger.info("Invalidated prefix stats of store", store=store, count=removed)
        return removed

    def _cancel(self, matches: Callable[[PrefixStatsKey], bool]) -> list[str]:
        task_ids = [task_id for task_id, key in self._task_keys.items() if matches(key)]
        for task_id in task_ids:
            # Tasks cancelled before they start never reach _compute's cleanup
            self._task_keys.pop(task_id, None)
        if not task_ids:
            return []
        selected = set(task_ids)
        return self.task_manager.cancel_matching(lambda task_id: task_id in selected)

    async def _compute(self, key: PrefixStatsKey, task_id: str) -> None:
        try:
            resolved = self._resolve_client(key.store)
            total, latest = await compute_prefix_stats(S3Storage(resolved), key.bucket, key.prefix)
        except Exception as e:
            message = getattr(e, "message", None) or str(e)
            self.cache.fail(key, message)
            logger.warning(
                "Prefix stats computation failed",
                store=key.store,
                bucket=key.bucket,
                prefix=key.prefix,
                error=message,
            )
            return
        finally:
            self._task_keys.pop(task_id, None)

        if self.cache.complete(key, total, latest) is None:
            logger.debug("Dropped stats for invalidated prefix", bucket=key.bucket, prefix=key.prefix)
