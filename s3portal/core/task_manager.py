"""
Task management for background operations.

Background tasks are registered under a caller-chosen key so they can be
looked up and cancelled later (for example when the bucket they are walking
is deleted). A semaphore bounds how many run at once; tasks beyond the bound
are created immediately but wait for a slot before doing any work.
"""

import asyncio
import uuid
from collections.abc import Callable, Coroutine
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class TaskManager:
    """Manages keyed background tasks and their lifecycle."""

    def __init__(self, max_concurrent_tasks: int = 4, cleanup_interval: int = 300):
        self.tasks: Dict[str, asyncio.Task] = {}
        self.task_status: Dict[str, Dict[str, Any]] = {}
        self.max_concurrent_tasks = max(1, max_concurrent_tasks)
        self.cleanup_interval = cleanup_interval
        self.running = 0
        self.peak_running = 0
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._cleanup_task: Optional[asyncio.Task] = None

    def _get_semaphore(self) -> asyncio.Semaphore:
        # Created lazily so it binds to the running loop
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrent_tasks)
        return self._semaphore

    def start_cleanup(self) -> None:
        """Start the cleanup task."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._periodic_cleanup())

    async def _periodic_cleanup(self) -> None:
        """Periodically clean up completed tasks."""
        while True:
            try:
                await asyncio.sleep(self.cleanup_interval)
                await self.cleanup_completed_tasks()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in task cleanup", error=str(e))

    async def cleanup_completed_tasks(self) -> None:
        """Remove completed tasks from memory."""
        completed_tasks = [task_id for task_id, task in self.tasks.items() if task.done()]

        for task_id in completed_tasks:
            self.tasks.pop(task_id, None)
            self.task_status.pop(task_id, None)

        if completed_tasks:
            logger.info("Cleaned up completed tasks", count=len(completed_tasks))

    def create_task(self, coro: Coroutine[Any, Any, Any], task_id: Optional[str] = None) -> str:
        """Create and track a new background task bounded by the semaphore."""
        if task_id is None:
            task_id = str(uuid.uuid4())

        existing = self.tasks.get(task_id)
        if existing is not None and not existing.done():
            coro.close()
            raise ValueError(f"Task {task_id} is already running")

        self.task_status[task_id] = {
            "created_at": datetime.now(timezone.utc),
            "status": "queued",
            "error": None,
        }
        task = asyncio.create_task(self._run_bounded(task_id, coro))
        self.tasks[task_id] = task
        return task_id

    async def _run_bounded(self, task_id: str, coro: Coroutine[Any, Any, Any]) -> Any:
        try:
            async with self._get_semaphore():
                self.running += 1
                self.peak_running = max(self.peak_running, self.running)
                self.update_task_status(task_id, status="running")
                try:
                    result = await coro
                finally:
                    self.running -= 1
        except asyncio.CancelledError:
            coro.close()
            self.update_task_status(task_id, status="cancelled")
            raise
        except Exception as e:
            self.update_task_status(task_id, status="failed", error=str(e))
            logger.error("Background task failed", task_id=task_id, error=str(e))
            return None

        self.update_task_status(task_id, status="completed")
        return result

    def get_task_status(self, task_id: str) -> Dict[str, Any]:
        """Get the current status of a task."""
        return self.task_status.get(task_id, {"status": "not_found"})

    def update_task_status(self, task_id: str, **kwargs) -> None:
        """Update the status of a task."""
        if task_id in self.task_status:
            self.task_status[task_id].update(kwargs)
            self.task_status[task_id]["updated_at"] = datetime.now(timezone.utc)

    def is_running(self, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        return task is not None and not task.done()

    def cancel_task(self, task_id: str) -> bool:
        """Cancel a running task."""
        task = self.tasks.get(task_id)
        if task is not None and not task.done():
            task.cancel()
            self.update_task_status(task_id, status="cancelled")
            return True
        return False

    def cancel_matching(self, predicate: Callable[[str], bool]) -> list[str]:
        """Cancel every running task whose id satisfies ``predicate``."""
        cancelled = [task_id for task_id in list(self.tasks) if predicate(task_id) and self.cancel_task(task_id)]
        if cancelled:
            logger.info("Cancelled background tasks", count=len(cancelled))
        return cancelled

    async def join(self) -> None:
        """Wait until every currently tracked task has finished."""
        pending = [task for task in self.tasks.values() if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        """Shutdown the task manager and clean up all tasks."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        # Cancel all running tasks
        for task in self.tasks.values():
            if not task.done():
                task.cancel()

        # Wait for all tasks to complete
        if self.tasks:
            await asyncio.gather(*self.tasks.values(), return_exceptions=True)

        self.tasks.clear()
        self.task_status.clear()
