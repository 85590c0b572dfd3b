import asyncio

import pytest

from s3portal.core.task_manager import TaskManager


@pytest.mark.asyncio
async def test_create_task(task_manager: TaskManager) -> None:
    async def test_task() -> int:
        await asyncio.sleep(0.05)
        return 42

    task_id = task_manager.create_task(test_task(), task_id="minio|assets|models/")
    assert task_id == "minio|assets|models/", "Caller-chosen id should be kept"
    assert task_id in task_manager.tasks, "Task should be created"
    assert task_manager.get_task_status(task_id)["status"] == "queued", "Task status should be queued"

    assert await task_manager.tasks[task_id] == 42
    assert task_manager.get_task_status(task_id)["status"] == "completed"


@pytest.mark.asyncio
async def test_duplicate_running_task_rejected(task_manager: TaskManager) -> None:
    async def test_task() -> None:
        await asyncio.sleep(1)

    task_manager.create_task(test_task(), task_id="same")
    with pytest.raises(ValueError, match="already running"):
        task_manager.create_task(test_task(), task_id="same")


@pytest.mark.asyncio
async def test_task_cleanup(task_manager: TaskManager) -> None:
    async def test_task() -> int:
        await asyncio.sleep(0.05)
        return 42

    task_id = task_manager.create_task(test_task())
    await task_manager.join()
    await task_manager.cleanup_completed_tasks()
    assert task_id not in task_manager.tasks, "Completed task should be removed"
    assert task_manager.get_task_status(task_id)["status"] == "not_found", "Status should be dropped with the task"


@pytest.mark.asyncio
async def test_cancel_task(task_manager: TaskManager) -> None:
    async def test_task() -> int:
        await asyncio.sleep(1)
        return 42

    task_id = task_manager.create_task(test_task())
    success = task_manager.cancel_task(task_id)
    assert success, "Task cancellation should succeed"
    assert task_manager.get_task_status(task_id)["status"] == "cancelled", "Task status should be cancelled"

    await task_manager.join()
    assert not task_manager.is_running(task_id)
    assert not task_manager.cancel_task(task_id), "Finished task cannot be cancelled again"


@pytest.mark.asyncio
async def test_cancel_matching(task_manager: TaskManager) -> None:
    async def test_task() -> None:
        await asyncio.sleep(1)

    task_manager.create_task(test_task(), task_id="minio|photos|2023/#a")
    task_manager.create_task(test_task(), task_id="minio|photos|2024/#b")
    task_manager.create_task(test_task(), task_id="minio|videos|2023/#c")

    cancelled = task_manager.cancel_matching(lambda task_id: task_id.startswith("minio|photos|"))

    assert sorted(cancelled) == ["minio|photos|2023/#a", "minio|photos|2024/#b"]
    assert task_manager.is_running("minio|videos|2023/#c")


@pytest.mark.asyncio
async def test_concurrency_bound(task_manager: TaskManager) -> None:
    """No more than max_concurrent_tasks bodies run at the same time."""
    release = asyncio.Event()

    async def test_task() -> None:
        await release.wait()

    for i in range(6):
        task_manager.create_task(test_task(), task_id=f"task-{i}")

    await asyncio.sleep(0.05)
    assert task_manager.running == task_manager.max_concurrent_tasks == 2
    queued = [tid for tid in task_manager.tasks if task_manager.get_task_status(tid)["status"] == "queued"]
    assert len(queued) == 4, "Tasks beyond the bound should wait for a slot"

    release.set()
    await task_manager.join()
    assert task_manager.running == 0
    assert task_manager.peak_running == 2


@pytest.mark.asyncio
async def test_failed_task_is_recorded(task_manager: TaskManager) -> None:
    async def test_task() -> None:
        raise RuntimeError("boom")

    task_id = task_manager.create_task(test_task())
    await task_manager.join()
    status = task_manager.get_task_status(task_id)
    assert status["status"] == "failed"
    assert status["error"] == "boom"


@pytest.mark.asyncio
async def test_shutdown_cancels_tasks(task_manager: TaskManager) -> None:
    async def test_task() -> None:
        await asyncio.sleep(10)

    task_manager.start_cleanup()
    task_manager.create_task(test_task())
    await task_manager.shutdown()
    assert task_manager.tasks == {}, "Tasks should be cleared"
