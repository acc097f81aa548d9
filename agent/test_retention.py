"""
Test the retention scheduler against a fake target.

This test verifies:
1. Expired files are deleted immediately, future ones on their timer
2. The sweep deletes every expired row and survives failures
3. Shutdown disarms timers and stops the sweep loop
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from kr1_memory.memory import RetentionScheduler
from kr1_memory.models import FileType, GeneratedFile


def make_file(file_id: str, expires_at_ms: int) -> GeneratedFile:
    return GeneratedFile(
        id=file_id,
        filename=f"{file_id}.json",
        file_path=f"/tmp/{file_id}.json",
        expires_at_ms=expires_at_ms,
        file_type=FileType.JSON,
        created_at_ms=expires_at_ms - 1,
    )


@pytest.fixture
def target():
    fake = MagicMock()
    fake.list_expired_files = AsyncMock(return_value=[])
    fake.delete_expired_file = AsyncMock(return_value=True)
    return fake


async def drain() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_already_expired_file_deleted_immediately(target, clock):
    scheduler = RetentionScheduler(target, clock=clock)

    scheduler.schedule("f1", "/tmp/f1.json", clock() - 1)
    await drain()

    target.delete_expired_file.assert_awaited_once_with("f1", "/tmp/f1.json")
    assert scheduler.pending_count == 0


@pytest.mark.asyncio
async def test_timer_fires_at_expiry(target, clock):
    scheduler = RetentionScheduler(target, clock=clock)

    scheduler.schedule("f1", "/tmp/f1.json", clock() + 20)
    assert scheduler.pending_count == 1
    target.delete_expired_file.assert_not_called()

    await asyncio.sleep(0.1)

    target.delete_expired_file.assert_awaited_once_with("f1", "/tmp/f1.json")
    assert scheduler.pending_count == 0


@pytest.mark.asyncio
async def test_sweep_deletes_expired_and_counts(target, clock):
    """Test that the sweep passes the current time and counts deletions."""
    target.list_expired_files.return_value = [make_file("a", clock()), make_file("b", clock())]
    target.delete_expired_file.side_effect = [True, False]
    scheduler = RetentionScheduler(target, clock=clock)

    deleted = await scheduler.sweep()

    assert deleted == 1
    target.list_expired_files.assert_awaited_once_with(clock())
    assert target.delete_expired_file.await_count == 2


@pytest.mark.asyncio
async def test_sweep_tolerates_deletion_errors(target, clock):
    """Test that a raising deletion is logged and left for the next sweep."""
    target.list_expired_files.return_value = [make_file("a", clock()), make_file("b", clock())]
    target.delete_expired_file.side_effect = [OSError("busy"), True]
    scheduler = RetentionScheduler(target, clock=clock)

    assert await scheduler.sweep() == 1


@pytest.mark.asyncio
async def test_sweep_disarms_matching_timer(target, clock):
    scheduler = RetentionScheduler(target, clock=clock)
    scheduler.schedule("a", "/tmp/a.json", clock() + 60_000)
    target.list_expired_files.return_value = [make_file("a", clock())]

    await scheduler.sweep()

    assert scheduler.pending_count == 0
    target.delete_expired_file.assert_awaited_once()


@pytest.mark.asyncio
async def test_cancel_pending_disarms_timers(target, clock):
    scheduler = RetentionScheduler(target, clock=clock)
    scheduler.schedule("a", "/tmp/a.json", clock() + 20)
    scheduler.schedule("b", "/tmp/b.json", clock() + 20)

    scheduler.cancel_pending()
    await asyncio.sleep(0.1)

    assert scheduler.pending_count == 0
    target.delete_expired_file.assert_not_called()


@pytest.mark.asyncio
async def test_periodic_sweep_runs_and_stops(target, clock):
    scheduler = RetentionScheduler(target, clock=clock, sweep_interval_seconds=0.01)

    scheduler.start()
    assert scheduler.is_running is True
    await asyncio.sleep(0.1)
    await scheduler.stop()

    assert scheduler.is_running is False
    assert target.list_expired_files.await_count >= 1


@pytest.mark.asyncio
async def test_sweep_loop_survives_listing_failure(target, clock):
    target.list_expired_files.side_effect = RuntimeError("database closed")
    scheduler = RetentionScheduler(target, clock=clock, sweep_interval_seconds=0.01)

    scheduler.start()
    await asyncio.sleep(0.1)

    assert scheduler.is_running is True
    await scheduler.stop()
