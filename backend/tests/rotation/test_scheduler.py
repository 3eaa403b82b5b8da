"""
Tests for the rotation scheduler tick and job registration
"""

from unittest.mock import AsyncMock, Mock

import pytest

from fleetdns.config import RotationSettings
from fleetdns.dns.sync import PushResult
from fleetdns.models import PoolType, RecordPool, WildcardPool
from fleetdns.rotation.rotator import PoolRotator
from fleetdns.rotation.scheduler import PUSH_JOB_ID, TICK_JOB_ID, RotationScheduler
from fleetdns.rotation.types import RotationDecision


@pytest.fixture
def scheduler(test_database):
    return RotationScheduler(test_database, PoolRotator(test_database))


async def _get(get_session, model, obj_id):
    async with get_session() as session:
        return await session.get(model, obj_id)


@pytest.mark.asyncio
async def test_tick_evaluates_record_then_wildcard_pools(scheduler, seed):
    a = await seed.machine("a", "1.1.1.1")
    b = await seed.machine("b", "2.2.2.2")
    domain = await seed.domain()
    record = await seed.record(domain.id, "www", "198.51.100.1")
    record_pool = await seed.record_pool(record.id, [a.id, b.id])
    wildcard_pool = await seed.wildcard_pool(domain.id, [a.id, b.id])

    results = await scheduler.tick()

    assert [(r.pool_type, r.pool_id) for r in results] == [
        (PoolType.RECORD, record_pool.id),
        (PoolType.WILDCARD, wildcard_pool.id),
    ]
    assert all(r.decision == RotationDecision.ROTATED for r in results)

    # Nothing is due right after
    again = await scheduler.tick()
    assert all(r.decision == RotationDecision.NOT_DUE for r in again)


@pytest.mark.asyncio
async def test_failing_pool_does_not_stop_tick(scheduler, seed, test_database):
    a = await seed.machine("a", "1.1.1.1")
    b = await seed.machine("b", "2.2.2.2")
    domain = await seed.domain()
    empty = await seed.record_pool((await seed.record(domain.id, "empty", "198.51.100.1")).id, [])
    healthy = await seed.record_pool(
        (await seed.record(domain.id, "www", "198.51.100.2")).id, [a.id, b.id]
    )

    results = await scheduler.tick()

    assert [(r.pool_id, r.decision) for r in results] == [
        (healthy.id, RotationDecision.ROTATED)
    ]
    assert (await _get(test_database, RecordPool, empty.id)).last_error is not None
    assert (await _get(test_database, RecordPool, healthy.id)).current_machine_id == b.id


@pytest.mark.asyncio
async def test_tick_skips_paused_pools(scheduler, seed, test_database):
    a = await seed.machine("a", "1.1.1.1")
    b = await seed.machine("b", "2.2.2.2")
    domain = await seed.domain()
    pool = await seed.wildcard_pool(domain.id, [a.id, b.id])
    async with test_database() as session:
        stored = await session.get(WildcardPool, pool.id)
        stored.is_paused = True
        await session.commit()

    assert await scheduler.tick() == []
    assert (await _get(test_database, WildcardPool, pool.id)).current_machine_id == a.id


@pytest.mark.asyncio
async def test_push_pending_delegates_to_sync_service(test_database):
    sync_service = Mock()
    sync_service.push_pending = AsyncMock(return_value=PushResult(pushed=2, failed=0))
    scheduler = RotationScheduler(test_database, PoolRotator(test_database), sync_service)

    await scheduler.push_pending()

    sync_service.push_pending.assert_awaited_once_with()


@pytest.mark.asyncio
async def test_push_pending_errors_are_logged(test_database):
    sync_service = Mock()
    sync_service.push_pending = AsyncMock(side_effect=RuntimeError("boom"))
    scheduler = RotationScheduler(test_database, PoolRotator(test_database), sync_service)

    # Does not raise
    await scheduler.push_pending()


@pytest.mark.asyncio
async def test_start_registers_jobs_and_shutdown_stops(test_database):
    settings = RotationSettings(tick_interval_seconds=30, reconcile_interval_seconds=600)
    scheduler = RotationScheduler(
        test_database, PoolRotator(test_database), Mock(), settings=settings
    )

    scheduler.start()
    try:
        assert scheduler.running
        tick_job = scheduler.scheduler.get_job(TICK_JOB_ID)
        assert tick_job is not None
        assert tick_job.trigger.interval.total_seconds() == 30
        assert scheduler.scheduler.get_job(PUSH_JOB_ID) is not None

        # Starting twice is a no-op
        scheduler.start()
    finally:
        scheduler.shutdown()

    assert not scheduler.running


@pytest.mark.asyncio
async def test_start_without_sync_service_has_no_push_job(scheduler):
    scheduler.start()
    try:
        assert scheduler.scheduler.get_job(PUSH_JOB_ID) is None
    finally:
        scheduler.shutdown()
