"""
Tests for PoolRotator: the shared decide/select/write routine behind manual
rotations and scheduler ticks
"""

import gc
import random
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest
from sqlalchemy import select, update

from fleetdns.config import RotationSettings
from fleetdns.dns.crud import get_record_by_key
from fleetdns.errors import NoEligibleMembersError, NotFoundError, RaceConditionError
from fleetdns.models import (
    DNSRecord,
    Machine,
    PoolType,
    RecordMode,
    RecordPool,
    RotationHistory,
    RotationStrategy,
    RotationTrigger,
    SyncStatus,
    WildcardPool,
)
from fleetdns.rotation.crud import resolve_pool
from fleetdns.rotation.rotator import PoolRotator
from fleetdns.rotation.types import RotationDecision


@pytest.fixture
def rotator(test_database):
    return PoolRotator(test_database, rng=random.Random(7))


async def _history(get_session, pool_type=PoolType.RECORD):
    async with get_session() as session:
        result = await session.execute(
            select(RotationHistory)
            .where(RotationHistory.pool_type == pool_type)
            .order_by(RotationHistory.id)
        )
        return list(result.scalars().all())


async def _get(get_session, model, obj_id):
    async with get_session() as session:
        return await session.get(model, obj_id)


async def _record_pool_setup(seed, machines, **config):
    domain = await seed.domain()
    record = await seed.record(domain.id, "www", "198.51.100.1")
    pool = await seed.record_pool(record.id, [m.id for m in machines], **config)
    return domain, record, pool


@pytest.mark.asyncio
async def test_manual_rotation_moves_to_next_member(rotator, seed, test_database):
    a = await seed.machine("a", "1.1.1.1")
    b = await seed.machine("b", "2.2.2.2")
    domain, record, pool = await _record_pool_setup(seed, [a, b])
    assert pool.current_machine_id == a.id

    result = await rotator.rotate(PoolType.RECORD, pool.id)

    assert result.decision == RotationDecision.ROTATED
    assert result.trigger == RotationTrigger.MANUAL
    assert (result.from_machine_id, result.to_machine_id) == (a.id, b.id)

    stored = await _get(test_database, DNSRecord, record.id)
    assert stored.value == "2.2.2.2"
    assert stored.sync_status == SyncStatus.PENDING
    assert stored.mode == RecordMode.DYNAMIC

    (entry,) = await _history(test_database)
    assert (entry.from_machine_id, entry.from_ip) == (a.id, "1.1.1.1")
    assert (entry.to_machine_id, entry.to_ip) == (b.id, "2.2.2.2")
    assert entry.trigger == RotationTrigger.MANUAL
    assert entry.dns_domain_id == domain.id
    assert entry.record_name == "www"

    stored_pool = await _get(test_database, RecordPool, pool.id)
    assert stored_pool.current_machine_id == b.id
    assert stored_pool.current_index == 1
    assert stored_pool.last_rotated_at == result.rotated_at


@pytest.mark.asyncio
async def test_stale_member_filtered_keeps_current_target(rotator, seed, test_database):
    a = await seed.machine("a", "1.1.1.1")
    b = await seed.machine("b", "2.2.2.2", stale_minutes=10)
    _, record, pool = await _record_pool_setup(seed, [a, b], health_check_enabled=True)
    assert pool.current_machine_id == a.id
    assert pool.last_rotated_at is None

    async with test_database() as session:
        stored = await session.get(DNSRecord, record.id)
        stored.sync_status = SyncStatus.SYNCED
        await session.commit()

    result = await rotator.evaluate(PoolType.RECORD, pool.id)

    assert result.decision == RotationDecision.UNCHANGED
    assert await _history(test_database) == []
    stored = await _get(test_database, DNSRecord, record.id)
    assert stored.value == "1.1.1.1"
    assert stored.sync_status == SyncStatus.SYNCED
    stored_pool = await _get(test_database, RecordPool, pool.id)
    assert stored_pool.last_rotated_at == result.rotated_at


@pytest.mark.asyncio
async def test_wildcard_rotation_writes_wildcard_and_apex(rotator, seed, test_database):
    w = await seed.machine("w", "4.4.4.4")
    x = await seed.machine("x", "5.5.5.5")
    domain = await seed.domain()
    pool = await seed.wildcard_pool(domain.id, [w.id, x.id], include_root=True)

    async with test_database() as session:
        await session.execute(
            update(DNSRecord)
            .where(DNSRecord.domain_id == domain.id)
            .values(sync_status=SyncStatus.SYNCED)
        )
        await session.commit()

    result = await rotator.rotate(PoolType.WILDCARD, pool.id)

    assert result.to_ip == "5.5.5.5"
    async with test_database() as session:
        wildcard = await get_record_by_key(session, domain.id, "*", "A")
        apex = await get_record_by_key(session, domain.id, "@", "A")
    for record in (wildcard, apex):
        assert record.value == "5.5.5.5"
        assert record.sync_status == SyncStatus.PENDING
        assert record.mode == RecordMode.DYNAMIC

    (entry,) = await _history(test_database, PoolType.WILDCARD)
    assert entry.record_name == "*"
    assert entry.from_ip == "4.4.4.4"
    assert entry.to_ip == "5.5.5.5"


@pytest.mark.asyncio
async def test_wildcard_without_root_leaves_apex_alone(rotator, seed, test_database):
    w = await seed.machine("w", "4.4.4.4")
    x = await seed.machine("x", "5.5.5.5")
    domain = await seed.domain()
    apex = await seed.record(domain.id, "@", "192.0.2.1")
    pool = await seed.wildcard_pool(domain.id, [w.id, x.id], include_root=False)

    await rotator.rotate(PoolType.WILDCARD, pool.id)

    stored_apex = await _get(test_database, DNSRecord, apex.id)
    assert stored_apex.value == "192.0.2.1"
    assert stored_apex.mode == RecordMode.STATIC


@pytest.mark.asyncio
async def test_round_robin_sequence(rotator, seed, test_database):
    machines = [await seed.machine(name, f"10.0.0.{i}") for i, name in enumerate("abc", 1)]
    _, _, pool = await _record_pool_setup(seed, machines)

    indices = []
    for _ in range(5):
        await rotator.rotate(PoolType.RECORD, pool.id)
        indices.append((await _get(test_database, RecordPool, pool.id)).current_index)

    assert indices == [1, 2, 0, 1, 2]
    history = await _history(test_database)
    assert [h.to_machine_id for h in history] == [
        machines[i].id for i in [1, 2, 0, 1, 2]
    ]
    for entry in history:
        assert entry.from_machine_id != entry.to_machine_id


@pytest.mark.asyncio
async def test_random_strategy_never_records_self_rotation(test_database, seed):
    rotator = PoolRotator(test_database, rng=random.Random(1))
    machines = [await seed.machine(name, f"10.0.1.{i}") for i, name in enumerate("abc", 1)]
    _, _, pool = await _record_pool_setup(
        seed, machines, rotation_strategy=RotationStrategy.RANDOM
    )

    decisions = [
        (await rotator.rotate(PoolType.RECORD, pool.id)).decision for _ in range(12)
    ]

    history = await _history(test_database)
    assert len(history) == decisions.count(RotationDecision.ROTATED)
    for entry in history:
        assert entry.from_machine_id != entry.to_machine_id


@pytest.mark.asyncio
async def test_interval_pool_not_due(rotator, seed, test_database):
    a = await seed.machine("a", "1.1.1.1")
    b = await seed.machine("b", "2.2.2.2")
    _, _, pool = await _record_pool_setup(seed, [a, b], interval_minutes=30)
    now = datetime.now(timezone.utc)

    first = await rotator.evaluate(PoolType.RECORD, pool.id, now)
    second = await rotator.evaluate(PoolType.RECORD, pool.id, now + timedelta(minutes=10))
    third = await rotator.evaluate(PoolType.RECORD, pool.id, now + timedelta(minutes=31))

    assert first.decision == RotationDecision.ROTATED
    assert first.trigger == RotationTrigger.SCHEDULED
    assert second.decision == RotationDecision.NOT_DUE
    assert third.decision == RotationDecision.ROTATED
    assert len(await _history(test_database)) == 2


@pytest.mark.asyncio
async def test_paused_pool_skipped_by_tick_but_not_manual(rotator, seed, test_database):
    a = await seed.machine("a", "1.1.1.1")
    b = await seed.machine("b", "2.2.2.2")
    _, _, pool = await _record_pool_setup(seed, [a, b])
    async with test_database() as session:
        stored = await session.get(RecordPool, pool.id)
        stored.is_paused = True
        await session.commit()

    assert (await rotator.evaluate(PoolType.RECORD, pool.id)).decision == RotationDecision.NOT_DUE
    assert (await rotator.rotate(PoolType.RECORD, pool.id)).decision == RotationDecision.ROTATED


@pytest.mark.asyncio
async def test_health_failover_before_interval(rotator, seed, test_database):
    a = await seed.machine("a", "1.1.1.1")
    b = await seed.machine("b", "2.2.2.2")
    _, record, pool = await _record_pool_setup(seed, [a, b], health_check_enabled=True)
    now = datetime.now(timezone.utc)
    async with test_database() as session:
        stored = await session.get(RecordPool, pool.id)
        stored.last_rotated_at = now
        await session.execute(
            update(Machine).where(Machine.id == a.id).values(last_seen=now - timedelta(hours=1))
        )
        await session.commit()

    result = await rotator.evaluate(PoolType.RECORD, pool.id, now + timedelta(minutes=1))

    assert result.decision == RotationDecision.ROTATED
    assert result.trigger == RotationTrigger.HEALTH
    assert result.to_machine_id == b.id
    assert (await _get(test_database, DNSRecord, record.id)).value == "2.2.2.2"
    (entry,) = await _history(test_database)
    assert entry.trigger == RotationTrigger.HEALTH


@pytest.mark.asyncio
async def test_no_eligible_members_records_failure(rotator, seed, test_database):
    _, record, pool = await _record_pool_setup(seed, [])

    with pytest.raises(NoEligibleMembersError):
        await rotator.rotate(PoolType.RECORD, pool.id)

    assert await _history(test_database) == []
    stored_pool = await _get(test_database, RecordPool, pool.id)
    assert "No eligible machines" in stored_pool.last_error
    assert stored_pool.current_machine_id is None
    assert (await _get(test_database, DNSRecord, record.id)).value == "198.51.100.1"


@pytest.mark.asyncio
async def test_successful_rotation_clears_last_error(rotator, seed, test_database):
    _, _, pool = await _record_pool_setup(seed, [])
    with pytest.raises(NoEligibleMembersError):
        await rotator.rotate(PoolType.RECORD, pool.id)

    a = await seed.machine("a", "1.1.1.1")
    b = await seed.machine("b", "2.2.2.2")
    await seed.record_pool(pool.dns_record_id, [a.id, b.id])

    await rotator.rotate(PoolType.RECORD, pool.id)

    assert (await _get(test_database, RecordPool, pool.id)).last_error is None


@pytest.mark.asyncio
async def test_unknown_pool(rotator):
    with pytest.raises(NotFoundError):
        await rotator.rotate(PoolType.RECORD, 999)


@pytest.mark.asyncio
async def test_concurrent_modification_raises_race_error(rotator, seed, test_database):
    a = await seed.machine("a", "1.1.1.1")
    b = await seed.machine("b", "2.2.2.2")
    _, record, pool = await _record_pool_setup(seed, [a, b])

    async def resolve_then_modify(session, pool_type, pool_obj, *args, **kwargs):
        resolution = await resolve_pool(session, pool_type, pool_obj, *args, **kwargs)
        async with test_database() as other:
            concurrent = await other.get(RecordPool, pool_obj.id)
            concurrent.interval_minutes = 15
            await other.commit()
        return resolution

    with patch("fleetdns.rotation.rotator.resolve_pool", side_effect=resolve_then_modify):
        with pytest.raises(RaceConditionError):
            await rotator.rotate(PoolType.RECORD, pool.id)

    stored_pool = await _get(test_database, RecordPool, pool.id)
    assert stored_pool.interval_minutes == 15
    assert stored_pool.current_machine_id == a.id
    assert stored_pool.last_error is None
    assert (await _get(test_database, DNSRecord, record.id)).value == "1.1.1.1"
    assert await _history(test_database) == []


@pytest.mark.asyncio
async def test_rotation_notifies_pending_records(test_database, seed):
    callback = Mock()
    rotator = PoolRotator(test_database, on_records_pending=callback)
    a = await seed.machine("a", "1.1.1.1")
    b = await seed.machine("b", "2.2.2.2")
    domain, _, pool = await _record_pool_setup(seed, [a, b])

    await rotator.rotate(PoolType.RECORD, pool.id)

    callback.assert_called_once_with(domain.id)


@pytest.mark.asyncio
async def test_unchanged_rotation_does_not_notify(test_database, seed):
    callback = Mock()
    rotator = PoolRotator(test_database, on_records_pending=callback)
    a = await seed.machine("a", "1.1.1.1")
    _, _, pool = await _record_pool_setup(seed, [a])

    result = await rotator.rotate(PoolType.RECORD, pool.id)

    assert result.decision == RotationDecision.UNCHANGED
    callback.assert_not_called()


@pytest.mark.asyncio
async def test_wildcard_records_use_configured_ttl(test_database, seed):
    rotator = PoolRotator(test_database, settings=RotationSettings(default_record_ttl=120))
    a = await seed.machine("a", "1.1.1.1")
    group = await seed.group("edge", [a.id])
    domain = await seed.domain()
    # Created empty so the first write happens during rotation
    pool = await seed.wildcard_pool(domain.id, [])

    async with test_database() as session:
        stored = await session.get(WildcardPool, pool.id)
        stored.group_ids = [group.id]
        await session.commit()

    await rotator.rotate(PoolType.WILDCARD, pool.id)

    async with test_database() as session:
        wildcard = await get_record_by_key(session, domain.id, "*", "A")
    assert wildcard.ttl == 120
    assert wildcard.value == "1.1.1.1"


@pytest.mark.asyncio
async def test_record_pool_skips_members_of_other_address_family(rotator, seed, test_database):
    a = await seed.machine("a", "1.1.1.1")
    v6 = await seed.machine("v6", "2001:db8::2")
    b = await seed.machine("b", "2.2.2.2")
    domain, record, pool = await _record_pool_setup(seed, [a, v6, b])

    targets = []
    for _ in range(3):
        result = await rotator.rotate(PoolType.RECORD, pool.id)
        targets.append(result.to_machine_id)

    assert targets == [b.id, a.id, b.id]
    assert (await _get(test_database, RecordPool, pool.id)).last_error is None
    assert (await _get(test_database, DNSRecord, record.id)).value == "2.2.2.2"


@pytest.mark.asyncio
async def test_record_pool_with_only_other_family_members_has_no_candidates(
    rotator, seed, test_database
):
    v6 = await seed.machine("v6", "2001:db8::2")
    domain, record, pool = await _record_pool_setup(seed, [v6])
    assert pool.current_machine_id is None

    with pytest.raises(NoEligibleMembersError):
        await rotator.rotate(PoolType.RECORD, pool.id)

    assert (await _get(test_database, DNSRecord, record.id)).value == "198.51.100.1"


@pytest.mark.asyncio
async def test_wildcard_pool_stays_in_its_address_family(rotator, seed, test_database):
    a = await seed.machine("a", "1.1.1.1")
    v6 = await seed.machine("v6", "2001:db8::2")
    domain = await seed.domain()
    pool = await seed.wildcard_pool(domain.id, [a.id, v6.id])

    result = await rotator.rotate(PoolType.WILDCARD, pool.id)

    assert result.decision == RotationDecision.UNCHANGED
    async with test_database() as session:
        assert await get_record_by_key(session, domain.id, "*", "AAAA") is None
        wildcard = await get_record_by_key(session, domain.id, "*", "A")
    assert wildcard.value == "1.1.1.1"


@pytest.mark.asyncio
async def test_ipv6_wildcard_pool_writes_aaaa_records(rotator, seed, test_database):
    a = await seed.machine("a", "1.1.1.1")
    v6 = await seed.machine("v6", "2001:db8::2")
    w6 = await seed.machine("w6", "2001:db8::3")
    domain = await seed.domain()
    pool = await seed.wildcard_pool(domain.id, [a.id, v6.id, w6.id], record_type="AAAA")
    assert pool.current_machine_id == v6.id

    result = await rotator.rotate(PoolType.WILDCARD, pool.id)

    assert result.to_machine_id == w6.id
    async with test_database() as session:
        assert await get_record_by_key(session, domain.id, "*", "A") is None
        wildcard = await get_record_by_key(session, domain.id, "*", "AAAA")
        apex = await get_record_by_key(session, domain.id, "@", "AAAA")
    assert (wildcard.value, apex.value) == ("2001:db8::3", "2001:db8::3")


@pytest.mark.asyncio
async def test_pool_locks_are_released_after_rotation(rotator, seed):
    a = await seed.machine("a", "1.1.1.1")
    b = await seed.machine("b", "2.2.2.2")
    domain, record, pool = await _record_pool_setup(seed, [a, b])

    await rotator.rotate(PoolType.RECORD, pool.id)
    gc.collect()

    assert len(rotator._locks) == 0
