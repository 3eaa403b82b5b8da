"""CRUD operations for rotation pools, their members and rotation history."""

from datetime import datetime, timedelta, timezone
from typing import List, NamedTuple, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..dns.crud import get_domain, get_record, get_record_by_key, mark_pending
from ..dns.types import ADDRESS_RECORD_TYPES, address_family
from ..errors import NotFoundError, ValidationError
from ..fleet.registry import SQLFleetRegistry
from ..models import (
    DNSRecord,
    PoolType,
    RecordMode,
    RecordPool,
    RecordPoolMember,
    RotationHistory,
    RotationMode,
    SyncStatus,
    WildcardPool,
    WildcardPoolMember,
)
from .membership import MembershipResolver, Resolution
from .strategy import normalize_schedule_time
from .types import PoolConfig, PoolMemberConfig, WildcardPoolConfig

PoolT = RecordPool | WildcardPool
PoolMemberT = RecordPoolMember | WildcardPoolMember

POOL_MODELS: dict[PoolType, type[RecordPool] | type[WildcardPool]] = {
    PoolType.RECORD: RecordPool,
    PoolType.WILDCARD: WildcardPool,
}
MEMBER_MODELS: dict[PoolType, type[RecordPoolMember] | type[WildcardPoolMember]] = {
    PoolType.RECORD: RecordPoolMember,
    PoolType.WILDCARD: WildcardPoolMember,
}


class RecordWrite(NamedTuple):
    """Where a rotation wrote its address and what was there before."""

    domain_id: int
    record_name: str
    previous_value: Optional[str]


def address_record_type(address: str) -> str:
    """``A`` for IPv4 addresses, ``AAAA`` for IPv6."""
    record_type = address_family(address)
    if record_type is None:
        raise ValidationError(f"'{address}' is not an IP address")
    return record_type


def point_record_at(record: DNSRecord, address: str) -> str:
    """Set a desired record to ``address``, mark it pending and return the old value."""
    if address_record_type(address) != record.record_type:
        raise ValidationError(
            f"Cannot write {address} into {record.record_type} record {record.name}"
        )
    previous = record.value
    record.value = address
    record.mode = RecordMode.DYNAMIC
    mark_pending(record)
    return previous


async def write_record_pool_target(
    session: AsyncSession, pool: RecordPool, address: str
) -> RecordWrite:
    record = await get_record(session, pool.dns_record_id)
    previous = point_record_at(record, address)
    return RecordWrite(record.domain_id, record.name, previous)


async def write_wildcard_pool_target(
    session: AsyncSession, pool: WildcardPool, address: str, ttl: int
) -> RecordWrite:
    """Point the domain's ``*`` record, and ``@`` when included, at ``address``.

    Missing records of the pool's record type are created.
    """
    record_type = pool.record_type
    if address_record_type(address) != record_type:
        raise ValidationError(f"Cannot write {address} into the {record_type} wildcard records")
    names = ["*", "@"] if pool.include_root else ["*"]
    previous: Optional[str] = None

    for name in names:
        record = await get_record_by_key(session, pool.dns_domain_id, name, record_type)
        if record is None:
            record = DNSRecord(
                domain_id=pool.dns_domain_id,
                name=name,
                record_type=record_type,
                value=address,
                ttl=ttl,
                mode=RecordMode.DYNAMIC,
                sync_status=SyncStatus.PENDING,
            )
            session.add(record)
            old_value = None
        else:
            old_value = point_record_at(record, address)
        if name == "*":
            previous = old_value

    return RecordWrite(pool.dns_domain_id, "*", previous)


def _validate_config(config: PoolConfig) -> list[str]:
    """Return the normalized schedule."""
    scheduled_times = [normalize_schedule_time(t) for t in config.scheduled_times]
    if config.rotation_mode == RotationMode.SCHEDULED and not scheduled_times:
        raise ValidationError("Scheduled rotation needs at least one HH:MM time")
    machine_ids = [member.machine_id for member in config.members]
    if len(set(machine_ids)) != len(machine_ids):
        raise ValidationError("Duplicate machine ids in pool members")
    return scheduled_times


def _apply_config(pool: PoolT, config: PoolConfig, scheduled_times: list[str]) -> None:
    pool.target_ip = config.target_ip
    pool.target_port = config.target_port
    pool.target_port_http = config.target_port_http
    pool.rotation_strategy = config.rotation_strategy
    pool.rotation_mode = config.rotation_mode
    pool.interval_minutes = config.interval_minutes
    pool.scheduled_times = scheduled_times
    pool.health_check_enabled = config.health_check_enabled
    pool.group_ids = list(config.group_ids)


async def _replace_members(
    session: AsyncSession,
    pool_type: PoolType,
    pool_id: int,
    members: list[PoolMemberConfig],
) -> None:
    member_model = MEMBER_MODELS[pool_type]
    await session.execute(delete(member_model).where(member_model.pool_id == pool_id))
    for position, member in enumerate(members):
        session.add(
            member_model(
                pool_id=pool_id,
                machine_id=member.machine_id,
                priority=position if member.priority is None else member.priority,
                is_enabled=member.enabled,
            )
        )
    await session.flush()


async def get_pool(session: AsyncSession, pool_type: PoolType, pool_id: int) -> PoolT:
    pool = await session.get(POOL_MODELS[pool_type], pool_id)
    if pool is None:
        raise NotFoundError(f"{pool_type.value.capitalize()} pool {pool_id} not found")
    return pool


async def get_record_pool(session: AsyncSession, record_id: int) -> RecordPool:
    result = await session.execute(
        select(RecordPool).where(RecordPool.dns_record_id == record_id)
    )
    pool = result.scalar_one_or_none()
    if pool is None:
        raise NotFoundError(f"No rotation pool for DNS record {record_id}")
    return pool


async def get_wildcard_pool(session: AsyncSession, domain_id: int) -> WildcardPool:
    result = await session.execute(
        select(WildcardPool).where(WildcardPool.dns_domain_id == domain_id)
    )
    pool = result.scalar_one_or_none()
    if pool is None:
        raise NotFoundError(f"No wildcard pool for domain {domain_id}")
    return pool


async def get_pool_members(
    session: AsyncSession, pool_type: PoolType, pool_id: int
) -> List[PoolMemberT]:
    member_model = MEMBER_MODELS[pool_type]
    result = await session.execute(
        select(member_model)
        .where(member_model.pool_id == pool_id)
        .order_by(member_model.priority, member_model.id)
    )
    return list(result.scalars().all())


async def list_active_pool_ids(session: AsyncSession, pool_type: PoolType) -> List[int]:
    """Ids of pools that are not paused, oldest first."""
    pool_model = POOL_MODELS[pool_type]
    result = await session.execute(
        select(pool_model.id)
        .where(pool_model.is_paused.is_(False))
        .order_by(pool_model.id)
    )
    return list(result.scalars().all())


async def resolve_pool(
    session: AsyncSession,
    pool_type: PoolType,
    pool: PoolT,
    freshness: timedelta = timedelta(minutes=5),
    now: Optional[datetime] = None,
) -> Resolution:
    """Resolve a pool's current candidates against the fleet tables.

    Only machines whose address fits the record type the pool writes are
    candidates.
    """
    if isinstance(pool, RecordPool):
        record_type = (await get_record(session, pool.dns_record_id)).record_type
    else:
        record_type = pool.record_type
    registry = SQLFleetRegistry(session)
    resolver = MembershipResolver(registry, registry, freshness)
    members = await get_pool_members(session, pool_type, pool.id)
    return await resolver.resolve(
        members, pool.group_ids or [], pool.health_check_enabled, now, record_type
    )


async def _assign_initial_target(
    session: AsyncSession,
    pool_type: PoolType,
    pool: PoolT,
    freshness: timedelta,
    ttl: int,
) -> None:
    # Pointing a new pool at its first machine is a configuration write,
    # not a rotation, so it leaves no history row.
    resolution = await resolve_pool(session, pool_type, pool, freshness)
    if not resolution.candidates:
        return
    first = resolution.candidates[0]
    if isinstance(pool, RecordPool):
        await write_record_pool_target(session, pool, first.address)
    else:
        await write_wildcard_pool_target(session, pool, first.address, ttl)
    pool.current_machine_id = first.machine_id
    pool.current_index = 0


async def upsert_record_pool(
    session: AsyncSession,
    record_id: int,
    config: PoolConfig,
    freshness: timedelta = timedelta(minutes=5),
) -> RecordPool:
    """Create or update the rotation pool bound to a desired record.

    Args:
        session: Database session
        record_id: Desired record the pool drives, must be A or AAAA
        config: Pool settings and members
        freshness: Health freshness window for picking the first target

    Returns:
        The saved pool

    Raises:
        NotFoundError: If the record does not exist
        ValidationError: If the record type or the schedule is invalid
    """
    record = await get_record(session, record_id)
    if record.record_type not in ADDRESS_RECORD_TYPES:
        raise ValidationError(
            f"Rotation pools can only drive A or AAAA records, not {record.record_type}"
        )
    scheduled_times = _validate_config(config)

    result = await session.execute(
        select(RecordPool).where(RecordPool.dns_record_id == record_id)
    )
    pool = result.scalar_one_or_none()
    if pool is None:
        pool = RecordPool(dns_record_id=record_id)
        session.add(pool)
    _apply_config(pool, config, scheduled_times)
    record.mode = RecordMode.DYNAMIC
    await session.flush()

    await _replace_members(session, PoolType.RECORD, pool.id, config.members)
    if pool.current_machine_id is None:
        await _assign_initial_target(
            session, PoolType.RECORD, pool, freshness, record.ttl
        )

    await session.commit()
    await session.refresh(pool)
    return pool


async def upsert_wildcard_pool(
    session: AsyncSession,
    domain_id: int,
    config: WildcardPoolConfig,
    freshness: timedelta = timedelta(minutes=5),
    ttl: int = 60,
) -> WildcardPool:
    """Create or update the wildcard pool of a domain.

    Args:
        session: Database session
        domain_id: Managed domain whose ``*`` (and ``@``) records are driven
        config: Pool settings and members
        freshness: Health freshness window for picking the first target
        ttl: TTL of wildcard records created by the pool

    Returns:
        The saved pool

    Raises:
        NotFoundError: If the domain does not exist
        ValidationError: If the schedule is invalid or the record type of an
            existing pool would change
    """
    await get_domain(session, domain_id)
    scheduled_times = _validate_config(config)

    result = await session.execute(
        select(WildcardPool).where(WildcardPool.dns_domain_id == domain_id)
    )
    pool = result.scalar_one_or_none()
    if pool is None:
        pool = WildcardPool(dns_domain_id=domain_id, record_type=config.record_type)
        session.add(pool)
    elif pool.record_type != config.record_type:
        raise ValidationError(
            f"Wildcard pool of domain {domain_id} writes {pool.record_type} records, "
            "delete and recreate it to switch address family"
        )
    _apply_config(pool, config, scheduled_times)
    pool.include_root = config.include_root
    await session.flush()

    await _replace_members(session, PoolType.WILDCARD, pool.id, config.members)
    if pool.current_machine_id is None:
        await _assign_initial_target(session, PoolType.WILDCARD, pool, freshness, ttl)

    await session.commit()
    await session.refresh(pool)
    return pool


async def delete_record_pool(session: AsyncSession, record_id: int) -> None:
    """Delete a record pool and return its record to static mode.

    The record keeps its last rotated value. History rows are kept.
    """
    pool = await get_record_pool(session, record_id)
    await session.execute(
        delete(RecordPoolMember).where(RecordPoolMember.pool_id == pool.id)
    )
    await session.delete(pool)
    record = await session.get(DNSRecord, record_id)
    if record is not None:
        record.mode = RecordMode.STATIC
    await session.commit()


async def delete_wildcard_pool(session: AsyncSession, domain_id: int) -> None:
    """Delete a wildcard pool and return its ``*`` and ``@`` records to static mode."""
    pool = await get_wildcard_pool(session, domain_id)
    await session.execute(
        delete(WildcardPoolMember).where(WildcardPoolMember.pool_id == pool.id)
    )
    await session.delete(pool)
    await session.execute(
        update(DNSRecord)
        .where(
            DNSRecord.domain_id == domain_id,
            DNSRecord.name.in_(["*", "@"]),
            DNSRecord.record_type.in_(ADDRESS_RECORD_TYPES),
            DNSRecord.mode == RecordMode.DYNAMIC,
        )
        .values(mode=RecordMode.STATIC)
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def set_pool_paused(
    session: AsyncSession, pool_type: PoolType, pool_id: int, paused: bool
) -> PoolT:
    """Pause or resume a pool. Records already written are left alone."""
    pool = await get_pool(session, pool_type, pool_id)
    pool.is_paused = paused
    await session.commit()
    await session.refresh(pool)
    return pool


async def record_pool_failure(
    session: AsyncSession, pool_type: PoolType, pool_id: int, message: str
) -> None:
    """Store the last rotation failure on a pool.

    Written without a version check so it never races a rotation.
    """
    pool_model = POOL_MODELS[pool_type]
    await session.execute(
        update(pool_model)
        .where(pool_model.id == pool_id)
        .values(last_error=message, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def list_history(
    session: AsyncSession, pool_type: PoolType, pool_id: int, limit: int = 50
) -> List[RotationHistory]:
    """Rotation history of a pool, newest first."""
    result = await session.execute(
        select(RotationHistory)
        .where(RotationHistory.pool_type == pool_type)
        .where(RotationHistory.pool_id == pool_id)
        .order_by(RotationHistory.rotated_at.desc(), RotationHistory.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
