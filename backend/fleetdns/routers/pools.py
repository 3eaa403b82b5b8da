"""
Rotation pool API endpoints.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..db.database import get_db
from ..dependencies import RotatorDep, verify_master_token
from ..fleet.registry import SQLFleetRegistry
from ..models import PoolType, RotationHistory
from ..rotation import crud
from ..rotation.crud import PoolT
from ..rotation.membership import CandidateSource, is_fresh
from ..rotation.types import PoolConfig, RotationResult, WildcardPoolConfig

router = APIRouter(tags=["pools"], dependencies=[Depends(verify_master_token)])


class PoolMemberResponse(BaseModel):
    machine_id: int
    name: Optional[str]
    address: Optional[str]
    priority: Optional[int]
    is_enabled: bool
    is_online: bool
    source: CandidateSource


class PoolResponse(BaseModel):
    id: int
    pool_type: PoolType
    dns_record_id: Optional[int] = None
    dns_domain_id: Optional[int] = None
    include_root: Optional[bool] = None
    # Address family written by a wildcard pool
    record_type: Optional[str] = None
    target_ip: str
    target_port: int
    target_port_http: int
    rotation_strategy: str
    rotation_mode: str
    interval_minutes: int
    scheduled_times: List[str]
    health_check_enabled: bool
    group_ids: List[int]
    current_machine_id: Optional[int]
    current_index: int
    is_paused: bool
    last_rotated_at: Optional[datetime]
    last_error: Optional[str]
    members: List[PoolMemberResponse]
    # Machine ids the next rotation would choose from, in order
    candidates: List[int]
    health_fallback: bool


class RotationResponse(BaseModel):
    pool_type: PoolType
    pool_id: int
    decision: str
    trigger: Optional[str]
    from_machine_id: Optional[int]
    to_machine_id: Optional[int]
    to_ip: Optional[str]
    rotated_at: Optional[datetime]


class RotationHistoryResponse(BaseModel):
    id: int
    pool_type: PoolType
    pool_id: int
    dns_domain_id: Optional[int]
    record_name: Optional[str]
    from_machine_id: Optional[int]
    from_ip: Optional[str]
    to_machine_id: int
    to_ip: str
    trigger: str
    rotated_at: datetime


def _freshness() -> timedelta:
    return timedelta(seconds=settings.rotation.health_freshness_seconds)


async def _pool_response(
    session: AsyncSession, pool_type: PoolType, pool: PoolT
) -> PoolResponse:
    resolution = await crud.resolve_pool(session, pool_type, pool, _freshness())
    member_rows = await crud.get_pool_members(session, pool_type, pool.id)
    machines = await SQLFleetRegistry(session).get_machines(
        [row.machine_id for row in member_rows]
    )
    now = datetime.now(timezone.utc)

    members = []
    for row in member_rows:
        machine = machines.get(row.machine_id)
        members.append(
            PoolMemberResponse(
                machine_id=row.machine_id,
                name=machine.name if machine else None,
                address=machine.address if machine else None,
                priority=row.priority,
                is_enabled=row.is_enabled,
                is_online=bool(machine)
                and is_fresh(machine.last_seen, now, _freshness()),
                source=CandidateSource.MEMBER,
            )
        )
    for candidate in resolution.all_candidates:
        if candidate.source == CandidateSource.GROUP:
            members.append(
                PoolMemberResponse(
                    machine_id=candidate.machine_id,
                    name=candidate.name,
                    address=candidate.address,
                    priority=None,
                    is_enabled=True,
                    is_online=candidate.is_online,
                    source=CandidateSource.GROUP,
                )
            )

    return PoolResponse(
        id=pool.id,
        pool_type=pool_type,
        dns_record_id=getattr(pool, "dns_record_id", None),
        dns_domain_id=getattr(pool, "dns_domain_id", None),
        include_root=getattr(pool, "include_root", None),
        record_type=getattr(pool, "record_type", None),
        target_ip=pool.target_ip,
        target_port=pool.target_port,
        target_port_http=pool.target_port_http,
        rotation_strategy=pool.rotation_strategy.value,
        rotation_mode=pool.rotation_mode.value,
        interval_minutes=pool.interval_minutes,
        scheduled_times=list(pool.scheduled_times or []),
        health_check_enabled=pool.health_check_enabled,
        group_ids=list(pool.group_ids or []),
        current_machine_id=pool.current_machine_id,
        current_index=pool.current_index,
        is_paused=pool.is_paused,
        last_rotated_at=pool.last_rotated_at,
        last_error=pool.last_error,
        members=members,
        candidates=[c.machine_id for c in resolution.candidates],
        health_fallback=resolution.fell_back,
    )


def _rotation_response(result: RotationResult) -> RotationResponse:
    return RotationResponse(
        pool_type=result.pool_type,
        pool_id=result.pool_id,
        decision=result.decision.value,
        trigger=result.trigger.value if result.trigger else None,
        from_machine_id=result.from_machine_id,
        to_machine_id=result.to_machine_id,
        to_ip=result.to_ip,
        rotated_at=result.rotated_at,
    )


def _history_response(entry: RotationHistory) -> RotationHistoryResponse:
    return RotationHistoryResponse(
        id=entry.id,
        pool_type=entry.pool_type,
        pool_id=entry.pool_id,
        dns_domain_id=entry.dns_domain_id,
        record_name=entry.record_name,
        from_machine_id=entry.from_machine_id,
        from_ip=entry.from_ip,
        to_machine_id=entry.to_machine_id,
        to_ip=entry.to_ip,
        trigger=entry.trigger.value,
        rotated_at=entry.rotated_at,
    )


# Record pools


@router.get("/records/{record_id}/pool", response_model=PoolResponse)
async def get_record_pool(record_id: int, session: AsyncSession = Depends(get_db)):
    pool = await crud.get_record_pool(session, record_id)
    return await _pool_response(session, PoolType.RECORD, pool)


@router.put("/records/{record_id}/pool", response_model=PoolResponse)
async def put_record_pool(
    record_id: int, config: PoolConfig, session: AsyncSession = Depends(get_db)
):
    """Create or update the rotation pool of an A/AAAA record.

    A new pool is pointed at its first candidate right away.
    """
    pool = await crud.upsert_record_pool(session, record_id, config, _freshness())
    return await _pool_response(session, PoolType.RECORD, pool)


@router.delete("/records/{record_id}/pool", status_code=status.HTTP_204_NO_CONTENT)
async def delete_record_pool(record_id: int, session: AsyncSession = Depends(get_db)):
    await crud.delete_record_pool(session, record_id)


# Wildcard pools


@router.get("/domains/{domain_id}/wildcard-pool", response_model=PoolResponse)
async def get_wildcard_pool(domain_id: int, session: AsyncSession = Depends(get_db)):
    pool = await crud.get_wildcard_pool(session, domain_id)
    return await _pool_response(session, PoolType.WILDCARD, pool)


@router.put("/domains/{domain_id}/wildcard-pool", response_model=PoolResponse)
async def put_wildcard_pool(
    domain_id: int,
    config: WildcardPoolConfig,
    session: AsyncSession = Depends(get_db),
):
    pool = await crud.upsert_wildcard_pool(
        session,
        domain_id,
        config,
        _freshness(),
        settings.rotation.default_record_ttl,
    )
    return await _pool_response(session, PoolType.WILDCARD, pool)


@router.delete(
    "/domains/{domain_id}/wildcard-pool", status_code=status.HTTP_204_NO_CONTENT
)
async def delete_wildcard_pool(domain_id: int, session: AsyncSession = Depends(get_db)):
    await crud.delete_wildcard_pool(session, domain_id)


# Operations shared by both pool types


@router.get("/pools/{pool_type}/{pool_id}", response_model=PoolResponse)
async def get_pool(
    pool_type: PoolType, pool_id: int, session: AsyncSession = Depends(get_db)
):
    pool = await crud.get_pool(session, pool_type, pool_id)
    return await _pool_response(session, pool_type, pool)


@router.post("/pools/{pool_type}/{pool_id}/rotate", response_model=RotationResponse)
async def rotate_pool(pool_type: PoolType, pool_id: int, rotator: RotatorDep):
    """Rotate a pool now, regardless of its schedule or paused flag."""
    result = await rotator.rotate(pool_type, pool_id)
    return _rotation_response(result)


@router.post("/pools/{pool_type}/{pool_id}/pause", response_model=PoolResponse)
async def pause_pool(
    pool_type: PoolType, pool_id: int, session: AsyncSession = Depends(get_db)
):
    pool = await crud.set_pool_paused(session, pool_type, pool_id, True)
    return await _pool_response(session, pool_type, pool)


@router.post("/pools/{pool_type}/{pool_id}/resume", response_model=PoolResponse)
async def resume_pool(
    pool_type: PoolType, pool_id: int, session: AsyncSession = Depends(get_db)
):
    pool = await crud.set_pool_paused(session, pool_type, pool_id, False)
    return await _pool_response(session, pool_type, pool)


@router.get(
    "/pools/{pool_type}/{pool_id}/history",
    response_model=List[RotationHistoryResponse],
)
async def get_pool_history(
    pool_type: PoolType,
    pool_id: int,
    limit: int = Query(default=settings.dns.history_limit, ge=1, le=500),
    session: AsyncSession = Depends(get_db),
):
    """Rotation history of a pool, newest first."""
    await crud.get_pool(session, pool_type, pool_id)
    history = await crud.list_history(session, pool_type, pool_id, limit)
    return [_history_response(entry) for entry in history]
