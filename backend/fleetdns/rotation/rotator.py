"""
Pool rotation

One decision routine serves the scheduler tick and the manual trigger:
resolve membership, select the next target, write the desired record(s) and
append history.
"""

import asyncio
import random
import weakref
from datetime import datetime, timedelta, timezone
from typing import AsyncContextManager, Callable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from ..config import RotationSettings
from ..errors import FleetDNSError, NotFoundError, RaceConditionError
from ..logger import logger
from ..models import PoolType, RecordPool, RotationHistory, RotationTrigger
from .crud import (
    get_pool,
    record_pool_failure,
    resolve_pool,
    write_record_pool_target,
    write_wildcard_pool_target,
)
from .membership import Resolution
from .strategy import is_due, select_next
from .types import PoolKey, RotationDecision, RotationResult

SessionFactoryT = Callable[[], AsyncContextManager[AsyncSession]]
PendingCallbackT = Callable[[int], None]


class PoolRotator:
    """Decides and applies rotations for record pools and wildcard pools.

    Each pool is guarded by an in-process lock, and pool rows carry a version
    counter so a concurrent writer in another session is detected at commit.
    """

    def __init__(
        self,
        session_factory: SessionFactoryT,
        settings: Optional[RotationSettings] = None,
        rng: Optional[random.Random] = None,
        on_records_pending: Optional[PendingCallbackT] = None,
    ):
        """Initialize the rotator.

        Args:
            session_factory: Returns a new AsyncSession context manager
            settings: Rotation settings, defaults apply when omitted
            rng: Random source for the random strategy
            on_records_pending: Called with the domain id after a rotation
                marked records pending
        """
        self.session_factory = session_factory
        self.settings = settings or RotationSettings()
        self.rng = rng or random.Random()
        self.on_records_pending = on_records_pending
        self.freshness = timedelta(seconds=self.settings.health_freshness_seconds)
        self.debounce = timedelta(seconds=self.settings.schedule_debounce_seconds)
        self.timezone = ZoneInfo(self.settings.schedule_timezone)
        # Locks live only while a rotation holds or waits on them
        self._locks: weakref.WeakValueDictionary[PoolKey, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, key: PoolKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def evaluate(
        self, pool_type: PoolType, pool_id: int, now: Optional[datetime] = None
    ) -> RotationResult:
        """Scheduler path: rotate only when due or when health demands it."""
        return await self._run(pool_type, pool_id, now, trigger=None)

    async def rotate(
        self,
        pool_type: PoolType,
        pool_id: int,
        trigger: RotationTrigger = RotationTrigger.MANUAL,
        now: Optional[datetime] = None,
    ) -> RotationResult:
        """Manual path: rotate now, skipping the due check.

        Raises:
            NotFoundError: If the pool does not exist
            NoEligibleMembersError: If no machine can be selected
            RaceConditionError: If the pool changed concurrently
        """
        return await self._run(pool_type, pool_id, now, trigger=trigger)

    async def _run(
        self,
        pool_type: PoolType,
        pool_id: int,
        now: Optional[datetime],
        trigger: Optional[RotationTrigger],
    ) -> RotationResult:
        now = now or datetime.now(timezone.utc)
        try:
            async with self._lock_for(PoolKey(pool_type, pool_id)):
                result, domain_id = await self._decide_and_apply(
                    pool_type, pool_id, now, trigger
                )
        except (NotFoundError, RaceConditionError):
            raise
        except FleetDNSError as e:
            async with self.session_factory() as session:
                await record_pool_failure(session, pool_type, pool_id, e.message)
            raise

        if result.decision == RotationDecision.ROTATED:
            logger.info(
                f"Rotated {pool_type.value} pool {pool_id} "
                f"from machine {result.from_machine_id} to {result.to_machine_id} "
                f"({result.to_ip}, trigger={result.trigger.value if result.trigger else None})"
            )
            if self.on_records_pending is not None and domain_id is not None:
                self.on_records_pending(domain_id)
        return result

    def _health_trigger(self, current_machine_id: Optional[int], resolution: Resolution) -> bool:
        if not resolution.health_filtered:
            return False
        return current_machine_id not in {c.machine_id for c in resolution.candidates}

    async def _decide_and_apply(
        self,
        pool_type: PoolType,
        pool_id: int,
        now: datetime,
        trigger: Optional[RotationTrigger],
    ) -> tuple[RotationResult, Optional[int]]:
        async with self.session_factory() as session:
            pool = await get_pool(session, pool_type, pool_id)
            not_due = RotationResult(pool_type, pool_id, RotationDecision.NOT_DUE)

            if trigger is None and pool.is_paused:
                return not_due, None

            resolution = await resolve_pool(session, pool_type, pool, self.freshness, now)

            if trigger is None:
                if is_due(
                    pool.rotation_mode,
                    pool.interval_minutes,
                    pool.scheduled_times or [],
                    pool.last_rotated_at,
                    now,
                    self.debounce,
                    self.timezone,
                ):
                    trigger = RotationTrigger.SCHEDULED
                elif pool.health_check_enabled and self._health_trigger(
                    pool.current_machine_id, resolution
                ):
                    trigger = RotationTrigger.HEALTH
                else:
                    return not_due, None

            index, target = select_next(
                resolution.candidates, pool.rotation_strategy, pool.current_index, self.rng
            )

            if target.machine_id == pool.current_machine_id:
                pool.last_rotated_at = now
                await self._commit(session, pool_type, pool_id)
                return (
                    RotationResult(
                        pool_type,
                        pool_id,
                        RotationDecision.UNCHANGED,
                        trigger=trigger,
                        from_machine_id=pool.current_machine_id,
                        to_machine_id=target.machine_id,
                        to_ip=target.address,
                        rotated_at=now,
                    ),
                    None,
                )

            if isinstance(pool, RecordPool):
                written = await write_record_pool_target(session, pool, target.address)
            else:
                written = await write_wildcard_pool_target(
                    session, pool, target.address, self.settings.default_record_ttl
                )

            from_machine_id = pool.current_machine_id
            pool.current_machine_id = target.machine_id
            pool.current_index = index
            pool.last_rotated_at = now
            pool.last_error = None
            session.add(
                RotationHistory(
                    pool_type=pool_type,
                    pool_id=pool_id,
                    dns_domain_id=written.domain_id,
                    record_name=written.record_name,
                    from_machine_id=from_machine_id,
                    from_ip=written.previous_value,
                    to_machine_id=target.machine_id,
                    to_ip=target.address,
                    trigger=trigger,
                    rotated_at=now,
                )
            )
            await self._commit(session, pool_type, pool_id)

            return (
                RotationResult(
                    pool_type,
                    pool_id,
                    RotationDecision.ROTATED,
                    trigger=trigger,
                    from_machine_id=from_machine_id,
                    to_machine_id=target.machine_id,
                    to_ip=target.address,
                    rotated_at=now,
                ),
                written.domain_id,
            )

    async def _commit(self, session: AsyncSession, pool_type: PoolType, pool_id: int) -> None:
        try:
            await session.commit()
        except StaleDataError as e:
            await session.rollback()
            raise RaceConditionError(
                f"{pool_type.value.capitalize()} pool {pool_id} was modified concurrently, retry the rotation"
            ) from e
