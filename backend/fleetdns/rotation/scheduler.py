"""
Rotation scheduler - periodic control loop over all active pools.
"""

from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import RotationSettings
from ..dns.sync import DomainSyncService
from ..logger import log_exception, logger
from ..models import PoolType
from .crud import list_active_pool_ids
from .rotator import PoolRotator, SessionFactoryT
from .types import RotationResult

TICK_JOB_ID = "rotation_tick"
PUSH_JOB_ID = "push_pending_records"


class RotationScheduler:
    """
    Owns the APScheduler instance driving rotation ticks and the periodic
    push of pending records.

    Pools are evaluated one after another inside a tick, record pools first.
    A failing pool is logged and the tick moves on.
    """

    def __init__(
        self,
        session_factory: SessionFactoryT,
        rotator: PoolRotator,
        sync_service: Optional[DomainSyncService] = None,
        settings: Optional[RotationSettings] = None,
    ):
        self.session_factory = session_factory
        self.rotator = rotator
        self.sync_service = sync_service
        self.settings = settings or RotationSettings()
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        if self.scheduler.running:
            return

        self.scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self.settings.tick_interval_seconds),
            id=TICK_JOB_ID,
            name="Rotation tick",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        if self.sync_service is not None:
            self.scheduler.add_job(
                self.push_pending,
                trigger=IntervalTrigger(seconds=self.settings.reconcile_interval_seconds),
                id=PUSH_JOB_ID,
                name="Push pending DNS records",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        self.scheduler.start()
        logger.info(
            f"Rotation scheduler started, ticking every {self.settings.tick_interval_seconds}s"
        )

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Rotation scheduler stopped")

    async def tick(self, now: Optional[datetime] = None) -> list[RotationResult]:
        """Evaluate every active pool once.

        Args:
            now: Reference time, defaults to the current time

        Returns:
            Results of the pools that were evaluated without error
        """
        now = now or datetime.now(timezone.utc)
        results: list[RotationResult] = []
        for pool_type in (PoolType.RECORD, PoolType.WILDCARD):
            async with self.session_factory() as session:
                pool_ids = await list_active_pool_ids(session, pool_type)
            for pool_id in pool_ids:
                result = await self._evaluate_pool(pool_type, pool_id, now)
                if result is not None:
                    results.append(result)
        return results

    @log_exception("Rotation of {pool_type} pool {pool_id} failed")
    async def _evaluate_pool(
        self, pool_type: PoolType, pool_id: int, now: datetime
    ) -> RotationResult:
        return await self.rotator.evaluate(pool_type, pool_id, now)

    @log_exception("Periodic push of pending records failed")
    async def push_pending(self) -> None:
        if self.sync_service is None:
            return
        result = await self.sync_service.push_pending()
        if result.pushed or result.failed:
            logger.info(
                f"Pushed {result.pushed} pending records, {result.failed} failed"
            )
