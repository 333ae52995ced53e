"""
Scheduler Service

Periodic jobs:
- alert sync for every tenant (ALERT_SYNC_INTERVAL_MINUTES)
- full Meta sync for every connected tenant (META_SYNC_INTERVAL_HOURS)

Single-leader election via Postgres advisory locks:
- Only the instance that acquires the lock executes the tick
- Other instances silently skip
- Controlled by SCHEDULER_ENABLED env (default: true)
"""
from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from adboard.models import MetaIntegration, User
from adboard.settings import get_settings

logger = logging.getLogger("scheduler")

# Advisory lock keys (arbitrary int64, unique per job type)
LOCK_ALERT_SYNC = 910_001
LOCK_META_SYNC = 910_002


class SchedulerService:
    """Runs the alert engine and the Meta sync on an interval.

    Uses Postgres pg_try_advisory_lock on each tick so that only
    one backend instance (the leader) executes the job while
    other instances skip silently.
    """

    _instance: "SchedulerService | None" = None

    def __init__(self):
        self.scheduler = AsyncIOScheduler()
        self._session_factory: async_sessionmaker | None = None
        self._running = False

    @classmethod
    def get_instance(cls) -> "SchedulerService":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def configure(self, database_url: str):
        engine = create_async_engine(database_url, echo=False, pool_pre_ping=True)
        self._session_factory = async_sessionmaker(engine, expire_on_commit=False)

    async def _get_session(self) -> AsyncSession:
        if not self._session_factory:
            self.configure(get_settings().async_database_url)
        return self._session_factory()

    async def _try_advisory_lock(self, session: AsyncSession, lock_key: int) -> bool:
        """Try to acquire a Postgres session-level advisory lock (non-blocking).

        The lock is released explicitly after the job, or when the connection closes.
        """
        result = await session.execute(text(f"SELECT pg_try_advisory_lock({lock_key})"))
        return bool(result.scalar())

    async def _release_advisory_lock(self, session: AsyncSession, lock_key: int):
        await session.execute(text(f"SELECT pg_advisory_unlock({lock_key})"))

    def start(self):
        """Start the scheduler (respects SCHEDULER_ENABLED env)."""
        settings = get_settings()
        if not settings.scheduler_enabled:
            logger.info("Scheduler DISABLED by SCHEDULER_ENABLED=false, skipping start")
            return
        if self._running:
            return

        self.scheduler.add_job(
            self._run_alert_sync,
            IntervalTrigger(minutes=settings.alert_sync_interval_minutes),
            id="alert_sync",
            name="Regenerate alerts",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._run_meta_sync,
            IntervalTrigger(hours=settings.meta_sync_interval_hours),
            id="meta_sync",
            name="Sync Meta accounts, campaigns and snapshots",
            replace_existing=True,
        )

        self.scheduler.start()
        self._running = True
        logger.info("Scheduler started (single-leader mode via advisory locks)")

    def stop(self):
        if not self._running:
            return
        self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self._running

    async def _run_alert_sync(self):
        """Regenerate alerts for every tenant.

        Protected by advisory lock, only one instance executes per tick.
        """
        async with await self._get_session() as session:
            if not await self._try_advisory_lock(session, LOCK_ALERT_SYNC):
                logger.debug("[alert_sync] Advisory lock not acquired, another instance is leader; skipping tick")
                return None
            try:
                logger.info("[alert_sync] LEADER, running alert sync")
                from adboard.services.alert_engine import run_alert_sync

                user_ids = (await session.execute(select(User.id))).scalars().all()
                created = 0
                for user_id in user_ids:
                    try:
                        result = await run_alert_sync(session, user_id)
                        created += result.created
                    except Exception as e:
                        logger.error("[alert_sync] Failed for user %d: %s", user_id, e)
                logger.info("[alert_sync] Completed: %d users, %d alerts", len(user_ids), created)
                return {"users": len(user_ids), "created": created}
            finally:
                await self._release_advisory_lock(session, LOCK_ALERT_SYNC)

    async def _run_meta_sync(self):
        """Full Meta sync for every connected tenant.

        Protected by advisory lock, only one instance executes per tick.
        """
        async with await self._get_session() as session:
            if not await self._try_advisory_lock(session, LOCK_META_SYNC):
                logger.debug("[meta_sync] Advisory lock not acquired, another instance is leader; skipping tick")
                return None
            try:
                logger.info("[meta_sync] LEADER, running Meta sync")
                from adboard.services.meta_sync import run_full_sync

                integrations = (await session.execute(select(MetaIntegration))).scalars().all()
                user_ids = [i.user_id for i in integrations if i.is_connected]
                synced = 0
                errors = []
                for user_id in user_ids:
                    try:
                        await run_full_sync(session, user_id)
                        synced += 1
                    except Exception as e:
                        logger.error("[meta_sync] Failed for user %d: %s", user_id, e)
                        errors.append({"user_id": user_id, "error": str(e)})
                logger.info("[meta_sync] Completed: %d synced, %d errors", synced, len(errors))
                return {"synced": synced, "errors": errors}
            finally:
                await self._release_advisory_lock(session, LOCK_META_SYNC)


scheduler_service = SchedulerService.get_instance()
