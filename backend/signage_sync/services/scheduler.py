"""
Scheduler service for periodic publish maintenance.

Jobs:
- watchdog: fail stale outbox rows and upload jobs

Single-leader election via Postgres advisory locks: only the instance that
acquires the lock runs a tick, the others skip. Non-Postgres databases (tests,
local sqlite) run every tick unguarded. Controlled by SCHEDULER_ENABLED.
"""
from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from signage_sync.services.watchdog_service import run_watchdog
from signage_sync.settings import get_settings

logger = logging.getLogger("scheduler")

# Advisory lock keys (arbitrary int64, unique per job type)
LOCK_WATCHDOG = 910_001


class SchedulerService:
    _instance: "SchedulerService | None" = None

    def __init__(self):
        self.scheduler = AsyncIOScheduler()
        self._session_factory: async_sessionmaker | None = None
        self._database_url: str | None = None
        self._running = False

    @classmethod
    def get_instance(cls) -> "SchedulerService":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def configure(self, database_url: str):
        engine = create_async_engine(database_url, echo=False)
        self._database_url = database_url
        self._session_factory = async_sessionmaker(engine, expire_on_commit=False)

    def _get_session(self) -> AsyncSession:
        if not self._session_factory:
            self.configure(get_settings().async_database_url)
        return self._session_factory()

    @property
    def _uses_advisory_locks(self) -> bool:
        return bool(self._database_url and self._database_url.startswith("postgresql"))

    async def _try_advisory_lock(self, session: AsyncSession, lock_key: int) -> bool:
        """Non-blocking session-level lock; released when the connection closes."""
        if not self._uses_advisory_locks:
            return True
        result = await session.execute(text(f"SELECT pg_try_advisory_lock({lock_key})"))
        return bool(result.scalar())

    async def _release_advisory_lock(self, session: AsyncSession, lock_key: int):
        if self._uses_advisory_locks:
            await session.execute(text(f"SELECT pg_advisory_unlock({lock_key})"))

    def start(self):
        settings = get_settings()
        if not settings.scheduler_enabled:
            logger.info("Scheduler DISABLED by SCHEDULER_ENABLED=false, skipping start")
            return
        if self._running:
            return

        if settings.watchdog_enabled:
            self.scheduler.add_job(
                self.run_watchdog_tick,
                IntervalTrigger(minutes=settings.watchdog_interval_minutes),
                id="publish_watchdog",
                name="Release stale publish work",
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

    async def run_watchdog_tick(self) -> dict | None:
        async with self._get_session() as session:
            acquired = await self._try_advisory_lock(session, LOCK_WATCHDOG)
            if not acquired:
                logger.debug("[watchdog] Advisory lock not acquired, another instance is leader")
                return None
            try:
                report = await run_watchdog(session)
                if report["items"]:
                    logger.info(
                        f"[watchdog] tick: outbox={report['stale_outbox']} upload_jobs={report['stale_upload_jobs']}"
                    )
                return report
            except Exception:
                logger.exception("[watchdog] tick failed")
                return None
            finally:
                await self._release_advisory_lock(session, LOCK_WATCHDOG)


def get_scheduler() -> SchedulerService:
    return SchedulerService.get_instance()
