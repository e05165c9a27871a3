"""
Automated task scheduler for the ledger sync service.

Background jobs:
- One sync job per provider (runs a cycle for every active partner config)
- Game session state monitor
- Operator balance refresh

Scheduler: APScheduler (lightweight, FastAPI-compatible)

Every job is wrapped in a ``SyncJob`` so that a tick arriving while the
previous run is still in flight is dropped instead of queued.
"""
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ledger_sync.core.config import settings
from ledger_sync.core.database import SessionLocal
from ledger_sync.core.logging import get_logger
from ledger_sync.core.metrics import scheduler_ticks_skipped_total, update_scheduler_metrics
from ledger_sync.services.providers import SUPPORTED_PROVIDERS
from ledger_sync.services.sync.orchestrator import SyncEngine
from ledger_sync.services.sync.session_monitor import SessionStateMonitor
from ledger_sync.utils.timezone import utc_now

logger = get_logger(__name__)

JobFunc = Callable[[], Awaitable[None]]


class SyncJob:
    """A periodic job with an in-flight guard."""

    def __init__(self, job_id: str, interval_seconds: float, func: JobFunc, name: Optional[str] = None):
        self.job_id = job_id
        self.interval_seconds = interval_seconds
        self.func = func
        self.name = name or job_id
        self.in_flight = False
        self.last_started_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    async def tick(self) -> bool:
        """
        Run the job once unless it is already running.

        Returns:
            True if the job ran, False if the tick was skipped
        """
        if self.in_flight:
            scheduler_ticks_skipped_total.labels(job_id=self.job_id).inc()
            logger.debug(f"Job {self.job_id} still running; tick skipped")
            return False

        self.in_flight = True
        self.last_started_at = utc_now()
        try:
            await self.func()
            self.last_error = None
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"❌ Job {self.job_id} failed: {e}")
        finally:
            self.in_flight = False
        return True


def _provider_sync_job(api_type: str) -> JobFunc:
    async def run():
        db = SessionLocal()
        try:
            results = await SyncEngine(db).sync_all(api_type)
            failed = sum(1 for r in results if r.status == "failed")
            if failed:
                logger.warning(f"[{api_type}] {failed}/{len(results)} partner cycles failed")
        finally:
            db.close()
    return run


async def _session_monitor_job():
    db = SessionLocal()
    try:
        counts = SessionStateMonitor(db).run()
        if counts["activated"] or counts["paused"]:
            logger.info(f"Session monitor: {counts['activated']} activated, {counts['paused']} paused")
    finally:
        db.close()


async def _operator_balance_job():
    db = SessionLocal()
    try:
        await SyncEngine(db).refresh_operator_balances()
    finally:
        db.close()


class AutomationScheduler:
    """
    Main scheduler for automated background tasks.

    Jobs are registered up front; ``start()`` hands them to APScheduler and
    ``tick(job_id)`` runs one directly (tests and manual triggers).
    """

    def __init__(self, register_defaults: bool = True):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.running = False
        self.jobs: Dict[str, SyncJob] = {}
        if register_defaults:
            self._register_default_jobs()

    def register(self, job: SyncJob) -> SyncJob:
        self.jobs[job.job_id] = job
        return job

    async def tick(self, job_id: str) -> bool:
        """Run one tick of a registered job (KeyError for unknown ids)."""
        return await self.jobs[job_id].tick()

    def _register_default_jobs(self):
        for api_type in SUPPORTED_PROVIDERS:
            self.register(SyncJob(
                f"sync_{api_type}",
                settings.sync_interval_for(api_type),
                _provider_sync_job(api_type),
                name=f"Sync {api_type} bet history",
            ))
        self.register(SyncJob(
            "session_monitor", settings.SESSION_MONITOR_INTERVAL, _session_monitor_job,
            name="Game session state monitor",
        ))
        self.register(SyncJob(
            "operator_balances", settings.OPERATOR_BALANCE_INTERVAL, _operator_balance_job,
            name="Refresh operator balances",
        ))

    async def start(self):
        """Start the scheduler."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        logger.info("Starting automation scheduler...")

        self.scheduler = AsyncIOScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,  # Combine missed runs into one
                "max_instances": 1,  # Only one instance of each job
                "misfire_grace_time": 30,
            }
        )

        for job in self.jobs.values():
            self.scheduler.add_job(
                job.tick,
                trigger=IntervalTrigger(seconds=job.interval_seconds),
                id=job.job_id,
                name=job.name,
            )

        self.scheduler.start()
        self.running = True
        update_scheduler_metrics()

        logger.info("✅ Scheduler started with %d jobs", len(self.jobs))
        self._log_scheduled_jobs()

    async def stop(self):
        """Stop the scheduler."""
        if not self.running:
            return

        logger.info("Stopping scheduler...")
        self.scheduler.shutdown(wait=False)
        self.running = False
        update_scheduler_metrics()
        logger.info("✅ Scheduler stopped")

    def status(self) -> Dict:
        return {
            "running": self.running,
            "jobs": {
                job.job_id: {
                    "name": job.name,
                    "interval_seconds": job.interval_seconds,
                    "in_flight": job.in_flight,
                    "last_started_at": job.last_started_at.isoformat() if job.last_started_at else None,
                    "last_error": job.last_error,
                }
                for job in self.jobs.values()
            },
        }

    def _log_scheduled_jobs(self):
        """Log all scheduled jobs for visibility."""
        logger.info("=" * 60)
        logger.info("SCHEDULED AUTOMATION JOBS")
        logger.info("=" * 60)
        for job in self.jobs.values():
            logger.info(f"  • {job.name} ({job.job_id}) every {job.interval_seconds}s")
        logger.info("=" * 60)


# Global scheduler instance
_scheduler: Optional[AutomationScheduler] = None


async def start_scheduler():
    """Start the global scheduler."""
    global _scheduler
    if _scheduler is None:
        _scheduler = AutomationScheduler()
        await _scheduler.start()
    return _scheduler


async def stop_scheduler():
    """Stop the global scheduler."""
    global _scheduler
    if _scheduler is not None:
        await _scheduler.stop()
        _scheduler = None


def get_scheduler() -> Optional[AutomationScheduler]:
    """Get the global scheduler instance."""
    return _scheduler
