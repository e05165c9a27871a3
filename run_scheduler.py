#!/usr/bin/env python3
"""
Background runner for the ledger sync automation scheduler.

Runs the scheduler as a standalone service, without the admin API.
It can be run via systemd, supervisor, or directly.

Usage:
    python run_scheduler.py                       # Run in foreground
    python run_scheduler.py --list-jobs           # Show registered jobs
    python run_scheduler.py --trigger sync_invest # Run one job once and exit
"""
import argparse
import asyncio
import signal
import sys

from ledger_sync.core.config import settings
from ledger_sync.core.logging import configure_logging, get_logger
from ledger_sync.core.scheduler import AutomationScheduler
from ledger_sync.services.core.rate_limiter import reset_rate_limiters

configure_logging(level=settings.LOG_LEVEL, json_output=settings.LOG_JSON)
logger = get_logger(__name__)


class SchedulerRunner:
    """Runner for the automation scheduler."""

    def __init__(self):
        self.scheduler = AutomationScheduler()
        self.shutdown = asyncio.Event()

    async def start(self):
        """Start the scheduler and run until a shutdown signal arrives."""
        logger.info("🚀 Starting scheduler runner...")
        await self.scheduler.start()
        logger.info("Press Ctrl+C to stop")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._set_shutdown)

        await self.shutdown.wait()

        await self.scheduler.stop()
        reset_rate_limiters()
        logger.info("✅ Scheduler runner stopped")

    def _set_shutdown(self):
        logger.info("⏹️  Shutdown signal received")
        self.shutdown.set()


async def run_trigger_job(job_id: str) -> bool:
    """Run one tick of a job in this process."""
    scheduler = AutomationScheduler()
    if job_id not in scheduler.jobs:
        print(f"❌ Job '{job_id}' not found. Available: {', '.join(scheduler.jobs)}")
        return False

    print(f"🔄 Triggering job: {scheduler.jobs[job_id].name}")
    await scheduler.tick(job_id)
    error = scheduler.jobs[job_id].last_error
    if error:
        print(f"❌ Job '{job_id}' failed: {error}")
        return False
    print(f"✅ Job '{job_id}' completed")
    return True


def list_jobs():
    """Print the registered jobs."""
    scheduler = AutomationScheduler()
    print("=" * 60)
    print("SCHEDULED AUTOMATION JOBS")
    print("=" * 60)
    for job in scheduler.jobs.values():
        print(f"📋 {job.name}")
        print(f"   ID: {job.job_id}")
        print(f"   Every: {job.interval_seconds}s")
        print()
    print("=" * 60)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Run the ledger sync automation scheduler')
    parser.add_argument('--trigger', type=str, metavar='JOB_ID', help='Run a single job once and exit')
    parser.add_argument('--list-jobs', action='store_true', help='List all scheduled jobs and exit')
    args = parser.parse_args()

    if args.list_jobs:
        list_jobs()
        return 0

    if args.trigger:
        return 0 if asyncio.run(run_trigger_job(args.trigger)) else 1

    try:
        asyncio.run(SchedulerRunner().start())
    except Exception as e:
        logger.error(f"❌ Scheduler error: {e}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
