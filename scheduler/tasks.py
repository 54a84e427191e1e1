import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from biomed.config import Settings, get_settings
from biomed.services.email_service import EmailService
from biomed.services.escalation_engine import EscalationEngine
from biomed.services.notification_service import NotificationDispatcher
from biomed.services.overdue import OverdueDetector
from biomed.services.scheduler import TaskScheduler
from biomed.utils.clock import SystemClock

logger = logging.getLogger(__name__)


class MaintenanceJobs:
    """The maintenance sweeps sharing one clock. Safe to re-run or overlap."""

    def __init__(self, session_factory, clock=None, email_sender=None):
        self.clock = clock or SystemClock()
        self.scheduler = TaskScheduler(session_factory, self.clock)
        self.overdue = OverdueDetector(session_factory)
        self.escalation = EscalationEngine(session_factory, NotificationDispatcher(email_sender))

    async def schedule_due(self):
        """Auto-schedule PM / calibration tasks for all assets."""
        try:
            result = await self.scheduler.schedule_due()
        except Exception:
            logger.exception("ScheduleDue sweep failed")
            return None
        for err in result.errors:
            logger.error(f"Asset {err.asset_id} ({err.kind.value}): {err.reason}")
        return result

    async def sweep_overdue(self):
        """Mark tasks past their scheduled date as overdue."""
        try:
            return await self.overdue.sweep_overdue(self.clock.now())
        except Exception:
            logger.exception("Overdue sweep failed")
            return None

    async def escalate(self):
        """Escalate overdue tasks: overdue sweep first, then rule evaluation."""
        await self.sweep_overdue()
        try:
            return await self.escalation.evaluate(self.clock.now())
        except Exception:
            logger.exception("Escalation sweep failed")
            return None


def build_scheduler(jobs: MaintenanceJobs, settings: Settings | None = None) -> AsyncIOScheduler:
    settings = settings or get_settings()
    tz = settings.timezone
    scheduler = AsyncIOScheduler(timezone=tz)
    job_defaults = {"max_instances": 1, "coalesce": True, "misfire_grace_time": 3600}

    # Auto-schedule: weekly, Monday 06:00 by default
    scheduler.add_job(
        jobs.schedule_due, CronTrigger.from_crontab(settings.schedule_due_cron, timezone=tz),
        id="schedule_due", **job_defaults,
    )

    # Overdue detection: daily at midnight
    scheduler.add_job(
        jobs.sweep_overdue, CronTrigger.from_crontab(settings.overdue_sweep_cron, timezone=tz),
        id="sweep_overdue", **job_defaults,
    )

    # Escalation check: every 6 hours
    scheduler.add_job(
        jobs.escalate, CronTrigger.from_crontab(settings.escalation_cron, timezone=tz),
        id="escalate", **job_defaults,
    )
    return scheduler


async def main():
    from biomed.db.session import async_session, init_db

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    await init_db()
    jobs = MaintenanceJobs(async_session, SystemClock(settings.timezone), EmailService(settings))
    scheduler = build_scheduler(jobs, settings)
    scheduler.start()
    logger.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")

    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
