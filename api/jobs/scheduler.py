import asyncio
import logging
from typing import Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from api.jobs.escalation import EscalationJob
from api.jobs.heat_alert import HeatAlertJob
from lib.config import Settings

logger = logging.getLogger(__name__)


class JobScheduler:
    """Runs the heat alert job hourly and the escalation job every five minutes"""

    def __init__(self, settings: Settings, heat_job: HeatAlertJob, escalation_job: EscalationJob,
                 scheduler: Optional[BackgroundScheduler] = None):
        self.settings = settings
        self.jobs = {heat_job.name: heat_job, escalation_job.name: escalation_job}
        self.scheduler = scheduler or BackgroundScheduler(timezone=settings.timezone)
        self.scheduler.add_job(self._run_heat_alert, 'cron', minute=0, id=heat_job.name,
                               max_instances=1, coalesce=True, replace_existing=True)
        self.scheduler.add_job(self._run_escalation, 'interval', minutes=5, id=escalation_job.name,
                               max_instances=1, coalesce=True, replace_existing=True)

    @property
    def is_running(self) -> bool:
        return self.scheduler.running

    def _run(self, name: str) -> None:
        # APScheduler worker threads have no event loop of their own
        try:
            asyncio.run(self.jobs[name].execute())
        except Exception as e:
            logger.error(f"Scheduled job {name} failed: {str(e)}", exc_info=True)

    def _run_heat_alert(self) -> None:
        self._run('heat_alert')

    def _run_escalation(self) -> None:
        self._run('escalation')

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Job scheduler started")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Job scheduler stopped")

    async def run_now(self, name: str, **kwargs) -> dict:
        job = self.jobs.get(name)
        if job is None:
            raise KeyError(name)
        logger.info(f"Running job {name} on demand")
        return await job.execute(**kwargs)

    def status(self) -> Dict:
        jobs = {}
        for name, job in self.jobs.items():
            scheduled = self.scheduler.get_job(name)
            next_run = getattr(scheduled, 'next_run_time', None) if scheduled else None
            jobs[name] = {
                'running': job.is_running,
                'last_run': job.last_run.isoformat() if job.last_run else None,
                'last_result': job.last_result,
                'next_run': next_run.isoformat() if next_run else None,
            }
        return {
            'scheduler_running': self.is_running,
            'timezone': self.settings.timezone,
            'notification_windows': self.settings.notification_windows,
            'quiet_hours': {'start': self.settings.quiet_hours_start, 'end': self.settings.quiet_hours_end},
            'jobs': jobs,
        }
