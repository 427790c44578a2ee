"""
Cron schedules that produce `cron` build events.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from croniter import croniter

from controller.src.config import CronJobConfig, get_settings
from controller.src.exceptions import PipelineConfigError
from controller.src.models.event import BRANCH_PREFIX, Event, EventKind

logger = logging.getLogger(__name__)
settings = get_settings()

class CronTicker:
    """Tracks the next fire time of each configured cron job."""

    def __init__(self, jobs: Iterable[CronJobConfig], now: Optional[datetime] = None):
        now = now or datetime.now(timezone.utc)
        self.jobs: Dict[str, CronJobConfig] = {}
        self._next: Dict[str, datetime] = {}

        for job in jobs:
            if not croniter.is_valid(job.expr):
                raise PipelineConfigError(f"Invalid cron expression '{job.expr}' for '{job.name}'")
            self.jobs[job.name] = job
            self._next[job.name] = croniter(job.expr, now).get_next(datetime)
            logger.info(f"Cron {job.name} ({job.expr}) next fires at {self._next[job.name]}")

    def next_fire(self, name: str) -> datetime:
        return self._next[name]

    def due(self, now: Optional[datetime] = None) -> List[CronJobConfig]:
        """Jobs whose fire time has passed; each is rescheduled."""
        now = now or datetime.now(timezone.utc)
        fired = []
        for name, job in self.jobs.items():
            if self._next[name] <= now:
                fired.append(job)
                self._next[name] = croniter(job.expr, now).get_next(datetime)
        return fired

def build_cron_event(job: CronJobConfig, build_number: int = 0) -> Event:
    """Build event for a cron job on its branch."""
    link = settings.repo_link
    return Event(
        kind=EventKind.CRON,
        cron=job.name,
        branch=job.branch,
        ref=BRANCH_PREFIX + job.branch,
        author="cron",
        build_number=build_number,
        repo_owner=settings.repo_owner,
        repo_name=settings.repo_name,
        link=f"{link}/{build_number}" if link else "",
    )
