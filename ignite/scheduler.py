# ignite/scheduler.py
"""
In-process daily job scheduler for the account sweeps.

Each DailyJob runs once per local calendar day, on the first tick at or
after its time of day in the scheduler's timezone. A job that fails is
logged and does not stop the others; it is retried on the next day.

The scheduler owns logging around each run; the job functions only log
their own summary line.

Started from the app lifespan when SWEEP_SCHEDULER_ENABLED is on. For
deployments that prefer cron, scripts/sweep_jobs.py runs the same jobs.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, time, tzinfo
from typing import Callable, Dict, List, Optional

from ignite.db import get_app_timezone, get_sweep_times
from ignite.accounts.models import utcnow
from ignite.accounts.store import CredentialStore
from ignite.accounts.sweeps import expire_stale_signups, purge_expired_accounts

log = logging.getLogger("ignite.scheduler")


@dataclass
class DailyJob:
    name: str
    func: Callable[[datetime], object]
    at: time


class SweepScheduler:
    """Runs DailyJobs from a daemon thread (or on demand via tick)."""

    def __init__(
        self,
        jobs: List[DailyJob],
        timezone: Optional[tzinfo] = None,
        clock: Optional[Callable[[], datetime]] = None,
        poll_seconds: float = 60.0,
    ):
        self.jobs = {job.name: job for job in jobs}
        self.timezone = timezone or get_app_timezone()
        self.clock = clock or utcnow
        self.poll_seconds = poll_seconds
        self.last_run: Dict[str, date] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def due_jobs(self, now: datetime) -> List[DailyJob]:
        local = now.astimezone(self.timezone)
        return [
            job for job in self.jobs.values()
            if local.time() >= job.at and self.last_run.get(job.name) != local.date()
        ]

    def run_job(self, name: str, now: Optional[datetime] = None):
        """Run one job immediately. Exceptions propagate to the caller."""
        job = self.jobs[name]
        now = now or self.clock()
        log.info("scheduler.job.start name=%s", name)
        result = job.func(now)
        self.last_run[name] = now.astimezone(self.timezone).date()
        log.info("scheduler.job.done name=%s", name)
        return result

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """
        Run every job that is due.

        Returns:
            Names of the jobs that ran successfully.
        """
        now = now or self.clock()
        ran = []
        for job in sorted(self.due_jobs(now), key=lambda j: j.at):
            try:
                self.run_job(job.name, now)
                ran.append(job.name)
            except Exception:
                log.exception("scheduler.job.failed name=%s", job.name)
                self.last_run[job.name] = now.astimezone(self.timezone).date()
        return ran

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.tick()
            self._stop.wait(self.poll_seconds)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="sweep-scheduler", daemon=True)
        self._thread.start()
        log.info("scheduler.started jobs=%s tz=%s", ",".join(self.jobs), self.timezone)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        log.info("scheduler.stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


def build_sweep_scheduler(
    store: CredentialStore,
    clock: Optional[Callable[[], datetime]] = None,
    timezone: Optional[tzinfo] = None,
) -> SweepScheduler:
    """Scheduler with the expire (02:00) and purge (02:30) jobs."""
    expire_at, purge_at = get_sweep_times()
    jobs = [
        DailyJob("expire_stale_signups", lambda now: expire_stale_signups(store, now), expire_at),
        DailyJob("purge_expired_accounts", lambda now: purge_expired_accounts(store, now), purge_at),
    ]
    return SweepScheduler(jobs, timezone=timezone, clock=clock)
