# tests/test_sweeps.py
"""
Sweep job and scheduler tests.

Tests for:
- Expiry of signups pending longer than 7 days
- Purge of signups expired for more than 15 days
- Idempotency and dry runs
- Revived signups are never purged
- Daily scheduler: due times, catch-up, failure isolation
- scripts/sweep_jobs.py entry points

Run with: pytest tests/test_sweeps.py -v
"""

import pytest
from datetime import datetime, time, timedelta, timezone

from conftest import SYDNEY, START

from ignite.accounts.models import ChallengePurpose, SignupStatus
from ignite.accounts.sweeps import (
    count_purgeable_accounts,
    expire_stale_signups,
    purge_expired_accounts,
)
from ignite.scheduler import DailyJob, SweepScheduler, build_sweep_scheduler

pytestmark = pytest.mark.unit


def _sydney(day, hour, minute=0):
    return datetime(2026, 3, day, hour, minute, tzinfo=SYDNEY).astimezone(timezone.utc)


@pytest.fixture
def pending(services, make_register_input):
    """A pending signup registered at START."""
    return services.signups.register(make_register_input())


# ============================================================
# Expire
# ============================================================

class TestExpireStaleSignups:

    def test_not_expired_at_exactly_seven_days(self, store, pending):
        report = expire_stale_signups(store, START + timedelta(days=7))

        assert report.count == 0
        assert store.get_signup(pending.signup_id).is_pending

    def test_expired_after_seven_days(self, store, pending):
        now = START + timedelta(days=7, seconds=1)
        report = expire_stale_signups(store, now)

        assert report.job == "expire_stale_signups"
        assert report.count == 1
        assert report.ids == [pending.signup_id]

        signup = store.get_signup(pending.signup_id)
        assert signup.status == SignupStatus.EXPIRED
        assert signup.updated_at == now
        assert store.get_challenge(signup.id, ChallengePurpose.SIGNUP) is None

    def test_idempotent(self, store, pending):
        now = START + timedelta(days=8)
        assert expire_stale_signups(store, now).count == 1
        assert expire_stale_signups(store, now).count == 0

    def test_dry_run_changes_nothing(self, store, pending):
        report = expire_stale_signups(store, START + timedelta(days=8), dry_run=True)

        assert report.dry_run is True
        assert report.count == 1
        assert report.ids == [pending.signup_id]
        assert store.get_signup(pending.signup_id).is_pending
        assert store.get_challenge(pending.signup_id, ChallengePurpose.SIGNUP) is not None

    def test_active_signup_untouched(self, services, store, notifier, pending):
        services.signups.verify(pending.resume_token, notifier.last_code())

        assert expire_stale_signups(store, START + timedelta(days=30)).count == 0
        assert store.get_signup(pending.signup_id).status == SignupStatus.ACTIVE

    def test_report_dict(self, store, pending):
        report = expire_stale_signups(store, START + timedelta(days=8), dry_run=True)
        assert report.to_dict() == {
            "job": "expire_stale_signups",
            "count": 1,
            "ids": [pending.signup_id],
            "dry_run": True,
        }


# ============================================================
# Purge
# ============================================================

class TestPurgeExpiredAccounts:

    EXPIRED_AT = START + timedelta(days=8)

    def _expire(self, store):
        expire_stale_signups(store, self.EXPIRED_AT)

    def test_kept_at_exactly_fifteen_days(self, store, pending):
        self._expire(store)
        now = self.EXPIRED_AT + timedelta(days=15)

        assert purge_expired_accounts(store, now).count == 0
        assert count_purgeable_accounts(store, now) == 0
        assert store.get_signup(pending.signup_id) is not None

    def test_purged_after_fifteen_days(self, store, pending):
        self._expire(store)
        now = self.EXPIRED_AT + timedelta(days=15, seconds=1)
        assert count_purgeable_accounts(store, now) == 1

        report = purge_expired_accounts(store, now)

        assert report.job == "purge_expired_accounts"
        assert report.count == 1
        assert store.get_signup(pending.signup_id) is None
        assert count_purgeable_accounts(store, now) == 0

    def test_idempotent(self, store, pending):
        self._expire(store)
        now = self.EXPIRED_AT + timedelta(days=16)

        assert purge_expired_accounts(store, now).count == 1
        assert purge_expired_accounts(store, now).count == 0

    def test_dry_run_keeps_rows(self, store, pending):
        self._expire(store)
        report = purge_expired_accounts(store, self.EXPIRED_AT + timedelta(days=16), dry_run=True)

        assert report.count == 1
        assert store.get_signup(pending.signup_id) is not None

    def test_pending_never_purged(self, store, pending):
        assert purge_expired_accounts(store, START + timedelta(days=60)).count == 0

    def test_revived_signup_not_purged(self, services, store, clock, pending, make_register_input):
        self._expire(store)
        clock.set(self.EXPIRED_AT + timedelta(days=14))
        revived = services.signups.register(make_register_input())
        assert revived.signup_id == pending.signup_id

        now = self.EXPIRED_AT + timedelta(days=16)
        assert purge_expired_accounts(store, now).count == 0
        assert store.get_signup(pending.signup_id).is_pending


# ============================================================
# Scheduler
# ============================================================

class TestSweepScheduler:

    @pytest.fixture
    def scheduler(self, store, clock):
        return build_sweep_scheduler(store, clock=clock, timezone=SYDNEY)

    def test_jobs_run_at_their_time(self, scheduler):
        assert scheduler.tick(_sydney(11, 1, 59)) == []
        assert scheduler.tick(_sydney(11, 2, 0)) == ["expire_stale_signups"]
        assert scheduler.tick(_sydney(11, 2, 15)) == []
        assert scheduler.tick(_sydney(11, 2, 30)) == ["purge_expired_accounts"]
        assert scheduler.tick(_sydney(11, 23, 0)) == []

    def test_catch_up_runs_missed_jobs_in_order(self, scheduler):
        assert scheduler.tick(_sydney(11, 10, 0)) == ["expire_stale_signups", "purge_expired_accounts"]

    def test_once_per_local_day(self, scheduler):
        scheduler.tick(_sydney(11, 3, 0))

        assert scheduler.tick(_sydney(12, 1, 0)) == []
        assert scheduler.tick(_sydney(12, 2, 1)) == ["expire_stale_signups"]

    def test_scheduled_expiry_changes_store(self, scheduler, store, pending):
        scheduler.tick(START + timedelta(days=8))
        assert store.get_signup(pending.signup_id).status == SignupStatus.EXPIRED

    def test_failed_job_does_not_block_others(self):
        calls = []

        def broken(now):
            raise RuntimeError("database unavailable")

        scheduler = SweepScheduler(
            [DailyJob("broken", broken, time(2, 0)), DailyJob("healthy", calls.append, time(2, 0))],
            timezone=SYDNEY,
        )
        now = _sydney(11, 2, 0)

        assert scheduler.tick(now) == ["healthy"]
        assert calls == [now]
        # Failed job waits for the next day
        assert scheduler.tick(_sydney(11, 2, 5)) == []

    def test_run_job_propagates(self):
        def broken(now):
            raise RuntimeError("database unavailable")

        scheduler = SweepScheduler([DailyJob("broken", broken, time(2, 0))], timezone=SYDNEY)
        with pytest.raises(RuntimeError):
            scheduler.run_job("broken", _sydney(11, 2, 0))

    def test_run_job_returns_report(self, scheduler, pending):
        report = scheduler.run_job("expire_stale_signups", START + timedelta(days=8))
        assert report.count == 1

    def test_start_stop(self, scheduler, clock):
        clock.set(_sydney(11, 1, 0))
        scheduler.poll_seconds = 3600

        scheduler.start()
        assert scheduler.running
        scheduler.stop()
        assert not scheduler.running

    def test_sweep_times_from_env(self, store, monkeypatch):
        monkeypatch.setenv("SWEEP_EXPIRE_AT", "03:15")
        monkeypatch.setenv("SWEEP_PURGE_AT", "bogus")

        scheduler = build_sweep_scheduler(store, timezone=SYDNEY)

        assert scheduler.jobs["expire_stale_signups"].at == time(3, 15)
        assert scheduler.jobs["purge_expired_accounts"].at == time(2, 30)


# ============================================================
# Sweep Script
# ============================================================

class TestSweepScript:

    def test_run_all_with_store(self, store, pending):
        from scripts.sweep_jobs import run_sweep_jobs

        summary = run_sweep_jobs(store=store, now=START + timedelta(days=8))

        assert summary["status"] == "success"
        assert summary["dry_run"] is False
        assert summary["jobs"]["expire"]["count"] == 1
        assert summary["jobs"]["purge"]["count"] == 0
        assert "duration_ms" in summary

    def test_single_job_dry_run(self, store, pending):
        from scripts.sweep_jobs import run_sweep_jobs

        summary = run_sweep_jobs(job="expire", dry_run=True, store=store, now=START + timedelta(days=8))

        assert list(summary["jobs"]) == ["expire"]
        assert summary["jobs"]["expire"]["dry_run"] is True
        assert store.get_signup(pending.signup_id).is_pending

    def test_without_database(self):
        from scripts.sweep_jobs import main, run_sweep_jobs

        assert run_sweep_jobs()["status"] == "error"
        assert main(["--job", "purge"]) == 1

    def test_failed_expire_still_purges(self, services, store, pending, monkeypatch, make_register_input):
        from scripts.sweep_jobs import run_sweep_jobs

        stale = services.signups.register(make_register_input(email="old@example.com", institutionalId="z7777777"))
        store.mark_signups_expired([stale.signup_id], START)

        def broken(signup_ids, now):
            raise ConnectionError("connection reset")

        monkeypatch.setattr(store, "mark_signups_expired", broken)

        summary = run_sweep_jobs(store=store, now=START + timedelta(days=30))

        assert summary["status"] == "error"
        assert summary["jobs"]["expire"]["status"] == "error"
        assert "connection reset" in summary["jobs"]["expire"]["message"]
        assert summary["jobs"]["purge"]["status"] == "success"
        assert summary["jobs"]["purge"]["ids"] == [stale.signup_id]
        assert store.get_signup(stale.signup_id) is None
        assert store.get_signup(pending.signup_id).is_pending
